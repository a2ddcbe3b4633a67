"""
Ledger Module

Moves a fixed positive amount between two accounts as a single unit and
records the attempt. Both balance writes and the transaction record commit
together inside one storage transaction while the two account rows are
locked, so interactive payments and scheduled mandate debits on the same
account can never race into a negative balance or a lost update.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict

from .accounts import AccountStore
from .async_storage import AsyncStorageInterface
from .errors import AccountNotFound, InsufficientFunds, InvalidRequest
from .logging_config import get_logger, log_action
from .money import AmountLike, to_positive_amount
from .transactions import Transaction, TransactionStatus, TransactionStore


@dataclass(frozen=True)
class TransferResult:
    """Balances after a committed transfer plus its record"""
    transaction: Transaction
    sender_balance: Decimal
    receiver_balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction": self.transaction.to_public_dict(),
            "sender_balance": str(self.sender_balance),
            "receiver_balance": str(self.receiver_balance),
        }


class Ledger:
    """
    Atomic balance transfers
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        account_store: AccountStore,
        transaction_store: TransactionStore
    ):
        self.storage = storage
        self.account_store = account_store
        self.transaction_store = transaction_store
        self.logger = get_logger("payment_engine.ledger")

    async def transfer(
        self,
        sender_id: str,
        receiver_id: str,
        amount: AmountLike,
        status: TransactionStatus = TransactionStatus.COMPLETED
    ) -> TransferResult:
        """
        Move ``amount`` from sender to receiver

        Args:
            sender_id: Account debited
            receiver_id: Account credited
            amount: Positive amount, converted to exact minor units
            status: Status recorded on the transaction

        Returns:
            TransferResult with the new balances and transaction

        Raises:
            InvalidRequest: Non-positive amount or sender == receiver
            AccountNotFound: Either account does not exist
            InsufficientFunds: Sender balance below amount
        """
        amount = to_positive_amount(amount)
        if sender_id == receiver_id:
            raise InvalidRequest("Sender and receiver must be different accounts")

        async with self.account_store.locked(sender_id, receiver_id):
            async with self.storage.atomic():
                sender = await self.account_store.find_by_id(sender_id)
                if not sender:
                    raise AccountNotFound(sender_id)
                receiver = await self.account_store.find_by_id(receiver_id)
                if not receiver:
                    raise AccountNotFound(receiver_id)

                if sender.balance < amount:
                    raise InsufficientFunds(
                        "Insufficient funds.",
                        balance=str(sender.balance), amount=str(amount)
                    )

                sender.balance -= amount
                receiver.balance += amount
                await self.account_store.save(sender)
                await self.account_store.save(receiver)

                transaction = await self.transaction_store.create(
                    self.transaction_store.new_transaction(sender_id, receiver_id, amount, status)
                )

        log_action(
            self.logger, "info", "Transfer committed",
            user_id=sender_id, action="transfer", resource=f"transaction:{transaction.id}",
            extra={
                "receiver_id": receiver_id,
                "amount": str(amount),
                "status": status.value
            }
        )

        return TransferResult(
            transaction=transaction,
            sender_balance=sender.balance,
            receiver_balance=receiver.balance,
        )
