"""
Payments Module

Interactive payment initiation: the authenticated sender's PIN is checked
through the lockout flow before the ledger moves any balance.
"""

from typing import List

from .accounts import AccountStore
from .errors import AccountNotFound, InvalidRequest, NotFound
from .ledger import Ledger, TransferResult
from .lockout import CredentialService
from .logging_config import get_logger, log_action
from .money import AmountLike, to_positive_amount
from .transactions import Transaction, TransactionStatus, TransactionStore


class PaymentService:
    """Payment initiation and transaction history"""

    def __init__(
        self,
        account_store: AccountStore,
        credentials: CredentialService,
        ledger: Ledger,
        transaction_store: TransactionStore
    ):
        self.account_store = account_store
        self.credentials = credentials
        self.ledger = ledger
        self.transaction_store = transaction_store
        self.logger = get_logger("payment_engine.payments")

    async def initiate_payment(
        self,
        caller_id: str,
        sender_id: str,
        receiver_id: str,
        amount: AmountLike,
        payment_pin: str
    ) -> TransferResult:
        """
        Pay ``amount`` from the caller's own account to ``receiver_id``

        Args:
            caller_id: Verified identity supplied by the transport layer
            sender_id: Account to debit; must equal caller_id
            receiver_id: Account to credit
            amount: Positive amount
            payment_pin: Sender's payment PIN

        Returns:
            TransferResult with the new balances and the completed transaction

        Raises:
            InvalidRequest: Missing fields, bad amount, or paying from another account
            AccountNotFound: Sender or receiver does not exist
            AccountLocked, InvalidPin: PIN verification failed
            InsufficientFunds: Sender balance below amount
        """
        if not sender_id or not receiver_id or amount is None or not payment_pin:
            raise InvalidRequest("All fields are required.")
        if caller_id != sender_id:
            raise InvalidRequest(
                "Unauthorized access. You can only initiate payments from your own account."
            )
        amount = to_positive_amount(amount)

        if not await self.account_store.find_by_id(sender_id):
            raise AccountNotFound(sender_id)
        if not await self.account_store.find_by_id(receiver_id):
            raise AccountNotFound(receiver_id)

        await self.credentials.verify_pin(sender_id, payment_pin)

        result = await self.ledger.transfer(
            sender_id, receiver_id, amount, TransactionStatus.COMPLETED
        )
        log_action(
            self.logger, "info", "Payment successful",
            user_id=sender_id, action="initiate_payment",
            resource=f"transaction:{result.transaction.id}",
            extra={"receiver_id": receiver_id, "amount": str(amount)}
        )
        return result

    async def list_transactions(self, account_id: str) -> List[Transaction]:
        """Transactions sent or received by an account, newest first"""
        transactions = await self.transaction_store.find_for_account(account_id)
        if not transactions:
            raise NotFound("No transactions found for this user", account_id=account_id)
        return transactions
