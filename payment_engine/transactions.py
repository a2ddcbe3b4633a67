"""
Transaction Records Module

Immutable records of completed or attempted transfers. Records are created
exclusively by the ledger; each carries a globally unique transaction id.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .async_storage import AsyncStorageInterface
from .errors import InternalFailure
from .storage import StorageRecord


class TransactionStatus(Enum):
    """States of a transaction record"""
    PENDING = "pending"
    COMPLETED = "completed"  # Interactive transfer
    SUCCESS = "success"      # Mandate-triggered transfer
    FAILED = "failed"


def generate_transaction_id() -> str:
    """Generate a unique transaction id"""
    return f"txn-{uuid.uuid4().hex}"


@dataclass
class Transaction(StorageRecord):
    """
    Transfer record; ``id`` is the transaction id
    """
    sender_id: str
    receiver_id: str
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED

    def __post_init__(self):
        if self.amount <= Decimal('0'):
            raise ValueError("Transaction amount must be positive")

    @property
    def transaction_id(self) -> str:
        return self.id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['status'] = TransactionStatus(data['status'])
        return super().from_dict(data)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "amount": str(self.amount),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


class TransactionStore:
    """Append-only transaction storage"""

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def new_transaction(self, sender_id: str, receiver_id: str, amount: Decimal,
                        status: TransactionStatus = TransactionStatus.COMPLETED) -> Transaction:
        now = datetime.now(timezone.utc)
        return Transaction(
            id=generate_transaction_id(),
            created_at=now,
            updated_at=now,
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=amount,
            status=status,
        )

    async def create(self, transaction: Transaction) -> Transaction:
        """
        Persist a new transaction

        Raises:
            InternalFailure: If the transaction id is already taken
        """
        if await self.storage.exists(self.table_name, transaction.id):
            raise InternalFailure(
                f"Duplicate transaction id {transaction.id}", transaction_id=transaction.id
            )
        await self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    async def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        data = await self.storage.load(self.table_name, transaction_id)
        return Transaction.from_dict(data) if data else None

    async def find_for_account(self, account_id: str) -> List[Transaction]:
        """Transactions sent or received by an account, newest first"""
        sent = await self.storage.find(self.table_name, {"sender_id": account_id})
        received = await self.storage.find(self.table_name, {"receiver_id": account_id})
        by_id = {data['id']: Transaction.from_dict(data) for data in sent + received}
        return sorted(by_id.values(), key=lambda t: t.created_at, reverse=True)
