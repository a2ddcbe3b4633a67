"""
Account Management Module

Accounts hold a balance plus the counters and lock flag that the lockout
guard maintains. The store provides per-account row locks so that the ledger
and the lockout flows never interleave writes to the same account.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional
import asyncio
import uuid

from .async_storage import AsyncStorageInterface, RowLocks
from .config import EngineConfig
from .credentials import generate_salt, hash_secret
from .errors import InvalidRequest
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .storage import StorageRecord, parse_datetime

PIN_LENGTH = 5


@dataclass
class Account(StorageRecord):
    """
    Account with balance and credential-failure bookkeeping
    """
    name: str
    email: str
    balance: Decimal
    password_hash: str
    password_salt: str
    pin_hash: str
    pin_salt: str
    failed_login_attempts: int = 0
    failed_pin_attempts: int = 0
    is_locked: bool = False
    lockout_expires_at: Optional[datetime] = None

    def __post_init__(self):
        if self.balance < ZERO:
            raise ValueError("Account balance cannot be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['balance'] = Decimal(data['balance'])
        data['lockout_expires_at'] = parse_datetime(data.get('lockout_expires_at'))
        return super().from_dict(data)

    def to_public_dict(self) -> Dict[str, Any]:
        """Account details safe to return to the owner"""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "balance": str(self.balance),
            "is_locked": self.is_locked,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class AccountStore:
    """
    Persists accounts and hands out row locks
    """

    def __init__(self, storage: AsyncStorageInterface, config: EngineConfig):
        self.storage = storage
        self.config = config
        self.table_name = "accounts"
        self.logger = get_logger("payment_engine.accounts")
        self._row_locks = RowLocks()

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        data = await self.storage.load(self.table_name, account_id)
        return Account.from_dict(data) if data else None

    async def find_by_email(self, email: str) -> Optional[Account]:
        matches = await self.storage.find(self.table_name, {"email": email.strip().lower()})
        return Account.from_dict(matches[0]) if matches else None

    async def save(self, account: Account) -> None:
        account.updated_at = datetime.now(timezone.utc)
        await self.storage.save(self.table_name, account.id, account.to_dict())

    def locked(self, *account_ids: str):
        """Hold the row locks for the given accounts"""
        return self._row_locks.locked(*account_ids)

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        payment_pin: str,
        opening_balance: Optional[Decimal] = None
    ) -> Account:
        """
        Open a new account

        Args:
            name: Account holder name
            email: Unique login email
            password: Login password (stored hashed)
            payment_pin: 5-character payment PIN (stored hashed)
            opening_balance: Starting balance (configured default if omitted)

        Returns:
            Created Account

        Raises:
            InvalidRequest: Missing fields, bad PIN length, or duplicate email
        """
        if not name or not email or not password or not payment_pin:
            raise InvalidRequest("All fields are required.")
        if len(payment_pin) != PIN_LENGTH:
            raise InvalidRequest(f"Payment PIN must be exactly {PIN_LENGTH} characters.")

        email = email.strip().lower()
        balance = to_amount(opening_balance if opening_balance is not None
                            else self.config.opening_balance)
        if balance < ZERO:
            raise InvalidRequest("Opening balance cannot be negative")

        cost = self.config.secret_hash_cost
        password_salt = generate_salt()
        pin_salt = generate_salt()
        password_hash = await asyncio.to_thread(hash_secret, password, password_salt, cost)
        pin_hash = await asyncio.to_thread(hash_secret, payment_pin, pin_salt, cost)
        now = datetime.now(timezone.utc)

        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            email=email,
            balance=balance,
            password_hash=password_hash,
            password_salt=password_salt,
            pin_hash=pin_hash,
            pin_salt=pin_salt,
        )
        async with self.locked(f"email:{email}"):
            if await self.find_by_email(email):
                raise InvalidRequest("User already exists.")
            await self.storage.save(self.table_name, account.id, account.to_dict())

        log_action(
            self.logger, "info", "Account registered",
            user_id=account.id, action="register", resource=f"account:{account.id}"
        )
        return account
