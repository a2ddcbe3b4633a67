"""
Account Lockout Module

Failure-counting state machine shared by login, PIN verification and the
password/PIN reset flows. An account is Open until its failure counter
exceeds the configured maximum, then Locked until the lockout window passes.
Expiry is lazy: the lock is cleared on the next check after it has elapsed.

Every verification runs in the same order: lock check, secret comparison,
then success/failure bookkeeping. Failures never accumulate while locked.
"""

import asyncio
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict

from .accounts import Account, AccountStore, PIN_LENGTH
from .config import EngineConfig
from .credentials import generate_salt, hash_secret, verify_secret
from .errors import (
    AccountLocked, EngineError, InvalidCredential, InvalidPin, InvalidRequest, NotFound
)
from .logging_config import get_logger, log_action
from .storage import utcnow


class CredentialType(Enum):
    """Credential families guarded by their own failure counter"""
    PASSWORD = "failed_login_attempts"
    PIN = "failed_pin_attempts"

    @property
    def counter(self) -> str:
        return self.value


class LockoutGuard:
    """
    Lockout state machine operating on a single Account in memory.

    The guard never persists anything; callers save the account afterwards.
    """

    def __init__(self, max_failed_attempts: int = 5, lockout_duration_minutes: int = 30):
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = timedelta(minutes=lockout_duration_minutes)
        self.logger = get_logger("payment_engine.lockout")

    @staticmethod
    def remaining_minutes(account: Account, now: datetime) -> int:
        """Remaining lockout in whole minutes, rounded up"""
        if not account.lockout_expires_at:
            return 0
        seconds = (account.lockout_expires_at - now).total_seconds()
        return max(0, math.ceil(seconds / 60))

    def check_and_maybe_clear_lock(self, account: Account, credential: CredentialType,
                                   now: datetime) -> bool:
        """
        Fail while the lock is live; clear it once expired.

        Returns:
            True if an expired lock was cleared (the account needs saving)

        Raises:
            AccountLocked: If the lockout window has not elapsed
        """
        if not account.is_locked:
            return False

        if account.lockout_expires_at and now < account.lockout_expires_at:
            raise AccountLocked(self.remaining_minutes(account, now))

        account.is_locked = False
        account.lockout_expires_at = None
        setattr(account, credential.counter, 0)
        log_action(
            self.logger, "info", "Lockout expired, account reopened",
            user_id=account.id, action="lockout_cleared",
            extra={"credential": credential.name.lower()}
        )
        return True

    def record_failure(self, account: Account, credential: CredentialType,
                       now: datetime) -> EngineError:
        """
        Count a failed attempt, locking the account past the threshold.

        Returns:
            The error the caller should raise once the account is saved
        """
        attempts = getattr(account, credential.counter) + 1
        setattr(account, credential.counter, attempts)

        if attempts > self.max_failed_attempts:
            account.is_locked = True
            account.lockout_expires_at = now + self.lockout_duration
            log_action(
                self.logger, "warning", "Account locked after repeated failures",
                user_id=account.id, action="account_locked",
                extra={
                    "credential": credential.name.lower(),
                    "attempts": attempts,
                    "lockout_expires_at": account.lockout_expires_at.isoformat()
                }
            )
            minutes = self.remaining_minutes(account, now)
            return AccountLocked(
                minutes,
                f"Account is locked due to too many failed attempts. Try again after {minutes} minutes."
            )

        if credential is CredentialType.PIN:
            return InvalidPin("Invalid payment PIN", attempts=attempts)
        return InvalidCredential("Invalid credentials.", attempts=attempts)

    def record_success(self, account: Account, credential: CredentialType) -> None:
        """Reset the failure counter; the lock flag is left alone"""
        setattr(account, credential.counter, 0)


class CredentialService:
    """
    Persisted verification flows built on LockoutGuard
    """

    def __init__(
        self,
        account_store: AccountStore,
        guard: LockoutGuard,
        config: EngineConfig,
        clock: Callable[[], datetime] = utcnow
    ):
        self.account_store = account_store
        self.guard = guard
        self.config = config
        self.clock = clock
        self.logger = get_logger("payment_engine.credentials")

    async def _load(self, account_id: str) -> Account:
        account = await self.account_store.find_by_id(account_id)
        if not account:
            raise NotFound("User not found", account_id=account_id)
        return account

    async def _verify(self, account: Account, credential: CredentialType, secret: str) -> None:
        """Lock check, compare, record; saves the account whenever it changed"""
        now = self.clock()
        cleared = self.guard.check_and_maybe_clear_lock(account, credential, now)

        if credential is CredentialType.PIN:
            expected, salt = account.pin_hash, account.pin_salt
        else:
            expected, salt = account.password_hash, account.password_salt

        matched = await asyncio.to_thread(
            verify_secret, secret or "", expected, salt, self.config.secret_hash_cost
        )
        if not matched:
            error = self.guard.record_failure(account, credential, now)
            await self.account_store.save(account)
            raise error

        had_failures = getattr(account, credential.counter) > 0
        self.guard.record_success(account, credential)
        if cleared or had_failures:
            await self.account_store.save(account)

    async def login(self, email: str, password: str) -> Dict[str, str]:
        """
        Verify a login password.

        Returns:
            The verified account identity; token issuance happens upstream

        Raises:
            NotFound, AccountLocked, InvalidCredential
        """
        account = await self.account_store.find_by_email(email or "")
        if not account:
            raise NotFound("User not found.")

        async with self.account_store.locked(account.id):
            account = await self._load(account.id)
            await self._verify(account, CredentialType.PASSWORD, password)

        log_action(self.logger, "info", "Login succeeded", user_id=account.id, action="login")
        return {"account_id": account.id}

    async def verify_password(self, account_id: str, password: str) -> None:
        """Verify the login password of a known account; raises on failure"""
        async with self.account_store.locked(account_id):
            account = await self._load(account_id)
            await self._verify(account, CredentialType.PASSWORD, password)

    async def verify_pin(self, account_id: str, pin: str) -> None:
        """Verify a payment PIN; raises on failure"""
        async with self.account_store.locked(account_id):
            account = await self._load(account_id)
            await self._verify(account, CredentialType.PIN, pin)

    async def reset_password(self, account_id: str, email: str,
                             new_password: str) -> Dict[str, str]:
        """
        Replace the login password of the calling account, honouring an
        active lockout. The email must belong to the caller.

        Raises:
            NotFound, AccountLocked, InvalidRequest
        """
        if not new_password:
            raise InvalidRequest("New password is required.")

        account = await self.account_store.find_by_email(email or "")
        if not account:
            raise NotFound("User not found")
        if account.id != account_id:
            raise InvalidRequest("You can only reset your own password.")

        async with self.account_store.locked(account.id):
            account = await self._load(account.id)
            self.guard.check_and_maybe_clear_lock(account, CredentialType.PASSWORD, self.clock())

            account.password_salt = generate_salt()
            account.password_hash = await asyncio.to_thread(
                hash_secret, new_password, account.password_salt, self.config.secret_hash_cost
            )
            self.guard.record_success(account, CredentialType.PASSWORD)
            await self.account_store.save(account)

        log_action(self.logger, "info", "Password reset", user_id=account.id, action="reset_password")
        return {"message": "Password reset successfully"}

    async def reset_pin(self, account_id: str, password: str, new_pin: str) -> Dict[str, str]:
        """
        Replace the payment PIN after verifying the current password.

        Raises:
            NotFound, AccountLocked, InvalidCredential, InvalidRequest
        """
        if not new_pin or len(new_pin) != PIN_LENGTH:
            raise InvalidRequest(f"Payment PIN must be exactly {PIN_LENGTH} characters.")

        async with self.account_store.locked(account_id):
            account = await self._load(account_id)
            await self._verify(account, CredentialType.PASSWORD, password)

            account.pin_salt = generate_salt()
            account.pin_hash = await asyncio.to_thread(
                hash_secret, new_pin, account.pin_salt, self.config.secret_hash_cost
            )
            self.guard.record_success(account, CredentialType.PIN)
            await self.account_store.save(account)

        log_action(self.logger, "info", "Payment PIN reset", user_id=account_id, action="reset_pin")
        return {"message": "Payment PIN reset successfully"}
