"""
Payment System Composition Root

Builds every component once and wires them together. The API and the
entry point receive a PaymentSystem instead of reaching for globals.
"""

from datetime import datetime
from typing import Callable, Optional

from .accounts import AccountStore
from .admission import AdmissionQueue
from .async_storage import AsyncStorageInterface, create_async_storage
from .config import EngineConfig, get_config
from .ledger import Ledger
from .lockout import CredentialService, LockoutGuard
from .logging_config import get_logger, log_action
from .mandates import MandateService, MandateStore
from .payments import PaymentService
from .products import ProductService
from .scheduler import MandateScheduler
from .storage import utcnow
from .transactions import TransactionStore


class PaymentSystem:
    """Owns storage, stores, services, the admission queue and the scheduler"""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        storage: Optional[AsyncStorageInterface] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.config = config or get_config()
        self.storage = storage or create_async_storage(self.config)
        self.clock = clock
        self.logger = get_logger("payment_engine.system")

        self.account_store = AccountStore(self.storage, self.config)
        self.transaction_store = TransactionStore(self.storage)
        self.mandate_store = MandateStore(self.storage)

        self.lockout_guard = LockoutGuard(
            max_failed_attempts=self.config.max_failed_attempts,
            lockout_duration_minutes=self.config.lockout_duration_minutes
        )
        self.credentials = CredentialService(
            self.account_store, self.lockout_guard, self.config, clock=clock
        )
        self.ledger = Ledger(self.storage, self.account_store, self.transaction_store)
        self.payments = PaymentService(
            self.account_store, self.credentials, self.ledger, self.transaction_store
        )
        self.products = ProductService(
            self.storage, self.account_store, self.credentials, self.ledger
        )
        self.mandates = MandateService(self.mandate_store, self.account_store, clock=clock)

        self.queue = AdmissionQueue(self.config)
        self.scheduler = MandateScheduler(
            self.mandates, self.account_store, self.ledger, self.config, clock=clock
        )

    async def start(self) -> None:
        """Open storage, start the queue workers and (if enabled) the scheduler"""
        await self.storage.initialize()
        await self.queue.start()
        if self.config.scheduler_enabled:
            await self.scheduler.start()
        log_action(
            self.logger, "info", "Payment system started", action="system_start",
            extra={
                "storage_type": self.config.storage_type,
                "scheduler_enabled": self.config.scheduler_enabled
            }
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.queue.stop()
        await self.storage.close()
        log_action(self.logger, "info", "Payment system stopped", action="system_stop")

    async def __aenter__(self) -> 'PaymentSystem':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
