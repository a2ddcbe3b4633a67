"""
Shared fixtures: a controllable clock and an in-memory payment system
"""

import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from payment_engine.async_storage import AsyncInMemoryStorage
from payment_engine.config import EngineConfig
from payment_engine.system import PaymentSystem


PIN = "12345"
PASSWORD = "correct-horse"


class FakeClock:
    """Wall clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ManualTimer:
    """Monotonic clock for circuit breakers"""

    def __init__(self, value: float = 0.0):
        self.value = value

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def config():
    """Engine config with cheap hashing and no background scheduler"""
    return EngineConfig(
        storage_type="memory",
        secret_hash_cost=1024,
        scheduler_enabled=False,
        breaker_timeout_seconds=2.0,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def system(config, clock):
    """Started payment system backed by in-memory storage"""
    system = PaymentSystem(config, storage=AsyncInMemoryStorage(), clock=clock)
    await system.start()
    yield system
    await system.stop()


@pytest.fixture
def open_account(system):
    """Register an account with a given opening balance"""
    async def _open(name: str, balance="1000.00", pin: str = PIN, password: str = PASSWORD):
        return await system.account_store.register(
            name, f"{name.lower()}@example.com", password, pin,
            opening_balance=Decimal(balance)
        )
    return _open
