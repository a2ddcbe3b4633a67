"""
Tests for the admission queue

Verifies per-class FIFO serialization, cross-class concurrency, error
containment and backlog limits.
"""

import asyncio
import random
import pytest
import pytest_asyncio

from payment_engine.admission import AdmissionQueue, OperationClass, is_expected_outcome
from payment_engine.circuit_breaker import CircuitState
from payment_engine.config import EngineConfig
from payment_engine.errors import (
    ErrorKind, InsufficientFunds, InternalFailure, InvalidPin, ServiceUnavailable
)


@pytest.fixture
def queue_config():
    return EngineConfig(breaker_timeout_seconds=2.0, breaker_reset_timeout_seconds=60.0)


@pytest_asyncio.fixture
async def queue(queue_config):
    async with AdmissionQueue(queue_config) as queue:
        yield queue


class TestOrdering:
    """Test same-class serialization"""

    @pytest.mark.asyncio
    async def test_same_class_runs_in_submission_order(self, queue):
        executed = []
        in_flight = 0
        max_in_flight = 0
        rng = random.Random(3)

        def make_task(sequence, delay):
            async def task():
                nonlocal in_flight, max_in_flight
                in_flight += 1
                max_in_flight = max(max_in_flight, in_flight)
                await asyncio.sleep(delay)
                executed.append(sequence)
                in_flight -= 1
                return sequence
            return task

        futures = [
            queue.submit(OperationClass.PAYMENT, make_task(i, rng.uniform(0, 0.005)))
            for i in range(25)
        ]
        results = await asyncio.gather(*futures)

        assert executed == list(range(25))
        assert [r.value for r in results] == list(range(25))
        assert max_in_flight == 1

    @pytest.mark.asyncio
    async def test_different_classes_run_concurrently(self, queue):
        release = asyncio.Event()

        async def blocked_login():
            await release.wait()
            return "login"

        async def payment():
            return "payment"

        login_future = queue.submit(OperationClass.LOGIN, blocked_login)
        payment_result = await asyncio.wait_for(
            queue.submit(OperationClass.PAYMENT, payment), timeout=1.0
        )

        assert payment_result.value == "payment"
        assert not login_future.done()

        release.set()
        assert (await login_future).value == "login"

    @pytest.mark.asyncio
    async def test_busy_worker_leaves_task_waiting(self, queue):
        release = asyncio.Event()
        started = asyncio.Event()

        async def first():
            started.set()
            await release.wait()

        async def second():
            return "second"

        queue.submit(OperationClass.PIN_RESET, first)
        await started.wait()
        second_future = queue.submit(OperationClass.PIN_RESET, second)

        await asyncio.sleep(0.01)
        assert queue.pending(OperationClass.PIN_RESET) == 1
        assert not second_future.done()

        release.set()
        assert (await second_future).value == "second"

    @pytest.mark.asyncio
    async def test_join_waits_for_drain(self, queue):
        done = []

        async def task():
            await asyncio.sleep(0.001)
            done.append(1)

        for _ in range(5):
            queue.submit(OperationClass.LOGIN, task)
        await queue.join(OperationClass.LOGIN)

        assert len(done) == 5


class TestErrorContainment:
    """Test that failures resolve to results and never stop a worker"""

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_internal_failure(self):
        async def broken():
            raise RuntimeError("database went away")

        async def healthy():
            return "fine"

        # Enough volume that a single failure cannot open the breaker
        config = EngineConfig(breaker_volume_threshold=10)
        async with AdmissionQueue(config) as queue:
            broken_result = await queue.submit(OperationClass.PAYMENT, broken)
            healthy_result = await queue.submit(OperationClass.PAYMENT, healthy)
            assert queue.breaker(OperationClass.PAYMENT).state == CircuitState.CLOSED

        assert broken_result.kind == ErrorKind.INTERNAL_FAILURE
        assert "database went away" in broken_result.error.message
        assert healthy_result.ok
        assert healthy_result.value == "fine"

    @pytest.mark.asyncio
    async def test_domain_errors_are_delivered_without_tripping(self, queue):
        async def wrong_pin():
            raise InvalidPin("Invalid payment PIN")

        async def broke():
            raise InsufficientFunds("Insufficient funds.")

        for _ in range(10):
            assert (await queue.submit(OperationClass.PAYMENT, wrong_pin)).kind == ErrorKind.INVALID_PIN
        assert (await queue.submit(OperationClass.PAYMENT, broke)).kind == ErrorKind.INSUFFICIENT_FUNDS

        assert queue.breaker(OperationClass.PAYMENT).state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_breaker_resolves_to_service_unavailable(self, queue):
        calls = []

        async def broken():
            calls.append(1)
            raise InternalFailure("boom")

        first = await queue.submit(OperationClass.MANDATE_UPDATE, broken)
        assert first.kind == ErrorKind.INTERNAL_FAILURE
        assert queue.breaker(OperationClass.MANDATE_UPDATE).state == CircuitState.OPEN

        second = await queue.submit(OperationClass.MANDATE_UPDATE, broken)
        assert second.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert calls == [1]

        # Other classes are unaffected
        async def healthy():
            return "ok"

        assert (await queue.submit(OperationClass.LOGIN, healthy)).ok

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_task(self, queue):
        release = asyncio.Event()
        completed = []

        async def task():
            await release.wait()
            completed.append(1)
            return "done"

        future = queue.submit(OperationClass.PRODUCT_PURCHASE, task)
        await asyncio.sleep(0.01)
        future.cancel()
        release.set()
        await queue.join(OperationClass.PRODUCT_PURCHASE)

        assert completed == [1]

    def test_expected_outcome_filter(self):
        assert is_expected_outcome(InvalidPin("x"))
        assert is_expected_outcome(ServiceUnavailable("x"))
        assert not is_expected_outcome(InternalFailure("x"))
        assert not is_expected_outcome(RuntimeError("x"))


class TestLifecycle:
    """Test backlog limits and start/stop"""

    @pytest.mark.asyncio
    async def test_backlog_over_capacity_is_rejected(self):
        config = EngineConfig(queue_max_pending=1)
        async with AdmissionQueue(config) as queue:
            release = asyncio.Event()
            started = asyncio.Event()

            async def blocker():
                started.set()
                await release.wait()
                return "first"

            async def other():
                return "other"

            first = queue.submit(OperationClass.PAYMENT, blocker)
            await started.wait()
            second = queue.submit(OperationClass.PAYMENT, other)
            third = queue.submit(OperationClass.PAYMENT, other)

            assert third.done()
            assert (await third).kind == ErrorKind.SERVICE_UNAVAILABLE

            release.set()
            assert (await first).value == "first"
            assert (await second).value == "other"

    @pytest.mark.asyncio
    async def test_submit_before_start(self, queue_config):
        queue = AdmissionQueue(queue_config)

        async def task():
            return "never"

        result = await queue.submit(OperationClass.LOGIN, task)
        assert result.kind == ErrorKind.SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_stop_resolves_waiting_tasks(self, queue_config):
        queue = AdmissionQueue(queue_config)
        await queue.start()
        started = asyncio.Event()

        async def blocker():
            started.set()
            await asyncio.Event().wait()

        async def waiting():
            return "never"

        in_flight = queue.submit(OperationClass.LOGIN, blocker)
        await started.wait()
        waiting_future = queue.submit(OperationClass.LOGIN, waiting)

        await queue.stop()

        assert (await in_flight).kind == ErrorKind.SERVICE_UNAVAILABLE
        assert (await waiting_future).kind == ErrorKind.SERVICE_UNAVAILABLE
        assert not queue.running

    @pytest.mark.asyncio
    async def test_payment_breaker_recovers_slower(self, queue):
        assert queue.breaker(OperationClass.PAYMENT).reset_timeout == 30.0
        assert queue.breaker(OperationClass.LOGIN).reset_timeout == 60.0
