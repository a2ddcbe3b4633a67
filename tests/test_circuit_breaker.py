"""
Tests for the async circuit breaker
"""

import asyncio
import pytest

from payment_engine.circuit_breaker import (
    CallTimeout, CircuitBreaker, CircuitOpenError, CircuitState
)
from payment_engine.errors import InternalFailure, InvalidPin

from conftest import ManualTimer


async def succeed():
    return "ok"


async def fail():
    raise InternalFailure("boom")


async def fire_quietly(breaker, operation):
    """Fire and swallow the operation's own error"""
    try:
        return await breaker.fire(operation)
    except InternalFailure:
        return None


@pytest.fixture
def timer():
    return ManualTimer()


@pytest.fixture
def breaker(timer):
    return CircuitBreaker(
        name="test",
        timeout=1.0,
        error_threshold_percentage=50.0,
        reset_timeout=10.0,
        rolling_window=10.0,
        fallback=lambda error: "fallback",
        clock=timer,
    )


class TestCircuitBreakerStates:
    """Test state transitions"""

    @pytest.mark.asyncio
    async def test_initial_state_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.fire(succeed) == "ok"

    @pytest.mark.asyncio
    async def test_opens_only_above_threshold(self, breaker):
        """Exactly 50% failures keeps the circuit closed; more opens it"""
        await breaker.fire(succeed)
        await breaker.fire(succeed)
        await fire_quietly(breaker, fail)
        await fire_quietly(breaker, fail)
        assert breaker.failure_percentage == 50.0
        assert breaker.state == CircuitState.CLOSED

        await fire_quietly(breaker, fail)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_failure_propagates_while_closed(self, breaker):
        await breaker.fire(succeed)
        with pytest.raises(InternalFailure):
            await breaker.fire(fail)

    @pytest.mark.asyncio
    async def test_open_short_circuits_to_fallback(self, breaker):
        calls = []

        async def tracked():
            calls.append(1)
            return "called"

        await fire_quietly(breaker, fail)
        assert breaker.state == CircuitState.OPEN

        for _ in range(3):
            assert await breaker.fire(tracked) == "fallback"
        assert calls == []
        assert breaker.stats.rejected_requests == 3

    @pytest.mark.asyncio
    async def test_open_without_fallback_raises(self, timer):
        breaker = CircuitBreaker(name="bare", clock=timer)
        await fire_quietly(breaker, fail)

        with pytest.raises(CircuitOpenError):
            await breaker.fire(succeed)

    @pytest.mark.asyncio
    async def test_half_open_after_reset_timeout(self, breaker, timer):
        await fire_quietly(breaker, fail)

        timer.advance(9.9)
        assert breaker.state == CircuitState.OPEN
        timer.advance(0.1)
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_exactly_one_trial_call(self, breaker, timer):
        await fire_quietly(breaker, fail)
        timer.advance(10)

        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.fire(slow))
        await asyncio.sleep(0)

        # Trial in flight: everything else short-circuits
        assert await breaker.fire(slow) == "fallback"
        assert await breaker.fire(slow) == "fallback"

        release.set()
        assert await trial == "trial"
        assert calls == [1]
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_trial_failure_reopens(self, breaker, timer):
        await fire_quietly(breaker, fail)
        timer.advance(10)
        assert breaker.state == CircuitState.HALF_OPEN

        await fire_quietly(breaker, fail)

        assert breaker.state == CircuitState.OPEN
        assert await breaker.fire(succeed) == "fallback"

    @pytest.mark.asyncio
    async def test_close_clears_history(self, breaker, timer):
        await fire_quietly(breaker, fail)
        timer.advance(10)
        await breaker.fire(succeed)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_percentage == 0.0


class TestCircuitBreakerOptions:
    """Test error filter, timeout, window and volume"""

    @pytest.mark.asyncio
    async def test_filtered_errors_do_not_count(self, timer):
        breaker = CircuitBreaker(
            name="filtered",
            error_filter=lambda error: isinstance(error, InvalidPin),
            clock=timer,
        )

        async def wrong_pin():
            raise InvalidPin("Invalid payment PIN")

        for _ in range(10):
            with pytest.raises(InvalidPin):
                await breaker.fire(wrong_pin)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failed_requests == 0

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure_and_returns_fallback(self, timer):
        breaker = CircuitBreaker(
            name="slow", timeout=0.05, fallback=lambda error: error, clock=timer
        )
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.2)
            finished.set()
            return "late"

        result = await breaker.fire(slow)

        assert isinstance(result, CallTimeout)
        assert breaker.stats.timeouts == 1
        assert breaker.state == CircuitState.OPEN

        # The abandoned call keeps running in the background
        await asyncio.wait_for(finished.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_timeout_without_fallback_raises(self, timer):
        breaker = CircuitBreaker(name="slow", timeout=0.01, clock=timer)

        async def slow():
            await asyncio.sleep(0.1)

        with pytest.raises(CallTimeout):
            await breaker.fire(slow)

    @pytest.mark.asyncio
    async def test_old_failures_leave_the_window(self, timer):
        breaker = CircuitBreaker(
            name="window", rolling_window=10.0, volume_threshold=2, clock=timer
        )

        await fire_quietly(breaker, fail)
        assert breaker.state == CircuitState.CLOSED

        timer.advance(20)
        await fire_quietly(breaker, fail)

        # Only one failure is inside the window, below the volume threshold
        assert breaker.state == CircuitState.CLOSED

        await fire_quietly(breaker, fail)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_async_fallback(self, timer):
        async def fallback(error):
            return {"message": str(error)}

        breaker = CircuitBreaker(name="async-fallback", fallback=fallback, clock=timer)
        breaker.force_open()

        result = await breaker.fire(succeed)
        assert "open" in result["message"]

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        breaker.force_open()
        assert breaker.state == CircuitState.OPEN
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.state_changes == 2

    @pytest.mark.asyncio
    async def test_arguments_are_forwarded(self, breaker):
        async def add(a, b, scale=1):
            return (a + b) * scale

        assert await breaker.fire(add, 1, 2, scale=10) == 30
