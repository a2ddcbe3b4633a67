"""Circuit breaker for asynchronous operations.

Fails fast when the wrapped logic is unhealthy so callers degrade to a
fallback instead of piling up behind a failing dependency.

States:
    CLOSED: Calls pass through; outcomes are counted in a rolling window
    OPEN: Calls short-circuit to the fallback without invoking the operation
    HALF_OPEN: After the reset timeout, exactly one trial call is let through

The breaker opens when the failure percentage over the rolling window
exceeds ``error_threshold_percentage``. A trial success closes it again; a
trial failure re-opens it.

Example:
    >>> breaker = CircuitBreaker("payment", timeout=5.0, reset_timeout=30.0)
    >>> result = await breaker.fire(initiate_payment, request)
"""

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

from .errors import ServiceUnavailable
from .logging_config import get_logger, log_action

logger = get_logger("payment_engine.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitOpenError(ServiceUnavailable):
    """Raised when the circuit rejects a call and no fallback is set."""

    def __init__(self, name: str):
        super().__init__(f"Circuit '{name}' is open, rejecting request", circuit=name)


class CallTimeout(ServiceUnavailable):
    """Raised when a call does not settle within the breaker timeout."""

    def __init__(self, name: str, timeout: float):
        super().__init__(f"Circuit '{name}' call timed out after {timeout}s",
                         circuit=name, timeout=timeout)


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    timeouts: int = 0
    state_changes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    last_state_change: Optional[float] = None

    @property
    def failure_rate(self) -> float:
        """Lifetime failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


class CircuitBreaker:
    """Circuit breaker around one asynchronous operation.

    Attributes:
        name: Identifier for this circuit
        timeout: Seconds a call may take before it counts as failed
        error_threshold_percentage: Failure percentage that opens the circuit
        reset_timeout: Seconds to stay open before allowing a trial call
        rolling_window: Seconds of history used for the failure percentage
        volume_threshold: Minimum calls in the window before it may open
        error_filter: Returns True for errors that are expected outcomes
            and must not count as failures
        fallback: Called with the rejection/timeout error; its value is
            returned to the caller in place of an error
    """

    def __init__(
        self,
        name: str = "default",
        timeout: Optional[float] = 5.0,
        error_threshold_percentage: float = 50.0,
        reset_timeout: float = 10.0,
        rolling_window: float = 10.0,
        volume_threshold: int = 0,
        error_filter: Optional[Callable[[BaseException], bool]] = None,
        fallback: Optional[Callable[[Exception], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.timeout = timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout = reset_timeout
        self.rolling_window = rolling_window
        self.volume_threshold = volume_threshold
        self.error_filter = error_filter
        self.fallback = fallback
        self.clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        self._check_state_transition()
        return self._state

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    @property
    def failure_percentage(self) -> float:
        """Failure percentage over the rolling window."""
        self._prune(self.clock())
        if not self._outcomes:
            return 0.0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures / len(self._outcomes) * 100

    def _prune(self, now: float) -> None:
        horizon = now - self.rolling_window
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _check_state_transition(self) -> None:
        """Move OPEN to HALF_OPEN once the reset timeout has elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.reset_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state."""
        old_state = self._state
        if old_state == new_state:
            return
        now = self.clock()
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = now

        if new_state == CircuitState.OPEN:
            self._opened_at = now
            self._trial_in_flight = False
            level = "warning"
        elif new_state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            level = "info"
        else:
            self._opened_at = None
            self._trial_in_flight = False
            self._outcomes.clear()
            level = "info"

        log_action(
            logger, level, f"Circuit breaker {new_state.value} for {self.name}",
            action="circuit_state_change", resource=f"circuit:{self.name}",
            extra={"from": old_state.value, "to": new_state.value}
        )

    def allow_request(self) -> bool:
        """Check if a request should be allowed; claims the trial slot when half-open."""
        self._check_state_transition()
        self._stats.total_requests += 1

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True

        self._stats.rejected_requests += 1
        return False

    def record_success(self) -> None:
        """Record a successful request."""
        now = self.clock()
        self._stats.successful_requests += 1
        self._stats.last_success_time = now

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)
            return
        self._outcomes.append((now, True))

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        """Record a failed request."""
        now = self.clock()
        self._stats.failed_requests += 1
        self._stats.last_failure_time = now

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._transition_to(CircuitState.OPEN)
            return

        self._outcomes.append((now, False))
        if self._state == CircuitState.CLOSED:
            self._prune(now)
            if (len(self._outcomes) >= self.volume_threshold
                    and self.failure_percentage > self.error_threshold_percentage):
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Reset circuit to closed state."""
        self._transition_to(CircuitState.CLOSED)
        self._outcomes.clear()

    def force_open(self) -> None:
        """Force circuit to open state (for maintenance)."""
        self._transition_to(CircuitState.OPEN)
        self._opened_at = self.clock()

    def _is_filtered(self, error: BaseException) -> bool:
        return self.error_filter is not None and self.error_filter(error)

    async def _fallback(self, error: Exception) -> Any:
        if self.fallback is None:
            raise error
        result = self.fallback(error)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _abandon(self, task: asyncio.Future) -> None:
        """Done callback for timed-out calls that finish in the background."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_action(
                logger, "error", f"Abandoned call on {self.name} failed after timeout",
                action="circuit_abandoned_call", resource=f"circuit:{self.name}",
                extra={"error": repr(error)}
            )

    async def fire(self, operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Execute an async operation through the circuit breaker.

        Args:
            operation: Coroutine function to call
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Operation result, or the fallback value when rejected/timed out

        Raises:
            Whatever the operation raises (counted unless filtered), or
            CircuitOpenError/CallTimeout when no fallback is configured
        """
        if not self.allow_request():
            return await self._fallback(CircuitOpenError(self.name))

        task = asyncio.ensure_future(operation(*args, **kwargs))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            # Caller went away; the call keeps running and settles the trial slot
            task.add_done_callback(self._settle_detached)
            raise

        if not done:
            self._stats.timeouts += 1
            self.record_failure()
            task.add_done_callback(self._abandon)
            return await self._fallback(CallTimeout(self.name, self.timeout))

        try:
            result = task.result()
        except Exception as e:
            if self._is_filtered(e):
                self.record_success()
            else:
                self.record_failure(e)
                log_action(
                    logger, "error", f"Circuit breaker {self.name} captured failure: {e}",
                    action="circuit_failure", resource=f"circuit:{self.name}",
                    extra={"error": repr(e)}
                )
            raise

        self.record_success()
        return result

    def _settle_detached(self, task: asyncio.Future) -> None:
        """Record the outcome of a call whose caller was cancelled."""
        if task.cancelled():
            self.record_failure()
            return
        error = task.exception()
        if error is None or self._is_filtered(error):
            self.record_success()
        else:
            self.record_failure(error)
