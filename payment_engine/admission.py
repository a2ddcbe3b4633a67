"""
Admission Queue Module

Serializes mutating requests per operation class. Each class has one FIFO
and one worker; the worker takes the next task only once the previous one
has settled through the class's circuit breaker. Different classes drain
concurrently. Every submitted task resolves to an OperationResult, so a
failure in one task never stops the worker loop.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
import time

from .circuit_breaker import CircuitBreaker
from .config import EngineConfig, get_config
from .errors import EngineError, InternalFailure, OperationResult, ServiceUnavailable
from .logging_config import get_logger, log_action

logger = get_logger("payment_engine.admission")

Task = Callable[[], Awaitable[Any]]


class OperationClass(str, Enum):
    """Kinds of mutating request, each with its own queue and breaker"""
    LOGIN = "login"
    PAYMENT = "payment"
    PIN_RESET = "pin_reset"
    PASSWORD_RESET = "password_reset"
    PRODUCT_PURCHASE = "product_purchase"
    MANDATE_UPDATE = "mandate_update"


def is_expected_outcome(error: BaseException) -> bool:
    """Domain errors are answers, not faults; only InternalFailure trips a breaker."""
    return isinstance(error, EngineError) and not isinstance(error, InternalFailure)


def _unavailable(error: Exception) -> OperationResult:
    if isinstance(error, EngineError):
        return OperationResult.failure(error)
    return OperationResult.failure(ServiceUnavailable(str(error)))


class AdmissionQueue:
    """
    Per-operation-class FIFO serializer.

    Usage:
        async with AdmissionQueue(config) as queue:
            result = await queue.submit(OperationClass.PAYMENT, lambda: pay(...))
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        classes: Iterable[OperationClass] = tuple(OperationClass),
        clock: Callable[[], float] = time.monotonic
    ):
        self.config = config or get_config()
        self._queues: Dict[OperationClass, asyncio.Queue] = {}
        self._workers: Dict[OperationClass, asyncio.Task] = {}
        self._breakers: Dict[OperationClass, CircuitBreaker] = {
            op_class: self._make_breaker(op_class, clock) for op_class in classes
        }
        self._sequence = 0
        self._running = False

    def _make_breaker(self, op_class: OperationClass, clock: Callable[[], float]) -> CircuitBreaker:
        return CircuitBreaker(
            name=op_class.value,
            timeout=self.config.breaker_timeout_seconds,
            error_threshold_percentage=self.config.breaker_error_threshold_percentage,
            reset_timeout=self.config.reset_timeout_for(op_class.value),
            rolling_window=self.config.breaker_rolling_window_seconds,
            volume_threshold=self.config.breaker_volume_threshold,
            error_filter=is_expected_outcome,
            fallback=_unavailable,
            clock=clock,
        )

    def breaker(self, op_class: OperationClass) -> CircuitBreaker:
        return self._breakers[op_class]

    @property
    def breakers(self) -> Dict[OperationClass, CircuitBreaker]:
        return dict(self._breakers)

    @property
    def running(self) -> bool:
        return self._running

    def pending(self, op_class: OperationClass) -> int:
        """Tasks waiting behind the one in flight"""
        queue = self._queues.get(op_class)
        return queue.qsize() if queue else 0

    async def start(self) -> None:
        """Start one worker per operation class"""
        if self._running:
            return
        self._running = True
        for op_class in self._breakers:
            self._ensure_worker(op_class)
        log_action(
            logger, "info", "Admission queue started", action="queue_start",
            extra={"classes": [c.value for c in self._breakers]}
        )

    async def stop(self) -> None:
        """Stop the workers; tasks still waiting resolve to ServiceUnavailable"""
        if not self._running:
            return
        self._running = False
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()

        for op_class, queue in self._queues.items():
            while not queue.empty():
                _, future, _ = queue.get_nowait()
                if not future.done():
                    future.set_result(OperationResult.failure(
                        ServiceUnavailable("Admission queue stopped", operation_class=op_class.value)
                    ))
                queue.task_done()
        log_action(logger, "info", "Admission queue stopped", action="queue_stop")

    async def __aenter__(self) -> 'AdmissionQueue':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _ensure_worker(self, op_class: OperationClass) -> None:
        if op_class not in self._queues:
            self._queues[op_class] = asyncio.Queue()
        worker = self._workers.get(op_class)
        if worker is None or worker.done():
            self._workers[op_class] = asyncio.create_task(
                self._worker(op_class), name=f"admission-{op_class.value}"
            )

    def submit(self, op_class: OperationClass, task: Task) -> 'asyncio.Future[OperationResult]':
        """
        Enqueue a zero-argument coroutine function.

        Returns immediately with a future resolving to an OperationResult.
        Cancelling the future does not cancel the task; its result is dropped.
        """
        if op_class not in self._breakers:
            raise ValueError(f"Unknown operation class: {op_class}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        if not self._running:
            future.set_result(OperationResult.failure(
                ServiceUnavailable("Admission queue is not running", operation_class=op_class.value)
            ))
            return future

        self._ensure_worker(op_class)
        queue = self._queues[op_class]
        max_pending = self.config.queue_max_pending
        if max_pending and queue.qsize() >= max_pending:
            log_action(
                logger, "warning", "Admission queue over capacity, request rejected",
                action="queue_reject", resource=f"queue:{op_class.value}",
                extra={"pending": queue.qsize(), "max_pending": max_pending}
            )
            future.set_result(OperationResult.failure(
                ServiceUnavailable("Too many pending requests. Please try again later.",
                                   operation_class=op_class.value)
            ))
            return future

        self._sequence += 1
        queue.put_nowait((task, future, self._sequence))
        return future

    async def join(self, op_class: Optional[OperationClass] = None) -> None:
        """Wait until the given queue (or every queue) has drained"""
        if op_class is not None:
            queues = [self._queues[op_class]] if op_class in self._queues else []
        else:
            queues = list(self._queues.values())
        for queue in queues:
            await queue.join()

    async def _worker(self, op_class: OperationClass) -> None:
        queue = self._queues[op_class]
        breaker = self._breakers[op_class]
        while True:
            task, future, sequence = await queue.get()
            try:
                result = await self._execute(op_class, breaker, task, sequence)
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_result(OperationResult.failure(
                        ServiceUnavailable("Admission queue stopped", operation_class=op_class.value)
                    ))
                raise
            finally:
                queue.task_done()

    async def _execute(self, op_class: OperationClass, breaker: CircuitBreaker,
                       task: Task, sequence: int) -> OperationResult:
        try:
            return await breaker.fire(self._invoke, task)
        except EngineError as e:
            if isinstance(e, InternalFailure):
                self._log_failure(op_class, sequence, e)
            return OperationResult.failure(e)
        except Exception as e:
            self._log_failure(op_class, sequence, e)
            return OperationResult.failure(
                InternalFailure(str(e) or e.__class__.__name__, operation_class=op_class.value)
            )

    @staticmethod
    async def _invoke(task: Task) -> OperationResult:
        return OperationResult.success(await task())

    @staticmethod
    def _log_failure(op_class: OperationClass, sequence: int, error: Exception) -> None:
        log_action(
            logger, "error", f"Queued {op_class.value} task failed: {error}",
            action="queue_task_failed", resource=f"queue:{op_class.value}",
            extra={"sequence": sequence, "error_type": error.__class__.__name__},
            exc_info=True
        )

