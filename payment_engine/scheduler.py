"""
Mandate Scheduler Module

Periodic sweep over active mandates. Each tick evaluates every active
mandate, debits the ones whose frequency boundary has passed through the
ledger, and advances their schedule. The sweep bypasses the admission queue;
the ledger's row locks keep it from racing interactive payments.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .accounts import AccountStore
from .config import EngineConfig, get_config
from .errors import InsufficientFunds
from .ledger import Ledger
from .logging_config import get_logger, log_action
from .mandates import Mandate, MandateEventType, MandateService, MandateStatus
from .money import format_amount
from .storage import utcnow
from .transactions import TransactionStatus

logger = get_logger("payment_engine.scheduler")

# Outcomes of evaluating one mandate
TRIGGERED = "triggered"
FAILED = "failed"
SKIPPED = "skipped"
EXPIRED = "expired"


@dataclass
class SweepReport:
    """Summary of one scheduler tick"""
    started_at: datetime
    evaluated: int = 0
    triggered: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    errors: List[str] = field(default_factory=list)

    def count(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "evaluated": self.evaluated,
            "triggered": self.triggered,
            "failed": self.failed,
            "skipped": self.skipped,
            "expired": self.expired,
            "errors": list(self.errors),
        }


class MandateScheduler:
    """
    Time-driven mandate sweeper.

    ``run_tick`` can be driven directly (tests, admin tooling) or by the
    background loop started with ``start()``. Two sweeps never overlap.
    """

    def __init__(
        self,
        mandate_service: MandateService,
        account_store: AccountStore,
        ledger: Ledger,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.mandate_service = mandate_service
        self.store = mandate_service.store
        self.account_store = account_store
        self.ledger = ledger
        self.config = config or get_config()
        self.clock = clock
        self._sweeping = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Run ticks in the background every ``scheduler_tick_seconds``"""
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop(), name="mandate-scheduler")
        log_action(
            logger, "info", "Mandate scheduler started", action="scheduler_start",
            extra={"tick_seconds": self.config.scheduler_tick_seconds}
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log_action(logger, "info", "Mandate scheduler stopped", action="scheduler_stop")

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.scheduler_tick_seconds)
            try:
                await self.run_tick()
            except Exception:
                log_action(
                    logger, "error", "Mandate sweep aborted", action="scheduler_tick",
                    exc_info=True
                )

    async def run_tick(self, now: Optional[datetime] = None) -> Optional[SweepReport]:
        """
        Sweep every active mandate once.

        Returns:
            SweepReport, or None if another sweep was still running
        """
        if self._sweeping:
            log_action(
                logger, "warning", "Previous mandate sweep still running, tick skipped",
                action="scheduler_tick"
            )
            return None

        self._sweeping = True
        try:
            now = now or self.clock()
            report = SweepReport(started_at=now)
            for mandate in await self.store.find_active():
                report.evaluated += 1
                try:
                    outcome = await self._process(mandate.id, now)
                except Exception as e:
                    report.count(FAILED)
                    report.errors.append(f"{mandate.id}: {e}")
                    log_action(
                        logger, "error", f"Mandate processing failed: {e}",
                        user_id=mandate.sender_id, action="mandate_trigger",
                        resource=f"mandate:{mandate.id}", exc_info=True
                    )
                    continue
                report.count(outcome)
        finally:
            self._sweeping = False

        log_action(
            logger, "info", "Mandate sweep finished", action="scheduler_tick",
            extra=report.to_dict()
        )
        return report

    async def _process(self, mandate_id: str, now: datetime) -> str:
        async with self.store.locked(mandate_id):
            # Re-read under the lock; the mandate may have been paused meanwhile
            mandate = await self.store.find_by_id(mandate_id)
            if mandate is None or mandate.status != MandateStatus.ACTIVE:
                return SKIPPED

            if mandate.has_ended(now):
                if self.config.mandate_auto_expire:
                    await self.mandate_service.expire(mandate, now)
                    return EXPIRED
                return SKIPPED
            if not mandate.in_window(now):
                return SKIPPED

            due = mandate.due_at()
            if now < due:
                return SKIPPED

            sender = await self.account_store.find_by_id(mandate.sender_id)
            receiver = await self.account_store.find_by_id(mandate.receiver_id)
            if not sender or not receiver:
                log_action(
                    logger, "warning", "Mandate account missing, skipped",
                    user_id=mandate.sender_id, action="mandate_trigger",
                    resource=f"mandate:{mandate.id}",
                    extra={"sender_found": bool(sender), "receiver_found": bool(receiver)}
                )
                return SKIPPED

            return await self._debit(mandate, due, now)

    async def _debit(self, mandate: Mandate, due: datetime, now: datetime) -> str:
        """
        Charge one due boundary.

        The transfer, its outcome event and the schedule advance commit
        together; a failure after the debit leaves the boundary unpaid and
        still due.
        """
        try:
            async with self.store.storage.atomic():
                result = await self.ledger.transfer(
                    mandate.sender_id, mandate.receiver_id, mandate.amount_max,
                    TransactionStatus.SUCCESS
                )
                await self.store.append_event(
                    mandate.id, MandateEventType.PAYMENT_SUCCESS,
                    f"{format_amount(mandate.amount_max)} paid successfully.",
                    amount_debited=mandate.amount_max,
                    transaction_id=result.transaction.id,
                    executed_at=now
                )
                await self._advance(mandate, due, now)
        except InsufficientFunds:
            async with self.store.storage.atomic():
                await self.store.append_event(
                    mandate.id, MandateEventType.PAYMENT_FAILED,
                    "Insufficient balance for mandate payment.",
                    executed_at=now
                )
                await self._advance(mandate, due, now)
            log_action(
                logger, "warning", "Mandate payment failed: insufficient balance",
                user_id=mandate.sender_id, action="mandate_trigger",
                resource=f"mandate:{mandate.id}", extra={"amount": str(mandate.amount_max)}
            )
            return FAILED

        log_action(
            logger, "info", "Mandate payment succeeded",
            user_id=mandate.sender_id, action="mandate_trigger",
            resource=f"mandate:{mandate.id}",
            extra={"transaction_id": result.transaction.id, "amount": str(mandate.amount_max)}
        )
        return TRIGGERED

    async def _advance(self, mandate: Mandate, due: datetime, now: datetime) -> None:
        """Move the schedule one interval past the instant just processed"""
        async with self.store.storage.atomic():
            mandate.next_payment_date = due + mandate.interval
            await self.store.save(mandate)
            await self.store.append_event(
                mandate.id, MandateEventType.NEXT_TRIGGER,
                f"Next payment scheduled for {mandate.next_payment_date.isoformat()}",
                executed_at=now
            )
