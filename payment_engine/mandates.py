"""
Mandates Module

Recurring payment authorizations ("autopay"). A mandate lets the scheduler
debit up to ``amount_max`` from the sender to the receiver on every
frequency boundary between its start and end dates. Every transition and
every scheduled attempt is recorded as an append-only MandateEvent, which is
the mandate's only audit trail.
"""

from decimal import Decimal
from datetime import date, datetime, time, timedelta, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum
import time as _time
import uuid

from .accounts import AccountStore
from .async_storage import AsyncStorageInterface, RowLocks
from .errors import AccountNotFound, InvalidRequest, NotFound
from .logging_config import get_logger, log_action
from .money import ZERO, AmountLike, to_positive_amount
from .storage import StorageRecord, parse_datetime, utcnow

DateLike = Union[datetime, date, str]


class MandateStatus(Enum):
    """Mandate lifecycle states"""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (MandateStatus.CANCELLED, MandateStatus.EXPIRED)


class MandateFrequency(Enum):
    """How often a mandate is due"""
    EVERY_2_MINUTES = "2min"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ON_DEMAND = "asNeeded"


FREQUENCY_INTERVALS = {
    MandateFrequency.EVERY_2_MINUTES: timedelta(minutes=2),
    MandateFrequency.DAILY: timedelta(days=1),
    MandateFrequency.WEEKLY: timedelta(days=7),
    MandateFrequency.MONTHLY: timedelta(days=30),
    MandateFrequency.YEARLY: timedelta(days=365),
}


def interval_for(frequency: Union[MandateFrequency, str, None]) -> timedelta:
    """Interval between payments; on-demand and unknown frequencies fall back to monthly"""
    if not isinstance(frequency, MandateFrequency):
        try:
            frequency = MandateFrequency(frequency)
        except ValueError:
            return FREQUENCY_INTERVALS[MandateFrequency.MONTHLY]
    return FREQUENCY_INTERVALS.get(frequency, FREQUENCY_INTERVALS[MandateFrequency.MONTHLY])


class MandateEventType(Enum):
    """Kinds of mandate audit entry"""
    CREATED = "created"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    NEXT_TRIGGER = "next_trigger"


# Status changes a user may request
USER_STATUS_CHANGES = (MandateStatus.PAUSED, MandateStatus.CANCELLED, MandateStatus.EXPIRED)


def to_instant(value: Optional[DateLike]) -> Optional[datetime]:
    """Normalize a date, datetime or ISO string to an aware UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    try:
        return parse_datetime(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid date: {value!r}")


@dataclass
class Mandate(StorageRecord):
    """
    Recurring debit authorization

    ``next_payment_date`` holds the next due instant once the first
    scheduled attempt has happened; until then the first payment is due
    one interval after ``start_date``.
    """
    sender_id: str
    receiver_id: str
    amount_max: Decimal
    frequency: MandateFrequency
    start_date: datetime
    end_date: Optional[datetime] = None
    next_payment_date: Optional[datetime] = None
    status: MandateStatus = MandateStatus.ACTIVE

    def __post_init__(self):
        if self.amount_max <= ZERO:
            raise ValueError("Mandate amount must be positive")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("Mandate end date cannot precede its start date")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Mandate':
        data = dict(data)
        data['amount_max'] = Decimal(data['amount_max'])
        data['frequency'] = MandateFrequency(data['frequency'])
        data['status'] = MandateStatus(data['status'])
        data['start_date'] = parse_datetime(data['start_date'])
        data['end_date'] = parse_datetime(data.get('end_date'))
        data['next_payment_date'] = parse_datetime(data.get('next_payment_date'))
        return super().from_dict(data)

    @property
    def interval(self) -> timedelta:
        return interval_for(self.frequency)

    def due_at(self) -> datetime:
        """Instant the next payment becomes due"""
        return self.next_payment_date or (self.start_date + self.interval)

    def in_window(self, now: datetime) -> bool:
        """True when ``start_date <= now <= end_date`` (open-ended without an end date)"""
        if now < self.start_date:
            return False
        return self.end_date is None or now <= self.end_date

    def has_ended(self, now: datetime) -> bool:
        return self.end_date is not None and now > self.end_date

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "amount_max": str(self.amount_max),
            "frequency": self.frequency.value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "next_payment_date": self.next_payment_date.isoformat() if self.next_payment_date else None,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class MandateEvent(StorageRecord):
    """Append-only audit entry for a mandate"""
    mandate_id: str
    event_type: MandateEventType
    message: str
    amount_debited: Decimal = ZERO
    transaction_id: Optional[str] = None
    executed_at: Optional[datetime] = None
    sequence: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MandateEvent':
        data = dict(data)
        data['event_type'] = MandateEventType(data['event_type'])
        data['amount_debited'] = Decimal(data['amount_debited'])
        data['executed_at'] = parse_datetime(data.get('executed_at'))
        return super().from_dict(data)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mandate_id": self.mandate_id,
            "event_type": self.event_type.value,
            "message": self.message,
            "amount_debited": str(self.amount_debited),
            "transaction_id": self.transaction_id,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }


class MandateStore:
    """Mandate and mandate-event persistence"""

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage
        self.table_name = "mandates"
        self.events_table = "mandate_events"
        self._row_locks = RowLocks()

    def locked(self, mandate_id: str):
        """Hold the row lock for a mandate"""
        return self._row_locks.locked(mandate_id)

    async def find_by_id(self, mandate_id: str) -> Optional[Mandate]:
        data = await self.storage.load(self.table_name, mandate_id)
        return Mandate.from_dict(data) if data else None

    async def find_active(self) -> List[Mandate]:
        rows = await self.storage.find(self.table_name, {"status": MandateStatus.ACTIVE.value})
        return sorted((Mandate.from_dict(row) for row in rows), key=lambda m: m.created_at)

    async def save(self, mandate: Mandate) -> None:
        mandate.updated_at = utcnow()
        await self.storage.save(self.table_name, mandate.id, mandate.to_dict())

    async def append_event(
        self,
        mandate_id: str,
        event_type: MandateEventType,
        message: str,
        amount_debited: Decimal = ZERO,
        transaction_id: Optional[str] = None,
        executed_at: Optional[datetime] = None
    ) -> MandateEvent:
        now = utcnow()
        event = MandateEvent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            mandate_id=mandate_id,
            event_type=event_type,
            message=message,
            amount_debited=amount_debited,
            transaction_id=transaction_id,
            executed_at=executed_at or now,
            sequence=_time.time_ns(),
        )
        await self.storage.save(self.events_table, event.id, event.to_dict())
        return event

    async def events_for(self, mandate_id: str) -> List[MandateEvent]:
        """Events of a mandate in the order they were recorded"""
        rows = await self.storage.find(self.events_table, {"mandate_id": mandate_id})
        return sorted((MandateEvent.from_dict(row) for row in rows), key=lambda e: e.sequence)


class MandateService:
    """
    User-facing mandate operations
    """

    def __init__(
        self,
        mandate_store: MandateStore,
        account_store: AccountStore,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = mandate_store
        self.account_store = account_store
        self.clock = clock
        self.logger = get_logger("payment_engine.mandates")

    async def create_mandate(
        self,
        sender_id: str,
        receiver_id: str,
        amount: AmountLike,
        frequency: Union[MandateFrequency, str],
        start_date: DateLike,
        end_date: Optional[DateLike] = None
    ) -> Mandate:
        """
        Create an active mandate and record its ``created`` event

        Raises:
            InvalidRequest: Missing fields, bad amount, unknown frequency,
                end date before start date, or sender == receiver
            AccountNotFound: Sender or receiver does not exist
        """
        if not sender_id or not receiver_id or amount is None or not frequency or not start_date:
            raise InvalidRequest("All mandate fields are required")
        if sender_id == receiver_id:
            raise InvalidRequest("Sender and receiver must be different accounts")

        amount = to_positive_amount(amount)
        try:
            frequency = MandateFrequency(frequency)
        except ValueError:
            raise InvalidRequest(
                f"Invalid frequency: {frequency}",
                allowed=[f.value for f in MandateFrequency]
            )
        start = to_instant(start_date)
        end = to_instant(end_date)
        if end is not None and end < start:
            raise InvalidRequest("End date cannot be before start date")

        for account_id in (sender_id, receiver_id):
            if not await self.account_store.find_by_id(account_id):
                raise AccountNotFound(account_id)

        now = self.clock()
        mandate = Mandate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount_max=amount,
            frequency=frequency,
            start_date=start,
            end_date=end,
        )
        async with self.store.storage.atomic():
            await self.store.save(mandate)
            await self.store.append_event(
                mandate.id, MandateEventType.CREATED,
                "Mandate successfully created by user",
                amount_debited=amount, executed_at=now
            )

        log_action(
            self.logger, "info", "Mandate created",
            user_id=sender_id, action="create_mandate", resource=f"mandate:{mandate.id}",
            extra={
                "receiver_id": receiver_id,
                "amount_max": str(amount),
                "frequency": frequency.value
            }
        )
        return mandate

    async def get_mandate(self, mandate_id: str, caller_id: Optional[str] = None) -> Mandate:
        """Load a mandate; when caller_id is given it must be the sender"""
        mandate = await self.store.find_by_id(mandate_id)
        if not mandate:
            raise NotFound("Mandate not found.", mandate_id=mandate_id)
        if caller_id is not None and caller_id != mandate.sender_id:
            raise InvalidRequest("You can only view your own mandates.")
        return mandate

    async def update_status(
        self,
        mandate_id: str,
        status: Union[MandateStatus, str],
        reason: Optional[str] = None,
        caller_id: Optional[str] = None
    ) -> Mandate:
        """
        Pause, cancel or expire a mandate

        Args:
            mandate_id: Mandate to change
            status: paused, cancelled or expired
            reason: Free-text reason recorded on the event
            caller_id: When given, must be the mandate's sender

        Raises:
            InvalidRequest: Status not allowed, mandate already terminal or
                already in that status, or caller is not the sender
            NotFound: Unknown mandate
        """
        try:
            status = MandateStatus(status)
        except ValueError:
            status = None
        if status not in USER_STATUS_CHANGES:
            raise InvalidRequest("Invalid status. Use paused, cancelled, or expired.")

        async with self.store.locked(mandate_id):
            mandate = await self.get_mandate(mandate_id)
            if caller_id is not None and caller_id != mandate.sender_id:
                raise InvalidRequest("You can only update your own mandates.")
            await self._transition(mandate, status, reason or f"{status.value} triggered")
        return mandate

    async def expire(self, mandate: Mandate, now: datetime) -> None:
        """Policy expiry of a mandate whose end date has passed; caller holds the row lock"""
        await self._transition(
            mandate, MandateStatus.EXPIRED,
            f"Mandate expired after end date {mandate.end_date.isoformat()}",
            executed_at=now
        )

    async def _transition(self, mandate: Mandate, status: MandateStatus, message: str,
                          executed_at: Optional[datetime] = None) -> None:
        if mandate.status.is_terminal:
            raise InvalidRequest(f"Mandate is already {mandate.status.value}.")
        if mandate.status == status:
            raise InvalidRequest(f"Mandate is already {status.value}.")

        previous = mandate.status
        mandate.status = status
        async with self.store.storage.atomic():
            await self.store.save(mandate)
            await self.store.append_event(
                mandate.id, MandateEventType(status.value), message,
                executed_at=executed_at or self.clock()
            )

        log_action(
            self.logger, "info", f"Mandate {status.value}",
            user_id=mandate.sender_id, action="mandate_status", resource=f"mandate:{mandate.id}",
            extra={"from": previous.value, "to": status.value, "message": message}
        )

    async def list_events(self, mandate_id: str,
                          caller_id: Optional[str] = None) -> List[MandateEvent]:
        """Audit trail of a mandate; NotFound when nothing was recorded"""
        if caller_id is not None:
            await self.get_mandate(mandate_id, caller_id)
        events = await self.store.events_for(mandate_id)
        if not events:
            raise NotFound("No events found for this mandate.", mandate_id=mandate_id)
        return events
