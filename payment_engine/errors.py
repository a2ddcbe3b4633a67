"""
Error Taxonomy Module

Closed set of error kinds shared by every component, plus the result
envelope that queued operations resolve to. Domain code raises
EngineError subclasses; the admission queue turns them into results.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Every failure a caller can observe"""
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    INVALID_CREDENTIAL = "invalid_credential"
    INVALID_PIN = "invalid_pin"
    ACCOUNT_LOCKED = "account_locked"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INTERNAL_FAILURE = "internal_failure"


class EngineError(Exception):
    """Base class for all payment engine errors"""

    kind: ErrorKind = ErrorKind.INTERNAL_FAILURE

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used by the HTTP layer and logs"""
        result = {"error": self.kind.value, "message": self.message}
        if self.detail:
            result["detail"] = self.detail
        return result


class NotFound(EngineError):
    """Account, mandate, product or transaction does not exist"""
    kind = ErrorKind.NOT_FOUND


class AccountNotFound(NotFound):
    """Sender or receiver account does not resolve"""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", account_id=account_id)
        self.account_id = account_id


class InvalidRequest(EngineError):
    """Input rejected before any state was touched"""
    kind = ErrorKind.INVALID_REQUEST


class InvalidCredential(EngineError):
    """Wrong password"""
    kind = ErrorKind.INVALID_CREDENTIAL


class InvalidPin(EngineError):
    """Wrong payment PIN"""
    kind = ErrorKind.INVALID_PIN


class AccountLocked(EngineError):
    """Account is locked; carries the remaining lockout in whole minutes"""
    kind = ErrorKind.ACCOUNT_LOCKED

    def __init__(self, remaining_minutes: int, message: Optional[str] = None):
        super().__init__(
            message or f"Account is locked. Try again after {remaining_minutes} minutes.",
            remaining_minutes=remaining_minutes,
        )
        self.remaining_minutes = remaining_minutes


class InsufficientFunds(EngineError):
    """Sender balance is below the requested amount"""
    kind = ErrorKind.INSUFFICIENT_FUNDS


class ServiceUnavailable(EngineError):
    """Circuit open, call timed out, or queue over capacity"""
    kind = ErrorKind.SERVICE_UNAVAILABLE


class InternalFailure(EngineError):
    """Unexpected failure (store errors, bugs)"""
    kind = ErrorKind.INTERNAL_FAILURE


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """
    Outcome of one queued operation: exactly one of value or error is set.
    """
    value: Optional[T] = None
    error: Optional[EngineError] = None

    @classmethod
    def success(cls, value: T) -> 'OperationResult[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: EngineError) -> 'OperationResult[T]':
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Return the value or raise the carried error"""
        if self.error is not None:
            raise self.error
        return self.value
