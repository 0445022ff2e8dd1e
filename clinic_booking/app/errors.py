# errors.py
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_DATE = "invalid_date"
    UNAUTHORIZED = "unauthorized"
    SLOT_CONFLICT = "slot_conflict"
    DUPLICATE = "duplicate"
    STORE_UNAVAILABLE = "store_unavailable"
    CONFLICT_RETRYABLE = "conflict_retryable"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_REQUEST = "invalid_request"


class BookingError(Exception):
    kind = None

    def __init__(self, detail: str = None):
        super().__init__(detail or self.kind.value)
        self.detail = detail or self.kind.value


class InvalidDate(BookingError):
    kind = ErrorKind.INVALID_DATE


class Unauthorized(BookingError):
    kind = ErrorKind.UNAUTHORIZED


class SlotConflict(BookingError):
    kind = ErrorKind.SLOT_CONFLICT


class Duplicate(BookingError):
    kind = ErrorKind.DUPLICATE


class StoreUnavailable(BookingError):
    kind = ErrorKind.STORE_UNAVAILABLE


class ConflictRetryable(BookingError):
    """A uniqueness constraint caught a concurrent booking; the unit of work may be retried."""
    kind = ErrorKind.CONFLICT_RETRYABLE


class NotFound(BookingError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransition(BookingError):
    kind = ErrorKind.INVALID_TRANSITION


class InvalidRequest(BookingError):
    kind = ErrorKind.INVALID_REQUEST
