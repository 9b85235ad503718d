"""
Custom exceptions for Careslot.
Provides meaningful error types for different failure scenarios.

Booking conflicts and cutoff violations are expected, recoverable outcomes;
their messages read as "try a different time" rather than generic failures.
"""
from typing import Any, Optional


class CareslotException(Exception):
    """Base exception for all Careslot errors."""

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500
    ):
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(CareslotException):
    """Raised when a time range, rule or request is malformed."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details, status_code=422)


class NotFoundError(CareslotException):
    """Raised when a referenced reservation, rule or provider doesn't exist."""

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str
    ):
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details, status_code=404)


class ConflictError(CareslotException):
    """
    Raised when a window is no longer free at commit time.

    The caller should re-list available slots and pick again; the
    system never retries on its behalf.
    """

    def __init__(
        self,
        message: str = "This slot is no longer available. Please choose a different time.",
        provider_id: Optional[str] = None,
        slot_date: Optional[str] = None,
        start_time: Optional[str] = None,
        conflicting_reservation_id: Optional[str] = None
    ):
        details: dict[str, Any] = {"retry_hint": "relist"}
        if provider_id:
            details["provider_id"] = provider_id
        if slot_date:
            details["slot_date"] = slot_date
        if start_time:
            details["start_time"] = start_time
        if conflicting_reservation_id:
            details["conflicting_reservation_id"] = conflicting_reservation_id

        super().__init__(message, details, status_code=409)


class InvalidTransitionError(CareslotException):
    """Raised on a reservation state machine violation."""

    def __init__(
        self,
        message: str,
        reservation_id: str,
        current_status: str,
        attempted_status: str
    ):
        details = {
            "reservation_id": reservation_id,
            "current_status": current_status,
            "attempted_status": attempted_status,
        }
        super().__init__(message, details, status_code=409)


class CutoffExceededError(CareslotException):
    """Raised when a reschedule/cancel is attempted inside the minimum-notice window."""

    def __init__(
        self,
        reservation_id: str,
        min_notice_hours: float,
        hours_until_start: float,
        message: Optional[str] = None
    ):
        if message is None:
            message = (
                f"Changes need at least {min_notice_hours:g} hours notice. "
                "Please contact the clinic or try a different time."
            )
        details = {
            "reservation_id": reservation_id,
            "min_notice_hours": min_notice_hours,
            "hours_until_start": round(hours_until_start, 2),
        }
        super().__init__(message, details, status_code=409)


class LockTimeoutError(CareslotException):
    """Raised when the (provider, date) booking lock cannot be acquired in time."""

    def __init__(
        self,
        provider_id: str,
        slot_date: str,
        timeout_seconds: float
    ):
        details = {
            "provider_id": provider_id,
            "slot_date": slot_date,
            "timeout_seconds": timeout_seconds,
            "retryable": True,
        }
        super().__init__(
            "The schedule is busy right now. Please try again.",
            details,
            status_code=503
        )


class DatabaseError(CareslotException):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[str] = None
    ):
        details = {}
        if table:
            details["table"] = table
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = original_error

        super().__init__(message, details, status_code=500)


class UpstreamSourceError(CareslotException):
    """Raised when an external status store for one entity type is unreachable."""

    def __init__(
        self,
        message: str,
        entity_type: str,
        original_error: Optional[str] = None
    ):
        details = {"entity_type": entity_type}
        if original_error:
            details["original_error"] = original_error

        super().__init__(message, details, status_code=502)
