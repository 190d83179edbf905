"""
Domain error taxonomy for the rental lifecycle engine.

Services raise these; the HTTP layer renders them through a single exception
handler (see main.create_app). Availability and conflict errors are expected,
frequent outcomes, so each one carries enough structure for a client to
explain why an action failed.
"""
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional


class AvailabilityReason(str, Enum):
    invalid_range = "invalid_range"
    past_date = "past_date"
    blocked_date = "blocked_date"
    out_of_range = "out_of_range"
    below_minimum_duration = "below_minimum_duration"
    already_booked = "already_booked"
    buffer_conflict = "buffer_conflict"


_REASON_MESSAGES = {
    AvailabilityReason.invalid_range: "End date must not be before the start date",
    AvailabilityReason.past_date: "Date is in the past",
    AvailabilityReason.blocked_date: "Date has been blocked by the owner",
    AvailabilityReason.out_of_range: "Date is outside the equipment's available periods",
    AvailabilityReason.below_minimum_duration: "Rental is shorter than the minimum duration",
    AvailabilityReason.already_booked: "Equipment is already booked on this date",
    AvailabilityReason.buffer_conflict: "Date falls inside the maintenance buffer of another booking",
}


class RentalEngineError(Exception):
    code = "rental_error"
    http_status = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        details = {}
        for key, value in self.details.items():
            if isinstance(value, date):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            elif not isinstance(value, (int, float, bool, str, list, dict)):
                value = str(value)
            details[key] = value
        return {"error": self.code, "message": self.message, "details": details}


class AvailabilityError(RentalEngineError):
    code = "availability_error"
    http_status = 422

    def __init__(
        self,
        reason: AvailabilityReason,
        message: Optional[str] = None,
        *,
        date: Optional[date] = None,
        conflicting_rental_id: Optional[Any] = None,
        **details: Any,
    ):
        super().__init__(
            message or _REASON_MESSAGES[reason],
            reason=reason,
            date=date,
            conflicting_rental_id=conflicting_rental_id,
            **details,
        )
        self.reason = reason
        self.date = date
        self.conflicting_rental_id = conflicting_rental_id
        if reason in (AvailabilityReason.already_booked, AvailabilityReason.buffer_conflict):
            self.http_status = 409


class DateConflictError(RentalEngineError):
    """Another approval for an overlapping window won the race."""

    code = "date_conflict"
    http_status = 409

    def __init__(
        self,
        message: str = "Requested dates conflict with another approved booking",
        *,
        conflicting_rental_id: Optional[Any] = None,
        conflicting_start: Optional[date] = None,
        conflicting_end: Optional[date] = None,
        **details: Any,
    ):
        super().__init__(
            message,
            conflicting_rental_id=conflicting_rental_id,
            conflicting_start=conflicting_start,
            conflicting_end=conflicting_end,
            **details,
        )
        self.conflicting_rental_id = conflicting_rental_id


class ValidationError(RentalEngineError):
    code = "validation_error"
    http_status = 422

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field


class IllegalTransitionError(RentalEngineError):
    code = "illegal_transition"
    http_status = 409

    def __init__(self, current: Any, attempted: str, message: Optional[str] = None):
        current_value = getattr(current, "value", current)
        super().__init__(
            message or f"Cannot {attempted} a rental that is {current_value}",
            current_status=current_value,
            attempted=attempted,
        )
        self.current = current_value
        self.attempted = attempted


class NotFoundError(RentalEngineError):
    code = "not_found"
    http_status = 404


class ForbiddenError(RentalEngineError):
    code = "forbidden"
    http_status = 403
