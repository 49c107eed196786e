"""
shared/exceptions.py
Typed scheduling errors. Each carries a stable code so the API layer and
clients can tell them apart; main.py maps them onto HTTP responses.
"""

from typing import Any, Dict, List, Optional


class SchedulingError(Exception):
    """Base class for all errors raised by the scheduling engine."""

    code = "SCHEDULING_ERROR"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class ValidationError(SchedulingError):
    """Malformed or overlapping availability input. Lists every violation."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, violations: List[str]):
        super().__init__("; ".join(violations))
        self.violations = violations

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "violations": self.violations}


class NoCreditError(SchedulingError):
    """Student has no active package with remaining lessons."""

    code = "NO_CREDIT"
    status_code = 402

    def __init__(self, student_id: Any):
        super().__init__("No active package with remaining lessons. Please purchase or renew a package.")
        self.student_id = student_id


class SlotUnavailableError(SchedulingError):
    """The requested time range overlaps a SCHEDULED booking of the teacher."""

    code = "SLOT_UNAVAILABLE"
    status_code = 409

    def __init__(self, teacher_id: Any, start, end):
        super().__init__(
            "This time slot is no longer available. Please refresh the available slots and pick another one."
        )
        self.teacher_id = teacher_id
        self.start = start
        self.end = end


class InvalidTransitionError(SchedulingError):
    """Illegal booking state transition requested."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, booking_id: Any, current: str, requested: str, reason: Optional[str] = None):
        message = f"Cannot move booking from {current} to {requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.booking_id = booking_id
        self.current = current
        self.requested = requested


class BookingNotFoundError(SchedulingError):
    code = "BOOKING_NOT_FOUND"
    status_code = 404

    def __init__(self, booking_id: Any):
        super().__init__("Booking not found")
        self.booking_id = booking_id


class BookingOutcomeUnknownError(SchedulingError):
    """
    A reservation write did not finish in time. The booking may or may not
    exist; callers must look it up by idempotency key before retrying.
    """

    code = "OUTCOME_UNKNOWN"
    status_code = 504

    def __init__(self, idempotency_key: Optional[str]):
        super().__init__(
            "Reservation outcome unknown. Look the booking up by its idempotency key before retrying."
        )
        self.idempotency_key = idempotency_key

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "idempotency_key": self.idempotency_key}
