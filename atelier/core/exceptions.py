"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

Every booking failure carries a stable ``kind`` string that is echoed in
the JSON error body so clients can branch on it without parsing messages.

Usage:
    from atelier.core.exceptions import CapacityExceededError, NotFoundError

    raise NotFoundError(resource="Workshop", resource_id=wid)
    raise CapacityExceededError(workshop_id=wid, capacity=12)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Workshop").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Booking taxonomy ─────────────────────────────────────────────────────────

class BookingError(Exception):
    """Base class for expected booking and lifecycle failures."""

    kind = "BookingError"
    http_status = 409

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class DuplicateRegistrationError(BookingError):
    kind = "DuplicateRegistration"

    def __init__(self, user_id: str, workshop_id: str) -> None:
        self.user_id = user_id
        self.workshop_id = workshop_id
        super().__init__(
            f"User {user_id} already holds a registration on workshop {workshop_id}",
            details={"user_id": user_id, "workshop_id": workshop_id},
        )


class CapacityExceededError(BookingError):
    kind = "CapacityExceeded"

    def __init__(self, workshop_id: str, capacity: int) -> None:
        self.workshop_id = workshop_id
        self.capacity = capacity
        super().__init__(
            f"Workshop {workshop_id} is full ({capacity} seats)",
            details={"workshop_id": workshop_id, "capacity": capacity},
        )


class TargetFullError(CapacityExceededError):
    """Exchange target has no remaining seat."""

    kind = "TargetFull"


class InvalidStateError(BookingError):
    """Transition not allowed from the current status."""

    kind = "InvalidState"

    def __init__(self, message: str, *, current: str | None = None, action: str | None = None,
                 reason: str | None = None) -> None:
        self.current_status = current
        self.action = action
        self.reason = reason
        details = {}
        if current is not None:
            details["current_status"] = current
        if action is not None:
            details["action"] = action
        if reason is not None:
            details["reason"] = reason
        super().__init__(message, details=details)


class RefundNotEligibleError(InvalidStateError):
    """Refund requested inside the fee window with no qualifying exemption."""

    def __init__(self, message: str, *, current: str | None = None) -> None:
        super().__init__(message, current=current, action="refund", reason="RefundNotEligible")


class PaymentPendingError(BookingError):
    kind = "PaymentPending"

    def __init__(self, participation_id: str) -> None:
        self.participation_id = participation_id
        super().__init__(
            f"Participation {participation_id} is paid; refund it before removing",
            details={"participation_id": participation_id},
        )


class SameWorkshopError(BookingError):
    kind = "SameWorkshop"
    http_status = 422

    def __init__(self, workshop_id: str) -> None:
        super().__init__(
            "Exchange target must differ from the source workshop",
            details={"workshop_id": workshop_id},
        )


class IncompleteClassificationError(BookingError):
    kind = "IncompleteClassification"
    http_status = 422

    def __init__(self, missing_step: str | None, workshop_id: str | None = None) -> None:
        self.missing_step = missing_step
        self.workshop_id = workshop_id
        msg = "Classification is incomplete"
        if missing_step:
            msg += f": '{missing_step}' is required"
        super().__init__(msg, details={"missing_step": missing_step, "workshop_id": workshop_id})


class RequirementNotMetError(BookingError):
    kind = "RequirementNotMet"
    http_status = 403

    def __init__(self, level: int, reason: str | None = None) -> None:
        self.level = level
        self.reason = reason
        msg = f"Progression level {level} is locked"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"level": level, "reason": reason})


class ConflictOrUnavailableError(BookingError):
    """Concurrent modification or storage failure. Safe to reload and retry."""

    kind = "ConflictOrUnavailable"

    def __init__(self, message: str = "Record changed concurrently, reload and retry",
                 details: dict | None = None) -> None:
        super().__init__(message, details=details)
