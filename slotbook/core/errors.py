"""Typed errors raised by the booking core.

Every error carries a stable ``code`` and a ``context`` dict (slot ids,
conflicting siblings, capacity numbers) so callers can render an actionable
message. The HTTP layer maps ``status_code`` straight onto the response.
"""


class BookingError(Exception):
    """Base exception for booking core errors."""

    code = "booking_error"
    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "context": _jsonable(self.context)}


# ---- Validation (client-fixable) ----

class ValidationFailed(BookingError):
    status_code = 422


class InvalidRange(ValidationFailed):
    """End is not after start (time range or date range)."""

    code = "InvalidRange"


class OverlapConflict(ValidationFailed):
    """Time range collides with another slot of the same kind."""

    code = "OverlapConflict"


class CapacityOutOfBounds(ValidationFailed):
    code = "CapacityOutOfBounds"


class DuplicateSlotDefinition(ValidationFailed):
    """The same label and kind appear twice in one creation call."""

    code = "DuplicateSlotDefinition"


# ---- Capacity (expected under load) ----

class CapacityError(BookingError):
    status_code = 409


class SlotSaturated(CapacityError):
    code = "SlotSaturated"


class CapacityConflict(CapacityError):
    """Capacity edit would drop below the admitted bookings."""

    code = "CapacityConflict"


# ---- State ----

class StateError(BookingError):
    status_code = 409


class AlreadyResolved(StateError):
    code = "AlreadyResolved"


class HasBookings(StateError):
    code = "HasBookings"


class NoMatchingSlot(StateError):
    code = "NoMatchingSlot"


class SlotInactive(StateError):
    """The slot was deactivated before the admission could lock it."""

    code = "SlotInactive"


class InvalidTransition(StateError):
    code = "InvalidTransition"


class NotFound(BookingError):
    code = "NotFound"
    status_code = 404


# ---- Infrastructure ----

class StorageUnavailable(BookingError):
    code = "StorageUnavailable"
    status_code = 503


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
