from slotbook.modules.bookings.models import BookingStatus as S

# Admitted lifecycle. Cancellation is open to every non-terminal status,
# no-show only before check-in.
VALID_NEXT: dict[S, set[S]] = {
    S.SCHEDULED: {S.CHECKED_IN, S.CANCELLED, S.NO_SHOW},
    S.CHECKED_IN: {S.IN_PROGRESS, S.CANCELLED},
    S.IN_PROGRESS: {S.COMPLETED, S.CANCELLED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
    S.NO_SHOW: set(),
    S.RESCHEDULED: set(),
}

# only bookings nobody has started on can move to another slot
RESCHEDULABLE = {S.SCHEDULED}


def can_transition(current: S, nxt: S) -> bool:
    return nxt in VALID_NEXT.get(current, set())
