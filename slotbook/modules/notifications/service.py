"""Maps committed booking events onto outbound patient messages.

Only confirmed transitions are messaged. The relay calls ``dispatch`` after
the admission transaction has committed, so a failing notifier can never
undo a booking; it only delays the outbox row for another attempt.
"""
import logging
from slotbook.platform.ports.notifier import NotifierPort

log = logging.getLogger(__name__)

# outbox event type -> notifier event name
NOTIFIED_EVENTS: dict[str, str] = {
    "BOOKING_ADMITTED": "booked",
    "BOOKING_RESCHEDULED": "rescheduled",
    "BOOKING_CANCELLED": "cancelled",
}

TEMPLATE_FIELDS = ("patient_name", "provider_id", "slot_label", "scheduled_at", "previous_scheduled_at", "booking_id")


def template_fields(payload: dict) -> dict:
    return {k: payload[k] for k in TEMPLATE_FIELDS if payload.get(k) is not None}


class NotificationDispatcher:
    def __init__(self, notifier: NotifierPort):
        self.notifier = notifier

    async def dispatch(self, event_type: str, payload: dict) -> bool:
        """Send the message for ``event_type`` if it is patient-facing. Returns True when a message went out."""
        event = NOTIFIED_EVENTS.get(event_type)
        if event is None:
            return False
        phone = payload.get("patient_phone")
        if not phone:
            log.info("No phone on %s for booking %s; nothing to send", event_type, payload.get("booking_id"))
            return False
        await self.notifier.send(event, phone, template_fields(payload))
        return True
