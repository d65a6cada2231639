"""
Tests for the outbox relay and patient notifications.

Coverage:
- Publishing and notifying committed events
- Backoff after a failed publish or notification
- A published event is not published again when only its notification is retried
- Webhook notifier over httpx
"""
import json
import uuid
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from conftest import ORG
from slotbook.core.base import naive_utcnow
from slotbook.modules.bookings.schemas import BookingCreate
from slotbook.modules.events.outbox import EventOutbox, TOPIC, relay_once
from slotbook.modules.notifications.service import NotificationDispatcher
from slotbook.platform.adapters.bus_noop import NoopEventBus
from slotbook.platform.adapters.notify_noop import NoopNotifier
from slotbook.platform.adapters.notify_webhook import WebhookNotifier


class FailingBus:
    async def publish(self, topic, key, value, headers=None):
        raise ConnectionError("bus down")


async def _outbox(session):
    res = await session.execute(select(EventOutbox).order_by(EventOutbox.created_at.asc()).execution_options(populate_existing=True))
    return res.scalars().all()


# =============================================================================
# Relay
# =============================================================================

async def test_relay_publishes_and_notifies(controller, make_slot, session):
    slot = await make_slot()
    b = await controller.admit(ORG, BookingCreate(slot_id=slot.id, patient_id=uuid.uuid4(), patient_name="Ravi", patient_phone="+15550002"))
    await controller.cancel(ORG, b.id)
    bus, notifier = NoopEventBus(), NoopNotifier()

    claimed = await relay_once(session, bus, NotificationDispatcher(notifier))

    # SLOTS_CREATED, BOOKING_ADMITTED, BOOKING_CANCELLED
    assert claimed == 3
    assert sorted(p["value"]["event_type"] for p in bus.published) == ["BOOKING_ADMITTED", "BOOKING_CANCELLED", "SLOTS_CREATED"]
    assert all(p["topic"] == TOPIC for p in bus.published)
    assert sorted(m["event"] for m in notifier.sent) == ["booked", "cancelled"]
    [booked] = [m for m in notifier.sent if m["event"] == "booked"]
    assert booked["recipient_phone"] == "+15550002"
    assert booked["template_fields"]["patient_name"] == "Ravi"
    assert booked["template_fields"]["slot_label"] == "Morning"
    assert booked["template_fields"]["scheduled_at"] == "2025-06-01T09:00:00"
    assert {e.status for e in await _outbox(session)} == {"sent"}

    assert await relay_once(session, bus, NotificationDispatcher(notifier)) == 0


async def test_failed_publish_is_retried_later(controller, make_slot, session):
    await make_slot()
    notifier = NoopNotifier()

    claimed = await relay_once(session, FailingBus(), NotificationDispatcher(notifier))

    assert claimed == 1
    [ev] = await _outbox(session)
    assert ev.status == "pending"
    assert ev.attempts == 1
    assert "bus down" in ev.last_error
    assert notifier.sent == []
    # backoff keeps it out of the next batch
    assert await relay_once(session, NoopEventBus(), NotificationDispatcher(notifier)) == 0


async def test_failed_notification_does_not_touch_the_booking(controller, make_slot, session):
    slot = await make_slot()
    b = await controller.admit(ORG, BookingCreate(slot_id=slot.id, patient_id=uuid.uuid4(), patient_phone="+15550003"))

    class BrokenNotifier:
        async def send(self, event, recipient_phone, template_fields):
            raise RuntimeError("gateway timeout")

    await relay_once(session, NoopEventBus(), NotificationDispatcher(BrokenNotifier()))

    failed = [e for e in await _outbox(session) if e.event_type == "BOOKING_ADMITTED"]
    assert failed[0].status == "pending" and failed[0].attempts == 1
    assert (await controller.get_booking(ORG, b.id)).status.value == "scheduled"


# =============================================================================
# Dispatcher and webhook
# =============================================================================

async def test_dispatcher_skips_internal_events_and_missing_phone():
    notifier = NoopNotifier()
    d = NotificationDispatcher(notifier)

    assert await d.dispatch("SLOT_UPDATED", {"patient_phone": "+1555"}) is False
    assert await d.dispatch("BOOKING_ADMITTED", {"booking_id": "x"}) is False
    assert await d.dispatch("BOOKING_RESCHEDULED", {"patient_phone": "+1555", "previous_scheduled_at": "2025-06-01T09:00:00", "status": "scheduled"}) is True
    assert notifier.sent == [{
        "event": "rescheduled",
        "recipient_phone": "+1555",
        "template_fields": {"previous_scheduled_at": "2025-06-01T09:00:00"},
    }]


async def test_webhook_notifier_posts_message():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    n = WebhookNotifier(url="https://gateway.test/notify", transport=httpx.MockTransport(handler))
    await n.send("booked", "+15550004", {"slot_label": "Morning"})

    assert seen == [{"event": "booked", "recipient_phone": "+15550004", "template_fields": {"slot_label": "Morning"}}]


async def test_webhook_notifier_raises_on_gateway_error():
    n = WebhookNotifier(url="https://gateway.test/notify", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(httpx.HTTPStatusError):
        await n.send("booked", "+15550004", {})


async def test_notification_retry_does_not_republish(controller, make_slot, session):
    slot = await make_slot()
    await controller.admit(ORG, BookingCreate(slot_id=slot.id, patient_id=uuid.uuid4(), patient_phone="+15550005"))
    bus = NoopEventBus()

    class BrokenNotifier:
        async def send(self, event, recipient_phone, template_fields):
            raise RuntimeError("gateway timeout")

    await relay_once(session, bus, NotificationDispatcher(BrokenNotifier()))

    [admitted] = [e for e in await _outbox(session) if e.event_type == "BOOKING_ADMITTED"]
    assert admitted.status == "pending" and admitted.published_at is not None
    # due again
    admitted.next_attempt_at = naive_utcnow() - timedelta(seconds=1)
    await session.commit()

    notifier = NoopNotifier()
    assert await relay_once(session, bus, NotificationDispatcher(notifier)) == 1

    assert [p["value"]["event_type"] for p in bus.published].count("BOOKING_ADMITTED") == 1
    assert [m["event"] for m in notifier.sent] == ["booked"]
    assert {e.status for e in await _outbox(session)} == {"sent"}
