"""
Tests for ReconciliationWorker and the periodic sweep.
"""
import uuid
from datetime import datetime, time

from sqlalchemy import select

from conftest import ORG, PROVIDER, DAY
from slotbook.modules.bookings.models import BookingStatus
from slotbook.modules.bookings.schemas import BookingCreate
from slotbook.modules.events.outbox import EventOutbox
from slotbook.modules.reconciliation.service import ReconciliationWorker
from slotbook.modules.reconciliation.worker import sweep_all


def _booking(slot, **kw):
    return BookingCreate(slot_id=slot.id, patient_id=uuid.uuid4(), **kw)


# =============================================================================
# Counter sync
# =============================================================================

async def test_sync_fixes_drift_and_is_idempotent(worker, controller, make_slot, session):
    slot = await make_slot(capacity=3)
    await controller.admit(ORG, _booking(slot))
    slot.current_bookings = 7
    await session.commit()

    assert await worker.sync_slot_count(ORG, slot.id) == 1
    assert await worker.sync_slot_count(ORG, slot.id) == 1
    await session.refresh(slot)
    assert slot.current_bookings == 1


async def test_sync_all_slots(worker, controller, make_slot):
    morning = await make_slot("Morning", time(9), time(12))
    evening = await make_slot("Evening", time(17), time(20))
    await controller.admit(ORG, _booking(morning))
    await controller.admit(ORG, _booking(morning))

    counts = await worker.sync_all_slots(ORG, PROVIDER, date_from=DAY)

    assert counts == {morning.id: 2, evening.id: 0}
    assert counts == await worker.sync_all_slots(ORG, PROVIDER, date_from=DAY)


# =============================================================================
# Day queue
# =============================================================================

async def test_queue_puts_emergencies_first(worker, controller, make_slot):
    slot = await make_slot(capacity=4)
    first = await controller.admit(ORG, _booking(slot))
    second = await controller.admit(ORG, _booking(slot))
    urgent = await controller.admit(ORG, _booking(slot, emergency=True))
    gone = await controller.admit(ORG, _booking(slot))
    await controller.cancel(ORG, gone.id)

    queue, stats = await worker.day_queue(ORG, PROVIDER, DAY)

    assert [b.id for b in queue] == [urgent.id, first.id, second.id]
    assert [b.queue_position for b in queue] == [1, 2, 3]
    # never earlier than the booking's own time, otherwise right after the previous visit
    assert [b.estimated_start_at.time() for b in queue] == [time(10, 20), time(10, 50), time(11, 20)]
    cancelled = await controller.get_booking(ORG, gone.id)
    assert cancelled.queue_position is None and cancelled.estimated_start_at is None
    assert stats["total"] == 4
    assert stats["active"] == 3
    assert stats["cancelled"] == 1
    assert stats["emergency"] == 1


async def test_queue_recalculation_is_stable(worker, controller, make_slot):
    slot = await make_slot(capacity=3)
    for _ in range(3):
        await controller.admit(ORG, _booking(slot))

    once = [(b.id, b.queue_position, b.estimated_start_at) for b in await worker.recalculate_queue(ORG, PROVIDER, DAY)]
    twice = [(b.id, b.queue_position, b.estimated_start_at) for b in await worker.recalculate_queue(ORG, PROVIDER, DAY)]
    assert once == twice


# =============================================================================
# No-shows
# =============================================================================

async def test_overdue_bookings_become_no_shows(worker, controller, make_slot, session, clock):
    slot = await make_slot(capacity=3)
    late = await controller.admit(ORG, _booking(slot))
    upcoming = await controller.admit(ORG, _booking(slot))
    arrived = await controller.admit(ORG, _booking(slot))
    await controller.set_status(ORG, arrived.id, BookingStatus.CHECKED_IN)

    clock.at = datetime(2025, 6, 1, 10, 5)
    assert await worker.mark_no_shows() == 1

    assert (await controller.get_booking(ORG, late.id)).status == BookingStatus.NO_SHOW
    assert (await controller.get_booking(ORG, upcoming.id)).status == BookingStatus.SCHEDULED
    assert (await controller.get_booking(ORG, arrived.id)).status == BookingStatus.CHECKED_IN
    await session.refresh(slot)
    assert slot.current_bookings == 2
    res = await session.execute(select(EventOutbox).where(EventOutbox.event_type == "BOOKING_NO_SHOW"))
    assert [e.subject_id for e in res.scalars().all()] == [str(late.id)]

    # nothing left to mark on the next tick
    assert await worker.mark_no_shows() == 0


# =============================================================================
# Sweep
# =============================================================================

async def test_sweep_skips_provider_already_being_swept(worker, sweep_lock, make_slot):
    await make_slot()
    key = f"{ORG}:{PROVIDER}"
    await sweep_lock.acquire(key)

    assert await worker.sweep(ORG, PROVIDER) is None

    await sweep_lock.release(key)
    result = await worker.sweep(ORG, PROVIDER)
    assert result["slots_synced"] == 1


async def test_sweep_all_isolates_failures(session_factory, make_slot, clock, sweep_lock, monkeypatch):
    other = uuid.UUID("00000000-0000-0000-0000-0000000000d2")
    await make_slot()
    await make_slot(provider_id=other)

    original = ReconciliationWorker.sweep

    async def flaky(self, org_id, provider_id):
        if provider_id == other:
            raise RuntimeError("boom")
        return await original(self, org_id, provider_id)

    monkeypatch.setattr(ReconciliationWorker, "sweep", flaky)

    result = await sweep_all(session_factory, clock, sweep_lock)

    assert result == {"providers": 2, "swept": 1, "skipped": 0, "failed": 1, "no_shows": 0}
