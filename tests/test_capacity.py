"""
Tests for CapacityLedger: live occupancy from bookings plus pending requests.
"""
import uuid
from datetime import datetime, time

import pytest

from conftest import ORG, PROVIDER
from slotbook.core.errors import SlotSaturated
from slotbook.modules.bookings.schemas import BookingCreate, RequestCreate
from slotbook.modules.capacity.service import CapacityLedger
from slotbook.modules.slots.models import SlotKind


@pytest.fixture
def ledger(session):
    return CapacityLedger(session)


def _request(at, **kw):
    return RequestCreate(patient_id=uuid.uuid4(), provider_id=PROVIDER, requested_at=at, **kw)


async def test_empty_slot(ledger, make_slot):
    slot = await make_slot(capacity=3)
    occ = await ledger.snapshot(slot)
    assert (occ.admitted, occ.pending, occ.available, occ.is_full) == (0, 0, 3, False)


async def test_pending_request_inside_window_counts(ledger, controller, make_slot):
    slot = await make_slot(capacity=3)
    await controller.admit(ORG, BookingCreate(slot_id=slot.id, patient_id=uuid.uuid4()))
    await controller.create_request(ORG, _request(datetime(2025, 6, 1, 9, 20)))

    occ = await ledger.snapshot(slot)
    assert occ.admitted == 1
    assert occ.pending == 1
    assert occ.available == 1


async def test_window_end_is_exclusive(ledger, controller, make_slot):
    slot = await make_slot(capacity=3)
    req = await controller.create_request(ORG, _request(datetime(2025, 6, 1, 12, 0)))

    assert req.assigned_time is None
    assert await ledger.pending_count(slot) == 0


async def test_pending_of_other_kind_is_ignored(ledger, controller, make_slot):
    slot = await make_slot(capacity=3)
    await controller.create_request(ORG, _request(datetime(2025, 6, 1, 9, 20), kind=SlotKind.VIDEO))
    assert await ledger.pending_count(slot) == 0


async def test_pinned_request_counts_only_in_its_slot(ledger, controller, make_slot):
    morning = await make_slot("Morning", time(9), time(12))
    afternoon = await make_slot("Afternoon", time(14), time(16))

    await controller.create_request(ORG, _request(datetime(2025, 6, 1, 9, 20), slot_id=afternoon.id))

    assert await ledger.pending_count(morning) == 0
    assert await ledger.pending_count(afternoon) == 1


async def test_excluding_the_request_being_approved(ledger, controller, make_slot):
    slot = await make_slot(capacity=1)
    req = await controller.create_request(ORG, _request(datetime(2025, 6, 1, 9, 20)))

    assert await ledger.is_full(slot) is True
    assert await ledger.available_capacity(slot, exclude_request_id=req.id) == 1


async def test_pending_request_blocks_admission(ledger, controller, make_slot):
    slot = await make_slot(capacity=1)
    await controller.create_request(ORG, _request(datetime(2025, 6, 1, 9, 20)))

    with pytest.raises(SlotSaturated) as ei:
        await controller.admit(ORG, BookingCreate(slot_id=slot.id, patient_id=uuid.uuid4()))
    assert ei.value.context["pending"] == 1
    assert ei.value.context["available"] == 0


async def test_cancelled_bookings_free_capacity(ledger, controller, make_slot):
    slot = await make_slot(capacity=1)
    b = await controller.admit(ORG, BookingCreate(slot_id=slot.id, patient_id=uuid.uuid4()))
    assert await ledger.is_full(slot)

    await controller.cancel(ORG, b.id)
    assert await ledger.available_capacity(slot) == 1
    assert await ledger.ever_admitted(slot) is True
