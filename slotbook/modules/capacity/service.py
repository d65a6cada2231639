"""CapacityLedger: live occupancy of a slot.

Occupancy is always computed from the booking and request rows inside the
caller's session. The cached ``Slot.current_bookings`` column is never read
here; it is a display value refreshed by reconciliation.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from slotbook.core.clock import combine
from slotbook.modules.capacity.repository import OccupancyRepository
from slotbook.modules.slots.models import Slot


@dataclass(frozen=True)
class Occupancy:
    slot_id: uuid.UUID
    capacity: int
    admitted: int
    pending: int

    @property
    def total(self) -> int:
        return self.admitted + self.pending

    @property
    def available(self) -> int:
        return self.capacity - self.total

    @property
    def is_full(self) -> bool:
        return self.available <= 0


def slot_window(slot: Slot) -> tuple[datetime, datetime]:
    return combine(slot.slot_date, slot.start_time), combine(slot.slot_date, slot.end_time)


class CapacityLedger:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = OccupancyRepository(session)

    async def admitted_count(self, slot: Slot) -> int:
        return await self.repo.count_admitted(slot.id)

    async def pending_count(self, slot: Slot, *, exclude_request_id: uuid.UUID | None = None) -> int:
        start, end = slot_window(slot)
        return await self.repo.count_pending(slot, start, end, exclude_request_id=exclude_request_id)

    async def snapshot(self, slot: Slot, *, exclude_request_id: uuid.UUID | None = None) -> Occupancy:
        return Occupancy(
            slot_id=slot.id,
            capacity=slot.max_capacity,
            admitted=await self.admitted_count(slot),
            pending=await self.pending_count(slot, exclude_request_id=exclude_request_id),
        )

    async def available_capacity(self, slot: Slot, *, exclude_request_id: uuid.UUID | None = None) -> int:
        return (await self.snapshot(slot, exclude_request_id=exclude_request_id)).available

    async def is_full(self, slot: Slot, *, exclude_request_id: uuid.UUID | None = None) -> bool:
        return (await self.snapshot(slot, exclude_request_id=exclude_request_id)).is_full

    async def occupied_times(self, slot: Slot, *, exclude_request_id: uuid.UUID | None = None, exclude_booking_id: uuid.UUID | None = None) -> set[datetime]:
        start, end = slot_window(slot)
        return await self.repo.occupied_times(slot, start, end, exclude_request_id=exclude_request_id, exclude_booking_id=exclude_booking_id)

    async def ever_admitted(self, slot: Slot) -> bool:
        return await self.repo.ever_admitted(slot.id)

    async def outside_window(self, slot: Slot, start: datetime, end: datetime) -> int:
        """How many of the slot's current bookings and reservations a move to [start, end) would strand."""
        held_start, held_end = slot_window(slot)
        return await self.repo.count_outside(slot, held_start, held_end, start, end)
