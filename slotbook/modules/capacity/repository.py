import uuid
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_, or_
from slotbook.modules.bookings.models import Booking, PendingRequest, ACTIVE_STATUSES, RequestStatus
from slotbook.modules.slots.models import Slot


class OccupancyRepository:
    """Counting queries over the authoritative booking and request rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def count_admitted(self, slot_id: uuid.UUID) -> int:
        q = select(func.count()).select_from(Booking).where(
            Booking.slot_id == slot_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.deleted_at.is_(None),
        )
        return (await self.session.execute(q)).scalar_one()

    async def count_pending(self, slot: Slot, window_start: datetime, window_end: datetime, *, exclude_request_id: uuid.UUID | None = None) -> int:
        cond = [
            PendingRequest.org_id == slot.org_id,
            PendingRequest.provider_id == slot.provider_id,
            PendingRequest.status == RequestStatus.PENDING,
            PendingRequest.deleted_at.is_(None),
            or_(
                PendingRequest.slot_id == slot.id,
                and_(
                    PendingRequest.slot_id.is_(None),
                    PendingRequest.kind == slot.kind,
                    PendingRequest.requested_at >= window_start,
                    PendingRequest.requested_at < window_end,
                ),
            ),
        ]
        if exclude_request_id is not None:
            cond.append(PendingRequest.id != exclude_request_id)
        q = select(func.count()).select_from(PendingRequest).where(and_(*cond))
        return (await self.session.execute(q)).scalar_one()

    async def ever_admitted(self, slot_id: uuid.UUID) -> bool:
        q = select(func.count()).select_from(Booking).where(Booking.slot_id == slot_id)
        return (await self.session.execute(q)).scalar_one() > 0

    async def occupied_times(self, slot: Slot, window_start: datetime, window_end: datetime, *, exclude_request_id: uuid.UUID | None = None, exclude_booking_id: uuid.UUID | None = None) -> set[datetime]:
        """Quantized times already taken in the slot by active bookings and pending reservations."""
        bq = select(Booking.scheduled_at).where(
            Booking.slot_id == slot.id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.deleted_at.is_(None),
        )
        if exclude_booking_id is not None:
            bq = bq.where(Booking.id != exclude_booking_id)
        taken = {t for (t,) in (await self.session.execute(bq)).all()}
        rq = select(PendingRequest.assigned_time).where(
            PendingRequest.org_id == slot.org_id,
            PendingRequest.provider_id == slot.provider_id,
            PendingRequest.status == RequestStatus.PENDING,
            PendingRequest.kind == slot.kind,
            PendingRequest.assigned_time.isnot(None),
            PendingRequest.assigned_time >= window_start,
            PendingRequest.assigned_time < window_end,
            PendingRequest.deleted_at.is_(None),
        )
        if exclude_request_id is not None:
            rq = rq.where(PendingRequest.id != exclude_request_id)
        taken |= {t for (t,) in (await self.session.execute(rq)).all()}
        return taken

    async def count_outside(self, slot: Slot, held_start: datetime, held_end: datetime, window_start: datetime, window_end: datetime) -> int:
        """Active bookings and held reservations of the slot timed outside [window_start, window_end).

        Unpinned requests belong to the slot when ``requested_at`` falls in
        [held_start, held_end).
        """
        bq = select(func.count()).select_from(Booking).where(
            Booking.slot_id == slot.id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.deleted_at.is_(None),
            or_(Booking.scheduled_at < window_start, Booking.scheduled_at >= window_end),
        )
        rq = select(func.count()).select_from(PendingRequest).where(
            PendingRequest.org_id == slot.org_id,
            PendingRequest.provider_id == slot.provider_id,
            PendingRequest.status == RequestStatus.PENDING,
            PendingRequest.deleted_at.is_(None),
            PendingRequest.assigned_time.isnot(None),
            or_(PendingRequest.assigned_time < window_start, PendingRequest.assigned_time >= window_end),
            or_(
                PendingRequest.slot_id == slot.id,
                and_(
                    PendingRequest.slot_id.is_(None),
                    PendingRequest.kind == slot.kind,
                    PendingRequest.requested_at >= held_start,
                    PendingRequest.requested_at < held_end,
                ),
            ),
        )
        return (await self.session.execute(bq)).scalar_one() + (await self.session.execute(rq)).scalar_one()
