import uuid
from datetime import date, datetime, timedelta
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, func
from slotbook.modules.bookings.models import Booking, BookingStatus, PendingRequest, RequestStatus


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> Booking:
        obj = Booking(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, booking_id: uuid.UUID) -> Booking | None:
        q = select(Booking).where(
            and_(Booking.id == booking_id,
                 Booking.org_id == org_id,
                 Booking.deleted_at.is_(None))
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_for_update(self, org_id: uuid.UUID, booking_id: uuid.UUID) -> Booking | None:
        q = select(Booking).where(
            and_(Booking.id == booking_id,
                 Booking.org_id == org_id,
                 Booking.deleted_at.is_(None))
        ).with_for_update().execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def count_ordered(self, slot_id: uuid.UUID) -> int:
        """Bookings that hold an admission order in the slot (every status except cancelled)."""
        q = select(func.count()).select_from(Booking).where(
            Booking.slot_id == slot_id,
            Booking.status != BookingStatus.CANCELLED,
            Booking.deleted_at.is_(None),
        )
        return (await self.session.execute(q)).scalar_one()

    async def ordered_in_slot(self, slot_id: uuid.UUID) -> Sequence[Booking]:
        q = select(Booking).where(
            Booking.slot_id == slot_id,
            Booking.status != BookingStatus.CANCELLED,
            Booking.deleted_at.is_(None),
        ).order_by(Booking.admission_order.asc(), Booking.created_at.asc()).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_for_slot(self, org_id: uuid.UUID, slot_id: uuid.UUID, *, include_cancelled: bool = False) -> Sequence[Booking]:
        cond = [Booking.org_id == org_id, Booking.slot_id == slot_id, Booking.deleted_at.is_(None)]
        if not include_cancelled:
            cond.append(Booking.status != BookingStatus.CANCELLED)
        q = select(Booking).where(and_(*cond)).order_by(Booking.admission_order.asc(), Booking.created_at.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_for_day(self, org_id: uuid.UUID, provider_id: uuid.UUID, service_day: date) -> Sequence[Booking]:
        start = datetime.combine(service_day, datetime.min.time())
        q = select(Booking).where(
            Booking.org_id == org_id,
            Booking.provider_id == provider_id,
            Booking.scheduled_at >= start,
            Booking.scheduled_at < start + timedelta(days=1),
            Booking.deleted_at.is_(None),
        ).order_by(Booking.scheduled_at.asc(), Booking.created_at.asc()).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def overdue_scheduled(self, cutoff: datetime, limit: int = 500) -> Sequence[Booking]:
        q = select(Booking).where(
            Booking.status == BookingStatus.SCHEDULED,
            Booking.scheduled_at < cutoff,
            Booking.deleted_at.is_(None),
        ).order_by(Booking.scheduled_at.asc()).limit(limit)
        res = await self.session.execute(q)
        return res.scalars().all()


class PendingRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> PendingRequest:
        obj = PendingRequest(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, request_id: uuid.UUID, *, fresh: bool = False) -> PendingRequest | None:
        q = select(PendingRequest).where(
            and_(PendingRequest.id == request_id,
                 PendingRequest.org_id == org_id,
                 PendingRequest.deleted_at.is_(None))
        )
        if fresh:
            q = q.execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def mark_resolved(self, org_id: uuid.UUID, request_id: uuid.UUID, status: RequestStatus, **fields) -> bool:
        """Compare-and-set out of ``pending``; False when another caller resolved it first."""
        res = await self.session.execute(
            update(PendingRequest)
            .where(PendingRequest.id == request_id,
                   PendingRequest.org_id == org_id,
                   PendingRequest.status == RequestStatus.PENDING)
            .values(status=status, **fields)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def list(self, org_id: uuid.UUID, *, status: RequestStatus | None = None, provider_id: uuid.UUID | None = None, limit: int = 50, offset: int = 0) -> Sequence[PendingRequest]:
        cond = [PendingRequest.org_id == org_id, PendingRequest.deleted_at.is_(None)]
        if status:
            cond.append(PendingRequest.status == status)
        if provider_id:
            cond.append(PendingRequest.provider_id == provider_id)
        q = select(PendingRequest).where(and_(*cond)).order_by(PendingRequest.requested_at.asc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def open_for_booking(self, org_id: uuid.UUID, booking_id: uuid.UUID) -> PendingRequest | None:
        q = select(PendingRequest).where(
            PendingRequest.org_id == org_id,
            PendingRequest.booking_id == booking_id,
            PendingRequest.status == RequestStatus.PENDING,
            PendingRequest.deleted_at.is_(None),
        )
        res = await self.session.execute(q)
        return res.scalars().first()
