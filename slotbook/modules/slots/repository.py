import uuid
import hashlib
from datetime import date, time, timedelta
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, and_, func, text
from slotbook.modules.slots.models import Slot, SlotKind


def day_lock_key(org_id: uuid.UUID, provider_id: uuid.UUID, day: date) -> int:
    """Signed 64-bit advisory lock key for one provider day."""
    digest = hashlib.blake2b(f"{org_id}:{provider_id}:{day.isoformat()}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class SlotRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> Slot:
        obj = Slot(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, slot_id: uuid.UUID) -> Slot | None:
        q = select(Slot).where(
            and_(Slot.id == slot_id,
                 Slot.org_id == org_id,
                 Slot.deleted_at.is_(None))
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_for_update(self, org_id: uuid.UUID, slot_id: uuid.UUID) -> Slot | None:
        q = select(Slot).where(
            and_(Slot.id == slot_id,
                 Slot.org_id == org_id,
                 Slot.deleted_at.is_(None))
        ).with_for_update().execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def claim(self, org_id: uuid.UUID, slot_id: uuid.UUID, *, require_active: bool = True) -> bool:
        """Bump the slot version as the first write of an admission unit.

        The conditional UPDATE takes the row (or database) write lock, so a
        concurrent admitter into the same slot waits here until this
        transaction ends and then sees committed occupancy.
        """
        cond = [Slot.id == slot_id, Slot.org_id == org_id, Slot.deleted_at.is_(None)]
        if require_active:
            cond.append(Slot.active.is_(True))
        res = await self.session.execute(
            update(Slot)
            .where(and_(*cond))
            .values(version=Slot.version + 1)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def lock_days(self, org_id: uuid.UUID, provider_id: uuid.UUID, date_from: date, date_to: date) -> None:
        """Serialize catalog writes (creation, time and label edits) on a provider's days.

        Take it before reading the days' slots. PostgreSQL takes one
        transaction-scoped advisory lock per day in date order; elsewhere a
        no-op write on the days' slot rows takes the database write lock.
        """
        if self.session.get_bind().dialect.name == "postgresql":
            day = date_from
            while day <= date_to:
                await self.session.execute(
                    text("SELECT pg_advisory_xact_lock(:key)"),
                    {"key": day_lock_key(org_id, provider_id, day)},
                )
                day += timedelta(days=1)
            return
        await self.session.execute(
            update(Slot)
            .where(Slot.org_id == org_id,
                   Slot.provider_id == provider_id,
                   Slot.slot_date >= date_from,
                   Slot.slot_date <= date_to)
            .values(version=Slot.version, updated_at=Slot.updated_at)
            .execution_options(synchronize_session=False)
        )

    async def list_for_day(self, org_id: uuid.UUID, provider_id: uuid.UUID, slot_date: date, *, kind: SlotKind | None = None, active_only: bool = True) -> Sequence[Slot]:
        cond = [Slot.org_id == org_id, Slot.provider_id == provider_id, Slot.slot_date == slot_date, Slot.deleted_at.is_(None)]
        if active_only:
            cond.append(Slot.active.is_(True))
        if kind is not None:
            cond.append(Slot.kind == kind)
        q = select(Slot).where(and_(*cond)).order_by(Slot.start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_in_range(self, org_id: uuid.UUID, provider_id: uuid.UUID, date_from: date, date_to: date, *, active_only: bool = True) -> Sequence[Slot]:
        cond = [Slot.org_id == org_id, Slot.provider_id == provider_id, Slot.slot_date >= date_from, Slot.slot_date <= date_to, Slot.deleted_at.is_(None)]
        if active_only:
            cond.append(Slot.active.is_(True))
        q = select(Slot).where(and_(*cond)).order_by(Slot.slot_date.asc(), Slot.start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def search(self, org_id: uuid.UUID, provider_id: uuid.UUID, *, date_from: date | None = None, date_to: date | None = None, label: str | None = None, kind: SlotKind | None = None, status: str = "active", limit: int = 100, offset: int = 0) -> tuple[Sequence[Slot], int]:
        cond = [Slot.org_id == org_id, Slot.provider_id == provider_id, Slot.deleted_at.is_(None)]
        if date_from:
            cond.append(Slot.slot_date >= date_from)
        if date_to:
            cond.append(Slot.slot_date <= date_to)
        if label:
            cond.append(Slot.label.ilike(f"%{label}%"))
        if kind is not None:
            cond.append(Slot.kind == kind)
        if status == "active":
            cond.append(Slot.active.is_(True))
        elif status == "inactive":
            cond.append(Slot.active.is_(False))
        total = (await self.session.execute(select(func.count()).select_from(Slot).where(and_(*cond)))).scalar_one()
        q = select(Slot).where(and_(*cond)).order_by(Slot.slot_date.asc(), Slot.start_time.asc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all(), total

    async def list_active(self, org_id: uuid.UUID, provider_id: uuid.UUID, *, date_from: date | None = None) -> Sequence[Slot]:
        cond = [Slot.org_id == org_id, Slot.provider_id == provider_id, Slot.active.is_(True), Slot.deleted_at.is_(None)]
        if date_from:
            cond.append(Slot.slot_date >= date_from)
        q = select(Slot).where(and_(*cond)).order_by(Slot.slot_date.asc(), Slot.start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def existing_keys(self, org_id: uuid.UUID, provider_id: uuid.UUID, date_from: date, date_to: date) -> set[tuple[date, str, SlotKind]]:
        res = await self.session.execute(
            select(Slot.slot_date, Slot.label, Slot.kind).where(
                Slot.org_id == org_id,
                Slot.provider_id == provider_id,
                Slot.slot_date >= date_from,
                Slot.slot_date <= date_to,
                Slot.active.is_(True),
                Slot.deleted_at.is_(None),
            )
        )
        return {(d, label, kind) for d, label, kind in res.all()}

    async def siblings(self, org_id: uuid.UUID, provider_id: uuid.UUID, slot_date: date, kind: SlotKind, *, exclude_id: uuid.UUID | None = None) -> Sequence[Slot]:
        cond = [
            Slot.org_id == org_id,
            Slot.provider_id == provider_id,
            Slot.slot_date == slot_date,
            Slot.kind == kind,
            Slot.active.is_(True),
            Slot.deleted_at.is_(None),
        ]
        if exclude_id is not None:
            cond.append(Slot.id != exclude_id)
        res = await self.session.execute(select(Slot).where(and_(*cond)).order_by(Slot.start_time.asc()))
        return res.scalars().all()

    async def containing(self, org_id: uuid.UUID, provider_id: uuid.UUID, slot_date: date, at: time, *, kind: SlotKind | None = None) -> Sequence[Slot]:
        """Active slots whose [start, end) holds ``at``, earliest first."""
        cond = [
            Slot.org_id == org_id,
            Slot.provider_id == provider_id,
            Slot.slot_date == slot_date,
            Slot.start_time <= at,
            Slot.end_time > at,
            Slot.active.is_(True),
            Slot.deleted_at.is_(None),
        ]
        if kind is not None:
            cond.append(Slot.kind == kind)
        res = await self.session.execute(select(Slot).where(and_(*cond)).order_by(Slot.start_time.asc()))
        return res.scalars().all()

    async def set_cached_count(self, slot: Slot, value: int) -> None:
        slot.current_bookings = value
        await self.session.flush()

    async def hard_delete(self, slot: Slot) -> None:
        await self.session.execute(delete(Slot).where(Slot.id == slot.id))
        await self.session.flush()

    async def providers_with_slots(self, date_from: date, date_to: date) -> Sequence[tuple[uuid.UUID, uuid.UUID]]:
        res = await self.session.execute(
            select(Slot.org_id, Slot.provider_id).where(
                Slot.slot_date >= date_from,
                Slot.slot_date <= date_to,
                Slot.active.is_(True),
                Slot.deleted_at.is_(None),
            ).distinct()
        )
        return [(org, provider) for org, provider in res.all()]

    async def detach_requests(self, slot_id: uuid.UUID) -> None:
        # resolved requests may still point at a slot that is about to be hard-deleted
        from slotbook.modules.bookings.models import PendingRequest
        await self.session.execute(
            update(PendingRequest).where(PendingRequest.slot_id == slot_id).values(slot_id=None)
            .execution_options(synchronize_session=False)
        )
