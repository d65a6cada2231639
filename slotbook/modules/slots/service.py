import uuid
import logging
from datetime import date, timedelta
from itertools import combinations
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, combine, default_clock
from slotbook.core.config import settings
from slotbook.core.db import rollback_on_error
from slotbook.core.errors import (
    InvalidRange, OverlapConflict, CapacityOutOfBounds, DuplicateSlotDefinition,
    CapacityConflict, HasBookings, NotFound,
)
from slotbook.modules.capacity.service import CapacityLedger
from slotbook.modules.events.outbox import OutboxService
from slotbook.modules.slots.models import Slot, SlotKind
from slotbook.modules.slots.repository import SlotRepository
from slotbook.modules.slots.schemas import SlotCreate, SlotDefinition, SlotUpdate

logger = logging.getLogger(__name__)


def _check_capacity(value: int, **context) -> None:
    if value < settings.SLOT_MIN_CAPACITY or value > settings.SLOT_MAX_CAPACITY:
        raise CapacityOutOfBounds(
            f"Capacity must be between {settings.SLOT_MIN_CAPACITY} and {settings.SLOT_MAX_CAPACITY}",
            capacity=value, min=settings.SLOT_MIN_CAPACITY, max=settings.SLOT_MAX_CAPACITY, **context,
        )


def validate_definitions(defs: list[SlotDefinition]) -> None:
    """Reject a creation batch whose own definitions are inconsistent."""
    seen: set[tuple[str, SlotKind]] = set()
    for d in defs:
        if d.end <= d.start:
            raise InvalidRange(f'Slot "{d.label}": end time must be after start time', label=d.label, start=d.start, end=d.end)
        _check_capacity(d.resolved_capacity(), label=d.label)
        key = (d.label, d.kind)
        if key in seen:
            raise DuplicateSlotDefinition(f'Slot "{d.label}" ({d.kind.value}) is defined twice', label=d.label, kind=d.kind.value)
        seen.add(key)
    for a, b in combinations(defs, 2):
        if a.kind == b.kind and a.start < b.end and b.start < a.end:
            raise OverlapConflict(
                f'Slot "{a.label}" overlaps with "{b.label}"',
                label=a.label, conflicts_with=[{"label": b.label, "start": b.start, "end": b.end}],
            )


class SlotCatalog:
    def __init__(self, session: AsyncSession, clock: Clock = default_clock):
        self.session = session
        self.clock = clock
        self.slots = SlotRepository(session)
        self.ledger = CapacityLedger(session)

    async def get(self, org_id: uuid.UUID, slot_id: uuid.UUID) -> Slot:
        obj = await self.slots.get(org_id, slot_id)
        if not obj:
            raise NotFound("Slot not found", slot_id=slot_id)
        return obj

    # ---- Creation ----
    async def create_slots(self, org_id: uuid.UUID, payload: SlotCreate) -> tuple[list[Slot], list[dict]]:
        date_from = payload.date_from
        date_to = payload.date_to or payload.date_from
        if date_to < date_from:
            raise InvalidRange("date_to must not be before date_from", date_from=date_from, date_to=date_to)
        days = (date_to - date_from).days + 1
        if days > settings.SLOT_BULK_MAX_DAYS:
            raise InvalidRange(f"Date range may span at most {settings.SLOT_BULK_MAX_DAYS} days", days=days)
        validate_definitions(payload.slots)

        async with rollback_on_error(self.session):
            # a concurrent creation for the same days waits here and then sees our slots
            await self.slots.lock_days(org_id, payload.provider_id, date_from, date_to)
            existing = await self.slots.existing_keys(org_id, payload.provider_id, date_from, date_to)
            planned: list[tuple[date, SlotDefinition]] = []
            skipped: list[dict] = []
            for offset in range(days):
                day = date_from + timedelta(days=offset)
                for d in payload.slots:
                    if (day, d.label, d.kind) in existing:
                        skipped.append({"date": day, "label": d.label, "kind": d.kind})
                        continue
                    planned.append((day, d))

            # every planned slot is checked before anything is inserted
            for day, d in planned:
                siblings = await self.slots.siblings(org_id, payload.provider_id, day, d.kind)
                clashes = [s for s in siblings if s.overlaps(d.start, d.end)]
                if clashes:
                    raise OverlapConflict(
                        f'Slot "{d.label}" on {day.isoformat()} overlaps with: {", ".join(s.label for s in clashes)}',
                        label=d.label, date=day,
                        conflicts_with=[{"id": s.id, "label": s.label, "start": s.start_time, "end": s.end_time} for s in clashes],
                    )

            created: list[Slot] = []
            for day, d in planned:
                obj = await self.slots.create(
                    org_id,
                    provider_id=payload.provider_id,
                    slot_date=day,
                    label=d.label,
                    start_time=d.start,
                    end_time=d.end,
                    max_capacity=d.resolved_capacity(),
                    current_bookings=0,
                    kind=d.kind,
                    active=True,
                )
                created.append(obj)
            if created:
                await OutboxService(self.session).enqueue(
                    org_id, "SLOTS_CREATED", "provider", payload.provider_id,
                    {"created": len(created), "skipped": len(skipped), "date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
                )
            await self.session.commit()
        logger.info("Created %d slots for provider %s (%d skipped)", len(created), payload.provider_id, len(skipped))
        return created, skipped

    # ---- Edits ----
    async def update_slot(self, org_id: uuid.UUID, slot_id: uuid.UUID, patch: SlotUpdate) -> Slot:
        current = await self.get(org_id, slot_id)
        provider_id, slot_date = current.provider_id, current.slot_date
        data = patch.model_dump(exclude_unset=True)
        async with rollback_on_error(self.session):
            await self.slots.lock_days(org_id, provider_id, slot_date, slot_date)
            # lock the slot against concurrent admissions while capacity is re-checked
            await self.slots.claim(org_id, slot_id)
            slot = await self.slots.get_for_update(org_id, slot_id)

            new_start = data.get("start") or slot.start_time
            new_end = data.get("end") or slot.end_time
            new_capacity = data["capacity"] if data.get("capacity") is not None else slot.max_capacity
            moved = new_start != slot.start_time or new_end != slot.end_time
            if moved:
                if new_end <= new_start:
                    raise InvalidRange("End time must be after start time", slot_id=slot.id, start=new_start, end=new_end)
                siblings = await self.slots.siblings(org_id, slot.provider_id, slot.slot_date, slot.kind, exclude_id=slot.id)
                clashes = [s for s in siblings if s.overlaps(new_start, new_end)]
                if clashes:
                    raise OverlapConflict(
                        f'Slot overlaps with: {", ".join(s.label for s in clashes)}',
                        slot_id=slot.id,
                        conflicts_with=[{"id": s.id, "label": s.label, "start": s.start_time, "end": s.end_time} for s in clashes],
                    )
                stranded = await self.ledger.outside_window(slot, combine(slot.slot_date, new_start), combine(slot.slot_date, new_end))
                if stranded:
                    raise CapacityConflict(
                        f"{stranded} booking(s) or reserved request(s) fall outside {new_start.isoformat(timespec='minutes')}-{new_end.isoformat(timespec='minutes')}",
                        slot_id=slot.id, start=new_start, end=new_end, stranded=stranded,
                    )
            if "capacity" in data:
                _check_capacity(new_capacity, slot_id=slot.id)

            if moved or new_capacity != slot.max_capacity:
                slot.start_time = new_start
                slot.end_time = new_end
                # pending requests are counted by containment in the new window
                occ = await self.ledger.snapshot(slot)
                if occ.total > new_capacity:
                    raise CapacityConflict(
                        f"Slot would hold {occ.total} bookings and requests, more than capacity {new_capacity}",
                        slot_id=slot.id, requested_capacity=new_capacity, current_capacity=slot.max_capacity,
                        admitted=occ.admitted, pending=occ.pending,
                    )
                slot.max_capacity = new_capacity

            label = data.get("label")
            if label and label != slot.label:
                keys = await self.slots.existing_keys(org_id, slot.provider_id, slot.slot_date, slot.slot_date)
                if (slot.slot_date, label, slot.kind) in keys:
                    raise DuplicateSlotDefinition(
                        f'Slot "{label}" ({slot.kind.value}) already exists on {slot.slot_date.isoformat()}',
                        slot_id=slot.id, label=label, kind=slot.kind.value, date=slot.slot_date,
                    )
                slot.label = label
            await OutboxService(self.session).enqueue(org_id, "SLOT_UPDATED", "slot", slot.id, {k: str(v) for k, v in data.items()})
            await self.session.commit()
            return slot

    async def deactivate_slot(self, org_id: uuid.UUID, slot_id: uuid.UUID, *, hard: bool = False) -> Slot | None:
        slot = await self.get(org_id, slot_id)
        async with rollback_on_error(self.session):
            if hard:
                occ = await self.ledger.snapshot(slot)
                if slot.ever_booked or occ.total > 0 or await self.ledger.ever_admitted(slot):
                    raise HasBookings(
                        "Cannot delete slot with existing bookings; deactivate it instead",
                        slot_id=slot.id, admitted=occ.admitted, pending=occ.pending,
                    )
                await self.slots.detach_requests(slot.id)
                await self.slots.hard_delete(slot)
                await OutboxService(self.session).enqueue(org_id, "SLOT_DELETED", "slot", slot_id, {})
                await self.session.commit()
                return None
            slot.active = False
            await OutboxService(self.session).enqueue(org_id, "SLOT_DEACTIVATED", "slot", slot.id, {})
            await self.session.commit()
            return slot

    async def bulk_deactivate(self, org_id: uuid.UUID, slot_ids: list[uuid.UUID]) -> tuple[int, list[uuid.UUID]]:
        deactivated = 0
        failed: list[uuid.UUID] = []
        async with rollback_on_error(self.session):
            for sid in slot_ids:
                slot = await self.slots.get(org_id, sid)
                if not slot:
                    failed.append(sid)
                    continue
                occ = await self.ledger.snapshot(slot)
                if occ.total > 0:
                    failed.append(sid)
                    continue
                slot.active = False
                deactivated += 1
            if deactivated:
                await OutboxService(self.session).enqueue(org_id, "SLOTS_DEACTIVATED", "slot", "bulk", {"count": deactivated, "slot_ids": [str(s) for s in slot_ids if s not in failed]})
            await self.session.commit()
        return deactivated, failed

    # ---- Reads ----
    async def list_active_slots(self, org_id: uuid.UUID, provider_id: uuid.UUID, slot_date: date) -> list[dict]:
        now = self.clock.now()
        if slot_date < now.date():
            return []
        out: list[dict] = []
        for slot in await self.slots.list_for_day(org_id, provider_id, slot_date):
            if slot_date == now.date() and slot.end_time <= now.time():
                continue
            occ = await self.ledger.snapshot(slot)
            out.append(self._with_occupancy(slot, occ))
        return out

    async def list_slots(self, org_id: uuid.UUID, provider_id: uuid.UUID, **filters):
        return await self.slots.search(org_id, provider_id, **filters)

    async def slot_statistics(self, org_id: uuid.UUID, provider_id: uuid.UUID, date_from: date, date_to: date) -> dict:
        if date_to < date_from:
            raise InvalidRange("date_to must not be before date_from", date_from=date_from, date_to=date_to)
        slots = await self.slots.list_in_range(org_id, provider_id, date_from, date_to)
        total_capacity = 0
        total_bookings = 0
        for slot in slots:
            occ = await self.ledger.snapshot(slot)
            total_capacity += slot.max_capacity
            total_bookings += occ.total
        utilization = (total_bookings / total_capacity) * 100 if total_capacity > 0 else 0
        return {
            "total_slots": len(slots),
            "total_capacity": total_capacity,
            "total_bookings": total_bookings,
            "average_utilization": round(utilization, 2),
        }

    @staticmethod
    def _with_occupancy(slot: Slot, occ) -> dict:
        return {
            "id": slot.id,
            "org_id": slot.org_id,
            "provider_id": slot.provider_id,
            "slot_date": slot.slot_date,
            "label": slot.label,
            "start_time": slot.start_time,
            "end_time": slot.end_time,
            "max_capacity": slot.max_capacity,
            "current_bookings": slot.current_bookings,
            "kind": slot.kind,
            "active": slot.active,
            "created_at": slot.created_at,
            "available_capacity": occ.available,
            "is_full": occ.is_full,
            "admitted": occ.admitted,
            "pending": occ.pending,
        }
