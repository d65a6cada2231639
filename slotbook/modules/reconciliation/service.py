"""ReconciliationWorker: derived state that is safe to recompute at any time.

``Slot.current_bookings`` is rewritten from the live ledger (never
incremented), and the day queue is rebuilt from scratch. Both are
idempotent, so running them after every mutation, from the periodic sweep,
or concurrently is harmless; the last write wins with the same value.
"""
import uuid
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, default_clock
from slotbook.core.config import settings
from slotbook.core.db import rollback_on_error
from slotbook.core.errors import NotFound
from slotbook.modules.bookings.models import Booking, BookingStatus
from slotbook.modules.bookings.repository import BookingRepository
from slotbook.modules.capacity.service import CapacityLedger
from slotbook.modules.events.outbox import OutboxService
from slotbook.modules.slots.models import Slot
from slotbook.modules.slots.repository import SlotRepository
from slotbook.platform.ports.sweep_lock import SweepLockPort
from slotbook.platform.provider_registry import registry

logger = logging.getLogger(__name__)


def queue_order_key(b: Booking):
    # emergencies first, then by scheduled time
    return (not b.emergency, b.scheduled_at, b.admission_order)


def queue_stats(bookings: list[Booking]) -> dict:
    active = [b for b in bookings if b.is_active]
    waits = [
        (b.estimated_start_at - b.scheduled_at).total_seconds() / 60
        for b in active if b.estimated_start_at is not None
    ]
    return {
        "total": len(bookings),
        "active": len(active),
        "completed": sum(1 for b in bookings if b.status == BookingStatus.COMPLETED),
        "cancelled": sum(1 for b in bookings if b.status in (BookingStatus.CANCELLED, BookingStatus.NO_SHOW)),
        "emergency": sum(1 for b in bookings if b.emergency),
        "avg_wait_minutes": round(sum(waits) / len(waits), 1) if waits else 0.0,
    }


class ReconciliationWorker:
    def __init__(self, session: AsyncSession, clock: Clock = default_clock, lock: SweepLockPort | None = None):
        self.session = session
        self.clock = clock
        self.lock = lock or registry.sweep_lock()
        self.slots = SlotRepository(session)
        self.bookings = BookingRepository(session)
        self.ledger = CapacityLedger(session)

    async def reconcile_slot(self, slot: Slot) -> int:
        """Write the live occupancy into the cached counter; runs in the caller's transaction."""
        occ = await self.ledger.snapshot(slot)
        if slot.current_bookings != occ.total:
            logger.info("Slot %s counter drift: cached=%s live=%s", slot.id, slot.current_bookings, occ.total)
        await self.slots.set_cached_count(slot, occ.total)
        return occ.total

    async def sync_slot_count(self, org_id: uuid.UUID, slot_id: uuid.UUID) -> int:
        slot = await self.slots.get(org_id, slot_id)
        if slot is None:
            raise NotFound("Slot not found", slot_id=slot_id)
        async with rollback_on_error(self.session):
            value = await self.reconcile_slot(slot)
            await self.session.commit()
        return value

    async def sync_all_slots(self, org_id: uuid.UUID, provider_id: uuid.UUID, *, date_from: date | None = None) -> dict[uuid.UUID, int]:
        counts: dict[uuid.UUID, int] = {}
        async with rollback_on_error(self.session):
            for slot in await self.slots.list_active(org_id, provider_id, date_from=date_from):
                counts[slot.id] = await self.reconcile_slot(slot)
            await self.session.commit()
        logger.info("Synced %d slots for provider %s", len(counts), provider_id)
        return counts

    # ---- Day queue ----
    async def recalculate_queue(self, org_id: uuid.UUID, provider_id: uuid.UUID, service_day: date) -> list[Booking]:
        """Number active bookings of the day 1..N and estimate their start times.

        A patient is never promised a start earlier than their own
        scheduled time; otherwise they start when the previous one ends.
        """
        async with rollback_on_error(self.session):
            day = list(await self.bookings.list_for_day(org_id, provider_id, service_day))
            active = sorted((b for b in day if b.is_active), key=queue_order_key)
            for b in day:
                if not b.is_active:
                    b.queue_position = None
                    b.estimated_start_at = None
            prev_end: datetime | None = None
            for pos, b in enumerate(active, start=1):
                est = b.scheduled_at if prev_end is None else max(b.scheduled_at, prev_end)
                b.queue_position = pos
                b.estimated_start_at = est
                prev_end = est + timedelta(minutes=b.duration_minutes or settings.DEFAULT_DURATION_MINUTES)
            await self.session.flush()
            await self.session.commit()
        return active

    async def day_queue(self, org_id: uuid.UUID, provider_id: uuid.UUID, service_day: date) -> tuple[list[Booking], dict]:
        active = await self.recalculate_queue(org_id, provider_id, service_day)
        day = list(await self.bookings.list_for_day(org_id, provider_id, service_day))
        return active, queue_stats(day)

    # ---- No-shows ----
    async def mark_no_shows(self, now: datetime | None = None) -> int:
        """Scheduled bookings more than the grace period past their time become no-shows."""
        now = now or self.clock.now()
        cutoff = now - timedelta(minutes=settings.NOSHOW_GRACE_MINUTES)
        by_slot: dict[tuple[uuid.UUID, uuid.UUID], list[uuid.UUID]] = defaultdict(list)
        for b in await self.bookings.overdue_scheduled(cutoff):
            by_slot[(b.org_id, b.slot_id)].append(b.id)

        marked = 0
        for (org_id, slot_id), ids in by_slot.items():
            async with rollback_on_error(self.session):
                if not await self.slots.claim(org_id, slot_id, require_active=False):
                    await self.session.rollback()
                    continue
                slot = await self.slots.get_for_update(org_id, slot_id)
                for bid in ids:
                    b = await self.bookings.get_for_update(org_id, bid)
                    # a check-in may have landed since the scan
                    if b is None or b.status != BookingStatus.SCHEDULED or b.slot_id != slot_id:
                        continue
                    b.status = BookingStatus.NO_SHOW
                    b.queue_position = None
                    marked += 1
                    await OutboxService(self.session).enqueue(
                        org_id, "BOOKING_NO_SHOW", "booking", b.id,
                        {"booking_id": str(b.id), "slot_id": str(slot_id), "scheduled_at": b.scheduled_at.isoformat()},
                    )
                await self.session.flush()
                await self.reconcile_slot(slot)
                await self.session.commit()
        if marked:
            logger.info("Marked %d bookings as no-show (cutoff %s)", marked, cutoff)
        return marked

    # ---- Sweep ----
    async def sweep(self, org_id: uuid.UUID, provider_id: uuid.UUID) -> dict | None:
        """Counter sync plus today's queue for one provider; skipped while another sweep holds the provider."""
        key = f"{org_id}:{provider_id}"
        if not await self.lock.acquire(key):
            logger.info("Sweep already running for provider %s; skipping", provider_id)
            return None
        try:
            today = self.clock.today()
            counts = await self.sync_all_slots(org_id, provider_id, date_from=today)
            queue = await self.recalculate_queue(org_id, provider_id, today)
            return {"provider_id": provider_id, "slots_synced": len(counts), "queued": len(queue)}
        finally:
            await self.lock.release(key)
