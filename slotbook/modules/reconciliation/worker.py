import asyncio
import logging
from datetime import timedelta
from sqlalchemy.ext.asyncio import async_sessionmaker

from slotbook.core.clock import Clock, default_clock
from slotbook.core.config import settings
from slotbook.core.db import SessionLocal
from slotbook.modules.reconciliation.service import ReconciliationWorker
from slotbook.modules.slots.repository import SlotRepository
from slotbook.platform.ports.sweep_lock import SweepLockPort

log = logging.getLogger("reconcile.sweeper")


async def sweep_all(session_factory: async_sessionmaker = SessionLocal, clock: Clock = default_clock, lock: SweepLockPort | None = None) -> dict:
    """One sweeper tick: no-show detection, then a guarded sweep per provider with upcoming slots.

    Each provider gets its own session; a failure is logged and left for the
    next tick while the remaining providers are still swept.
    """
    today = clock.today()
    async with session_factory() as session:
        no_shows = await ReconciliationWorker(session, clock, lock).mark_no_shows()
        providers = await SlotRepository(session).providers_with_slots(today, today + timedelta(days=settings.RECONCILE_LOOKAHEAD_DAYS))

    swept, skipped, failed = 0, 0, 0
    for org_id, provider_id in providers:
        async with session_factory() as session:
            try:
                result = await ReconciliationWorker(session, clock, lock).sweep(org_id, provider_id)
            except Exception:
                log.exception("Sweep failed for provider %s; will retry next tick", provider_id)
                failed += 1
                continue
        if result is None:
            skipped += 1
        else:
            swept += 1
    log.info("Sweep tick: providers=%d swept=%d skipped=%d failed=%d no_shows=%d", len(providers), swept, skipped, failed, no_shows)
    return {"providers": len(providers), "swept": swept, "skipped": skipped, "failed": failed, "no_shows": no_shows}


async def run_reconciliation_sweeper(interval_seconds: float = 300.0):
    log.info("Reconciliation sweeper started (interval=%ss)", interval_seconds)
    try:
        while True:
            try:
                await sweep_all()
            except Exception:
                log.exception("Reconciliation tick failed")
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        log.info("Reconciliation sweeper cancelled; shutting down")
        raise
