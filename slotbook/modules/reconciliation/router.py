import uuid
from datetime import date
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, get_clock
from slotbook.core.db import get_session
from slotbook.core.security import Principal, require_scopes
from slotbook.modules.bookings.schemas import BookingOut
from slotbook.modules.reconciliation.service import ReconciliationWorker

router = APIRouter()

class SlotSyncOut(BaseModel):
    slot_id: uuid.UUID
    current_bookings: int

class ProviderSyncOut(BaseModel):
    provider_id: uuid.UUID
    slots: dict[uuid.UUID, int]

class QueueOut(BaseModel):
    provider_id: uuid.UUID
    service_day: date
    queue: list[BookingOut]
    stats: dict

def svc(session: AsyncSession = Depends(get_session), clock: Clock = Depends(get_clock)) -> ReconciliationWorker:
    return ReconciliationWorker(session, clock)

@router.post("/reconciliation/slots/{slot_id}/sync", response_model=SlotSyncOut)
async def sync_slot(slot_id: uuid.UUID, p: Principal = Depends(require_scopes("reconcile:write")), w: ReconciliationWorker = Depends(svc)):
    return {"slot_id": slot_id, "current_bookings": await w.sync_slot_count(p.org_id, slot_id)}

@router.post("/reconciliation/providers/{provider_id}/sync", response_model=ProviderSyncOut)
async def sync_provider(provider_id: uuid.UUID, date_from: date | None = None, p: Principal = Depends(require_scopes("reconcile:write")), w: ReconciliationWorker = Depends(svc)):
    return {"provider_id": provider_id, "slots": await w.sync_all_slots(p.org_id, provider_id, date_from=date_from)}

@router.get("/queue", response_model=QueueOut)
async def day_queue(provider_id: uuid.UUID, service_day: date | None = None, p: Principal = Depends(require_scopes("bookings:read")), w: ReconciliationWorker = Depends(svc)):
    day = service_day or w.clock.today()
    queue, stats = await w.day_queue(p.org_id, provider_id, day)
    return {"provider_id": provider_id, "service_day": day, "queue": queue, "stats": stats}
