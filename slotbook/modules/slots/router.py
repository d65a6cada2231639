import uuid
from datetime import date
from typing import Literal
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, get_clock
from slotbook.core.db import get_session
from slotbook.core.security import Principal, require_scopes
from slotbook.modules.admission.service import AdmissionController
from slotbook.modules.bookings.schemas import BookingOut
from slotbook.modules.slots.models import SlotKind
from slotbook.modules.slots.schemas import (
    SlotCreate, SlotUpdate, SlotOut, SlotAvailabilityOut, SlotCreateResult, SlotListOut, SlotStats,
    BulkDeactivateRequest, BulkDeactivateResult,
)
from slotbook.modules.slots.service import SlotCatalog

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session), clock: Clock = Depends(get_clock)) -> SlotCatalog:
    return SlotCatalog(session, clock)

def admission(session: AsyncSession = Depends(get_session), clock: Clock = Depends(get_clock)) -> AdmissionController:
    return AdmissionController(session, clock)

@router.post("", response_model=SlotCreateResult, status_code=status.HTTP_201_CREATED)
async def create_slots(payload: SlotCreate, p: Principal = Depends(require_scopes("slots:write")), s: SlotCatalog = Depends(svc)):
    created, skipped = await s.create_slots(p.org_id, payload)
    return {"created": created, "skipped": skipped}

@router.get("", response_model=list[SlotAvailabilityOut])
async def list_active_slots(provider_id: uuid.UUID, day: date = Query(..., alias="date"), p: Principal = Depends(require_scopes("slots:read")), s: SlotCatalog = Depends(svc)):
    return await s.list_active_slots(p.org_id, provider_id, day)

@router.get("/admin", response_model=SlotListOut)
async def list_slots(
    provider_id: uuid.UUID,
    date_from: date | None = None,
    date_to: date | None = None,
    label: str | None = None,
    kind: SlotKind | None = None,
    status: Literal["active", "inactive", "all"] = "active",
    limit: int = Query(100, le=500),
    offset: int = 0,
    p: Principal = Depends(require_scopes("slots:read")),
    s: SlotCatalog = Depends(svc),
):
    rows, total = await s.list_slots(p.org_id, provider_id, date_from=date_from, date_to=date_to, label=label, kind=kind, status=status, limit=limit, offset=offset)
    return {"slots": rows, "total": total}

@router.get("/stats", response_model=SlotStats)
async def slot_statistics(provider_id: uuid.UUID, date_from: date, date_to: date, p: Principal = Depends(require_scopes("slots:read")), s: SlotCatalog = Depends(svc)):
    return await s.slot_statistics(p.org_id, provider_id, date_from, date_to)

@router.post("/bulk-deactivate", response_model=BulkDeactivateResult)
async def bulk_deactivate(payload: BulkDeactivateRequest, p: Principal = Depends(require_scopes("slots:write")), s: SlotCatalog = Depends(svc)):
    deactivated, failed = await s.bulk_deactivate(p.org_id, payload.slot_ids)
    return {"deactivated": deactivated, "failed": failed}

@router.patch("/{slot_id}", response_model=SlotOut)
async def update_slot(slot_id: uuid.UUID, payload: SlotUpdate, p: Principal = Depends(require_scopes("slots:write")), s: SlotCatalog = Depends(svc)):
    return await s.update_slot(p.org_id, slot_id, payload)

@router.delete("/{slot_id}", response_model=SlotOut | None)
async def deactivate_slot(slot_id: uuid.UUID, hard: bool = False, p: Principal = Depends(require_scopes("slots:write")), s: SlotCatalog = Depends(svc)):
    slot = await s.deactivate_slot(p.org_id, slot_id, hard=hard)
    if slot is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return slot

@router.get("/{slot_id}/queue", response_model=list[BookingOut])
async def slot_queue(slot_id: uuid.UUID, include_cancelled: bool = False, p: Principal = Depends(require_scopes("bookings:read")), a: AdmissionController = Depends(admission)):
    return await a.slot_queue(p.org_id, slot_id, include_cancelled=include_cancelled)
