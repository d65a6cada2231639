import uuid
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, get_clock
from slotbook.core.db import get_session
from slotbook.core.security import Principal, require_scopes
from slotbook.modules.admission.service import AdmissionController
from slotbook.modules.bookings.models import BookingStatus, RequestStatus
from slotbook.modules.bookings.schemas import (
    BookingCreate, BookingOut, CancelIn, RescheduleIn, StatusIn,
    RequestCreate, RequestOut, ResolveIn, ResolveOut,
)

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session), clock: Clock = Depends(get_clock)) -> AdmissionController:
    return AdmissionController(session, clock)

# ---- Bookings ----

@router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def admit(payload: BookingCreate, p: Principal = Depends(require_scopes("bookings:write")), s: AdmissionController = Depends(svc)):
    return await s.admit(p.org_id, payload)

@router.get("/bookings/{booking_id}", response_model=BookingOut)
async def get_booking(booking_id: uuid.UUID, p: Principal = Depends(require_scopes("bookings:read")), s: AdmissionController = Depends(svc)):
    return await s.get_booking(p.org_id, booking_id)

@router.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
async def cancel(booking_id: uuid.UUID, payload: CancelIn | None = None, p: Principal = Depends(require_scopes("bookings:write")), s: AdmissionController = Depends(svc)):
    return await s.cancel(p.org_id, booking_id, reason=payload.reason if payload else None)

@router.post("/bookings/{booking_id}/reschedule", response_model=BookingOut)
async def reschedule(booking_id: uuid.UUID, payload: RescheduleIn, p: Principal = Depends(require_scopes("bookings:write")), s: AdmissionController = Depends(svc)):
    return await s.reschedule(p.org_id, booking_id, payload.slot_id)

@router.post("/bookings/{booking_id}/status", response_model=BookingOut)
async def set_status(booking_id: uuid.UUID, payload: StatusIn, p: Principal = Depends(require_scopes("bookings:write")), s: AdmissionController = Depends(svc)):
    return await s.set_status(p.org_id, booking_id, BookingStatus(payload.status))

# ---- Pending requests ----

@router.post("/requests", response_model=RequestOut, status_code=status.HTTP_201_CREATED)
async def create_request(payload: RequestCreate, p: Principal = Depends(require_scopes("requests:write")), s: AdmissionController = Depends(svc)):
    return await s.create_request(p.org_id, payload)

@router.get("/requests", response_model=list[RequestOut])
async def list_requests(
    status: RequestStatus | None = None,
    provider_id: uuid.UUID | None = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    p: Principal = Depends(require_scopes("bookings:read")),
    s: AdmissionController = Depends(svc),
):
    return await s.list_requests(p.org_id, status=status, provider_id=provider_id, limit=limit, offset=offset)

@router.post("/requests/{request_id}/resolve", response_model=ResolveOut)
async def resolve_request(request_id: uuid.UUID, payload: ResolveIn, p: Principal = Depends(require_scopes("requests:resolve")), s: AdmissionController = Depends(svc)):
    req, booking = await s.resolve(p.org_id, request_id, payload.decision, slot_id=payload.slot_id, reason=payload.reason, processed_by=p.user_id)
    return {"request": req, "booking": booking}
