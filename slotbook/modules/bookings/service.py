"""BookingStore: the durable record of admitted bookings and pending requests.

Every method here runs inside the caller's transaction and only flushes.
The caller (``AdmissionController``) must already hold the admission lock of
each slot it passes in, takes care of retries and commits, and emits events.
"""
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, default_clock
from slotbook.core.config import settings
from slotbook.core.errors import InvalidTransition, NotFound, SlotInactive, SlotSaturated
from slotbook.modules.bookings.models import Booking, BookingStatus, PendingRequest, RequestType
from slotbook.modules.bookings.repository import BookingRepository, PendingRequestRepository
from slotbook.modules.capacity.service import CapacityLedger, Occupancy, slot_window
from slotbook.modules.slots.models import Slot, SlotKind
from slotbook.modules.slots.repository import SlotRepository

logger = logging.getLogger(__name__)


@dataclass
class PatientRef:
    id: uuid.UUID
    name: str | None = None
    phone: str | None = None


@dataclass
class BookingDetails:
    emergency: bool = False
    consultation_fee: float | None = None
    notes: str | None = None
    symptoms: str | None = None
    duration_minutes: int | None = None
    meta: dict = field(default_factory=dict)


class BookingStore:
    def __init__(self, session: AsyncSession, clock: Clock = default_clock):
        self.session = session
        self.clock = clock
        self.bookings = BookingRepository(session)
        self.requests = PendingRequestRepository(session)
        self.slots = SlotRepository(session)
        self.ledger = CapacityLedger(session)

    # ---- Slot locking and matching ----
    async def lock_slot(self, org_id: uuid.UUID, slot_id: uuid.UUID, *, require_active: bool = True) -> Slot:
        if not await self.slots.claim(org_id, slot_id, require_active=require_active):
            slot = await self.slots.get(org_id, slot_id)
            if slot is None:
                raise NotFound("Slot not found", slot_id=slot_id)
            raise SlotInactive(f'Slot "{slot.label}" is no longer active', slot_id=slot_id)
        return await self.slots.get_for_update(org_id, slot_id)

    async def match_slot(self, org_id: uuid.UUID, provider_id: uuid.UUID, at: datetime, kind: SlotKind | None = None) -> Slot | None:
        matches = await self.slots.containing(org_id, provider_id, at.date(), at.time(), kind=kind)
        if len(matches) > 1:
            logger.warning("Requested time %s matches %d slots for provider %s; taking the first", at, len(matches), provider_id)
        return matches[0] if matches else None

    # ---- Capacity ----
    async def ensure_capacity(self, slot: Slot, *, exclude_request_id: uuid.UUID | None = None) -> Occupancy:
        occ = await self.ledger.snapshot(slot, exclude_request_id=exclude_request_id)
        if occ.is_full:
            raise SlotSaturated(
                f'Slot "{slot.label}" is full',
                slot_id=slot.id, label=slot.label, slot_date=slot.slot_date,
                capacity=occ.capacity, admitted=occ.admitted, pending=occ.pending, available=occ.available,
            )
        return occ

    async def next_time(self, slot: Slot, *, exclude_request_id: uuid.UUID | None = None, exclude_booking_id: uuid.UUID | None = None) -> datetime:
        """First free ``start + k * interval`` boundary of the slot that is not in the past."""
        start, end = slot_window(slot)
        step = timedelta(minutes=settings.APPOINTMENT_INTERVAL_MINUTES)
        taken = await self.ledger.occupied_times(slot, exclude_request_id=exclude_request_id, exclude_booking_id=exclude_booking_id)
        now = self.clock.now()
        t = start
        while t < end:
            if t >= now and t not in taken:
                return t
            t += step
        raise SlotSaturated(
            f'No appointment time left in slot "{slot.label}"',
            slot_id=slot.id, label=slot.label, slot_date=slot.slot_date,
            interval_minutes=settings.APPOINTMENT_INTERVAL_MINUTES, taken=len(taken),
        )

    # ---- Admission ----
    async def admit(self, slot: Slot, patient: PatientRef, requested_at: datetime | None, details: BookingDetails | None = None, *, exclude_request_id: uuid.UUID | None = None) -> Booking:
        details = details or BookingDetails()
        await self.ensure_capacity(slot, exclude_request_id=exclude_request_id)
        scheduled_at = await self.next_time(slot, exclude_request_id=exclude_request_id)
        order = await self.bookings.count_ordered(slot.id)
        meta = dict(details.meta)
        if requested_at is not None:
            meta["requested_at"] = requested_at.isoformat()
        booking = await self.bookings.create(
            slot.org_id,
            patient_id=patient.id,
            patient_name=patient.name,
            patient_phone=patient.phone,
            provider_id=slot.provider_id,
            slot_id=slot.id,
            scheduled_at=scheduled_at,
            duration_minutes=details.duration_minutes or settings.DEFAULT_DURATION_MINUTES,
            status=BookingStatus.SCHEDULED,
            admission_order=order,
            kind=slot.kind,
            emergency=details.emergency,
            consultation_fee=details.consultation_fee,
            notes=details.notes,
            symptoms=details.symptoms,
            meta=meta,
        )
        slot.ever_booked = True
        await self.session.flush()
        return booking

    async def cancel(self, booking: Booking, reason: str | None = None) -> Booking:
        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = self.clock.now()
        booking.queue_position = None
        booking.estimated_start_at = None
        if reason:
            booking.meta = {**(booking.meta or {}), "cancel_reason": reason}
        await self.session.flush()
        await self.compact(booking.slot_id)
        return booking

    async def reschedule(self, booking: Booking, new_slot: Slot, *, exclude_request_id: uuid.UUID | None = None) -> tuple[uuid.UUID, datetime]:
        """Move the booking into ``new_slot``; returns the previous (slot_id, scheduled_at)."""
        if booking.slot_id == new_slot.id:
            raise InvalidTransition("Booking is already in this slot", booking_id=booking.id, slot_id=new_slot.id)
        await self.ensure_capacity(new_slot, exclude_request_id=exclude_request_id)
        scheduled_at = await self.next_time(new_slot, exclude_request_id=exclude_request_id)
        order = await self.bookings.count_ordered(new_slot.id)

        old_slot_id, old_time = booking.slot_id, booking.scheduled_at
        booking.slot_id = new_slot.id
        booking.provider_id = new_slot.provider_id
        booking.kind = new_slot.kind
        booking.scheduled_at = scheduled_at
        booking.admission_order = order
        booking.reschedule_count = (booking.reschedule_count or 0) + 1
        booking.queue_position = None
        booking.estimated_start_at = None
        booking.meta = {
            **(booking.meta or {}),
            "previous_slot_id": str(old_slot_id),
            "previous_scheduled_at": old_time.isoformat(),
        }
        new_slot.ever_booked = True
        await self.session.flush()
        await self.compact(old_slot_id)
        return old_slot_id, old_time

    async def compact(self, slot_id: uuid.UUID) -> None:
        """Renumber the slot's non-cancelled bookings 0..n-1 keeping their relative order."""
        for i, b in enumerate(await self.bookings.ordered_in_slot(slot_id)):
            if b.admission_order != i:
                b.admission_order = i
        await self.session.flush()

    async def set_status(self, booking: Booking, status: BookingStatus) -> Booking:
        now = self.clock.now()
        booking.status = status
        if status == BookingStatus.CHECKED_IN:
            booking.checked_in_at = now
        elif status == BookingStatus.IN_PROGRESS:
            booking.started_at = now
        elif status == BookingStatus.COMPLETED:
            booking.completed_at = now
        if status not in (BookingStatus.CHECKED_IN, BookingStatus.IN_PROGRESS):
            booking.queue_position = None
        await self.session.flush()
        return booking

    # ---- Pending requests ----
    async def record_request(self, org_id: uuid.UUID, slot: Slot | None, *, pinned: bool, **fields) -> PendingRequest:
        """Store a pending request; when it lands in a slot it must fit and gets a reserved time."""
        assigned = None
        if slot is not None:
            await self.ensure_capacity(slot)
            assigned = await self.next_time(slot)
            fields["kind"] = slot.kind
        return await self.requests.create(
            org_id,
            slot_id=slot.id if (slot is not None and pinned) else None,
            assigned_time=assigned,
            **fields,
        )

    async def approve(self, request: PendingRequest, slot: Slot) -> Booking:
        if request.request_type == RequestType.RESCHEDULE:
            booking = await self.bookings.get_for_update(request.org_id, request.booking_id)
            if booking is None:
                raise NotFound("Booking not found", booking_id=request.booking_id, request_id=request.id)
            if booking.status != BookingStatus.SCHEDULED:
                raise InvalidTransition(
                    f"Cannot reschedule a booking in status {booking.status.value}",
                    booking_id=booking.id, status=booking.status.value,
                )
            await self.reschedule(booking, slot, exclude_request_id=request.id)
            return booking
        patient = PatientRef(id=request.patient_id, name=request.patient_name, phone=request.patient_phone)
        details = BookingDetails(
            emergency=request.priority == "urgent",
            notes=request.notes,
            symptoms=request.symptoms,
            meta={"source_request_id": str(request.id)},
        )
        return await self.admit(slot, patient, request.requested_at, details, exclude_request_id=request.id)
