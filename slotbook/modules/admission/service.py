"""AdmissionController: every capacity-consuming write goes through here.

Each operation is one admission unit: lock the slot(s) involved, re-read
live occupancy, write, reconcile the cached counters, enqueue outbox events
and commit. A unit that hits a lock or serialization conflict is rolled
back and replayed from scratch.
"""
import asyncio
import uuid
import logging
from typing import Awaitable, Callable, TypeVar
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, default_clock
from slotbook.core.config import settings
from slotbook.core.db import rollback_on_error
from slotbook.core.errors import (
    AlreadyResolved, InvalidTransition, NoMatchingSlot, NotFound, SlotSaturated, StorageUnavailable,
)
from slotbook.modules.admission.state import RESCHEDULABLE, can_transition
from slotbook.modules.bookings.models import Booking, BookingStatus, PendingRequest, RequestStatus, RequestType
from slotbook.modules.bookings.schemas import BookingCreate, RequestCreate
from slotbook.modules.bookings.service import BookingDetails, BookingStore, PatientRef
from slotbook.modules.events.outbox import OutboxService
from slotbook.modules.reconciliation.service import ReconciliationWorker
from slotbook.modules.slots.models import Slot

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_retryable(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return code in RETRYABLE_SQLSTATES


def booking_payload(b: Booking, slot: Slot | None = None, **extra) -> dict:
    data = {
        "booking_id": str(b.id),
        "patient_id": str(b.patient_id),
        "patient_name": b.patient_name,
        "patient_phone": b.patient_phone,
        "provider_id": str(b.provider_id),
        "slot_id": str(b.slot_id),
        "scheduled_at": b.scheduled_at.isoformat(),
        "admission_order": b.admission_order,
        "status": b.status.value,
        "kind": b.kind.value,
    }
    if slot is not None:
        data["slot_label"] = slot.label
    data.update(extra)
    return data


class AdmissionController:
    def __init__(self, session: AsyncSession, clock: Clock = default_clock):
        self.session = session
        self.clock = clock
        self.store = BookingStore(session, clock)
        self.reconciler = ReconciliationWorker(session, clock)
        self.outbox = OutboxService(session)

    async def _run(self, op: str, unit: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                async with rollback_on_error(self.session):
                    result = await unit()
                    await self.session.commit()
                    return result
            except DBAPIError as exc:
                if not is_retryable(exc):
                    raise
                attempt += 1
                if attempt > settings.ADMISSION_MAX_RETRIES:
                    logger.error("%s gave up after %d storage conflicts: %s", op, attempt, exc)
                    raise StorageUnavailable("Storage is busy, please retry", operation=op, attempts=attempt) from exc
                logger.warning("%s hit a storage conflict (attempt %d), retrying: %s", op, attempt, exc)
                await asyncio.sleep(0.05 * 2 ** (attempt - 1))

    async def _lock_many(self, org_id: uuid.UUID, wanted: dict[uuid.UUID, bool]) -> dict[uuid.UUID, Slot]:
        # fixed lock order so two units locking the same pair cannot deadlock
        return {
            sid: await self.store.lock_slot(org_id, sid, require_active=wanted[sid])
            for sid in sorted(wanted, key=str)
        }

    async def _emit(self, org_id: uuid.UUID, event_type: str, booking: Booking, slot: Slot | None = None, **extra) -> None:
        await self.outbox.enqueue(org_id, event_type, "booking", booking.id, booking_payload(booking, slot, **extra))

    # ---- Reads ----
    async def get_booking(self, org_id: uuid.UUID, booking_id: uuid.UUID) -> Booking:
        b = await self.store.bookings.get(org_id, booking_id)
        if b is None:
            raise NotFound("Booking not found", booking_id=booking_id)
        return b

    async def get_request(self, org_id: uuid.UUID, request_id: uuid.UUID) -> PendingRequest:
        r = await self.store.requests.get(org_id, request_id)
        if r is None:
            raise NotFound("Request not found", request_id=request_id)
        return r

    async def list_requests(self, org_id: uuid.UUID, **filters):
        return await self.store.requests.list(org_id, **filters)

    async def slot_queue(self, org_id: uuid.UUID, slot_id: uuid.UUID, *, include_cancelled: bool = False):
        if await self.store.slots.get(org_id, slot_id) is None:
            raise NotFound("Slot not found", slot_id=slot_id)
        return await self.store.bookings.list_for_slot(org_id, slot_id, include_cancelled=include_cancelled)

    # ---- Admission ----
    async def admit(self, org_id: uuid.UUID, payload: BookingCreate) -> Booking:
        requested_at = self.clock.to_local(payload.requested_at) if payload.requested_at else None
        patient = PatientRef(id=payload.patient_id, name=payload.patient_name, phone=payload.patient_phone)
        details = BookingDetails(
            emergency=payload.emergency,
            consultation_fee=payload.consultation_fee,
            notes=payload.notes,
            symptoms=payload.symptoms,
            duration_minutes=payload.duration_minutes,
            meta=payload.meta,
        )

        async def unit() -> Booking:
            slot_id = payload.slot_id
            if slot_id is None:
                match = await self.store.match_slot(org_id, payload.provider_id, requested_at, payload.kind)
                if match is None:
                    raise NoMatchingSlot(
                        "No active slot contains the requested time",
                        provider_id=payload.provider_id, requested_at=requested_at,
                    )
                slot_id = match.id
            slot = await self.store.lock_slot(org_id, slot_id)
            if payload.provider_id is not None and payload.provider_id != slot.provider_id:
                raise NoMatchingSlot("Slot belongs to a different provider", slot_id=slot.id, provider_id=payload.provider_id)
            booking = await self.store.admit(slot, patient, requested_at, details)
            await self.reconciler.reconcile_slot(slot)
            await self._emit(org_id, "BOOKING_ADMITTED", booking, slot)
            return booking

        try:
            booking = await self._run("admit", unit)
        except SlotSaturated as e:
            logger.info("Admission rejected for slot %s: %s", e.context.get("slot_id"), e.message)
            raise
        logger.info("Admitted booking %s into slot %s (order=%d, at=%s)", booking.id, booking.slot_id, booking.admission_order, booking.scheduled_at)
        return booking

    async def cancel(self, org_id: uuid.UUID, booking_id: uuid.UUID, reason: str | None = None) -> Booking:
        current = await self.get_booking(org_id, booking_id)
        slot_id = current.slot_id
        wanted = {slot_id: False}
        open_req = await self.store.requests.open_for_booking(org_id, booking_id)
        if open_req is not None:
            held = await self._held_slot(open_req)
            if held is not None:
                wanted[held.id] = False

        async def unit() -> Booking:
            slots = await self._lock_many(org_id, wanted)
            booking = await self.store.bookings.get_for_update(org_id, booking_id)
            if not can_transition(booking.status, BookingStatus.CANCELLED):
                raise InvalidTransition(
                    f"Cannot cancel a booking in status {booking.status.value}",
                    booking_id=booking.id, status=booking.status.value,
                )
            if booking.slot_id != slot_id:
                # moved by a concurrent reschedule; the caller retries against the new slot
                raise InvalidTransition("Booking changed slot while cancelling; retry", booking_id=booking.id)
            await self.store.cancel(booking, reason)
            withdrawn = await self._withdraw_open_request(org_id, booking)
            if withdrawn is not None and withdrawn.id not in slots:
                slots[withdrawn.id] = withdrawn
            for s in slots.values():
                await self.reconciler.reconcile_slot(s)
            await self._emit(org_id, "BOOKING_CANCELLED", booking, slots[slot_id], reason=reason)
            return booking

        booking = await self._run("cancel", unit)
        logger.info("Cancelled booking %s in slot %s", booking.id, slot_id)
        return booking

    async def _withdraw_open_request(self, org_id: uuid.UUID, booking: Booking) -> Slot | None:
        """Reject the cancelled booking's open reschedule request; returns the slot it was holding."""
        req = await self.store.requests.open_for_booking(org_id, booking.id)
        if req is None:
            return None
        await self.store.requests.mark_resolved(
            org_id, req.id, RequestStatus.REJECTED,
            rejection_reason="booking cancelled", processed_at=self.clock.now(),
        )
        await self.outbox.enqueue(org_id, "REQUEST_REJECTED", "request", req.id, {
            "request_id": str(req.id),
            "booking_id": str(booking.id),
            "reason": "booking cancelled",
        })
        logger.info("Withdrew reschedule request %s of cancelled booking %s", req.id, booking.id)
        return await self._held_slot(req)

    async def reschedule(self, org_id: uuid.UUID, booking_id: uuid.UUID, new_slot_id: uuid.UUID) -> Booking:
        current = await self.get_booking(org_id, booking_id)
        old_slot_id = current.slot_id
        if old_slot_id == new_slot_id:
            raise InvalidTransition("Booking is already in this slot", booking_id=booking_id, slot_id=new_slot_id)

        async def unit() -> Booking:
            slots = await self._lock_many(org_id, {old_slot_id: False, new_slot_id: True})
            booking = await self.store.bookings.get_for_update(org_id, booking_id)
            if booking.status not in RESCHEDULABLE:
                raise InvalidTransition(
                    f"Cannot reschedule a booking in status {booking.status.value}",
                    booking_id=booking.id, status=booking.status.value,
                )
            if booking.slot_id != old_slot_id:
                raise InvalidTransition("Booking changed slot while rescheduling; retry", booking_id=booking.id)
            _, old_time = await self.store.reschedule(booking, slots[new_slot_id])
            for s in slots.values():
                await self.reconciler.reconcile_slot(s)
            await self._emit(
                org_id, "BOOKING_RESCHEDULED", booking, slots[new_slot_id],
                previous_slot_id=str(old_slot_id), previous_scheduled_at=old_time.isoformat(),
            )
            return booking

        booking = await self._run("reschedule", unit)
        logger.info("Rescheduled booking %s from slot %s to %s (at=%s)", booking.id, old_slot_id, new_slot_id, booking.scheduled_at)
        return booking

    async def set_status(self, org_id: uuid.UUID, booking_id: uuid.UUID, status: BookingStatus) -> Booking:
        if status == BookingStatus.CANCELLED:
            return await self.cancel(org_id, booking_id)
        current = await self.get_booking(org_id, booking_id)
        slot_id = current.slot_id

        async def unit() -> Booking:
            slot = await self.store.lock_slot(org_id, slot_id, require_active=False)
            booking = await self.store.bookings.get_for_update(org_id, booking_id)
            prev = booking.status
            if not can_transition(prev, status):
                raise InvalidTransition(
                    f"Cannot move booking from {prev.value} to {status.value}",
                    booking_id=booking.id, status=prev.value, requested=status.value,
                )
            await self.store.set_status(booking, status)
            await self.reconciler.reconcile_slot(slot)
            event = "BOOKING_NO_SHOW" if status == BookingStatus.NO_SHOW else "BOOKING_STATUS_CHANGED"
            await self._emit(org_id, event, booking, slot, previous_status=prev.value)
            return booking

        return await self._run("set_status", unit)

    # ---- Pending requests ----
    async def create_request(self, org_id: uuid.UUID, payload: RequestCreate) -> PendingRequest:
        requested_at = self.clock.to_local(payload.requested_at)
        fields = {
            "request_type": payload.request_type,
            "booking_id": payload.booking_id,
            "patient_id": payload.patient_id,
            "patient_name": payload.patient_name,
            "patient_phone": payload.patient_phone,
            "provider_id": payload.provider_id,
            "requested_at": requested_at,
            "kind": payload.kind,
            "priority": payload.priority,
            "notes": payload.notes,
            "symptoms": payload.symptoms,
            "status": RequestStatus.PENDING,
        }
        if payload.request_type == RequestType.RESCHEDULE:
            booking = await self.get_booking(org_id, payload.booking_id)
            if booking.status not in RESCHEDULABLE:
                raise InvalidTransition(
                    f"Cannot reschedule a booking in status {booking.status.value}",
                    booking_id=booking.id, status=booking.status.value,
                )
            if await self.store.requests.open_for_booking(org_id, booking.id):
                raise InvalidTransition("Booking already has an open reschedule request", booking_id=booking.id)
            fields.update(
                patient_id=booking.patient_id,
                patient_name=payload.patient_name or booking.patient_name,
                patient_phone=payload.patient_phone or booking.patient_phone,
                provider_id=payload.provider_id or booking.provider_id,
            )

        async def unit() -> PendingRequest:
            slot = None
            if payload.slot_id is not None:
                slot = await self.store.lock_slot(org_id, payload.slot_id)
            else:
                match = await self.store.match_slot(org_id, fields["provider_id"], requested_at, payload.kind)
                if match is not None:
                    slot = await self.store.lock_slot(org_id, match.id)
            req = await self.store.record_request(org_id, slot, pinned=payload.slot_id is not None, **fields)
            if slot is not None:
                await self.reconciler.reconcile_slot(slot)
            await self.outbox.enqueue(org_id, "REQUEST_CREATED", "request", req.id, {
                "request_id": str(req.id),
                "request_type": req.request_type.value,
                "provider_id": str(req.provider_id),
                "requested_at": req.requested_at.isoformat(),
                "slot_id": str(slot.id) if slot is not None else None,
            })
            return req

        req = await self._run("create_request", unit)
        logger.info("Recorded %s request %s for provider %s at %s (assigned=%s)", req.request_type.value, req.id, req.provider_id, req.requested_at, req.assigned_time)
        return req

    async def resolve(self, org_id: uuid.UUID, request_id: uuid.UUID, decision: str, *, slot_id: uuid.UUID | None = None, reason: str | None = None, processed_by: uuid.UUID | None = None) -> tuple[PendingRequest, Booking | None]:
        req = await self.get_request(org_id, request_id)
        if req.status != RequestStatus.PENDING:
            raise AlreadyResolved(f"Request is already {req.status.value}", request_id=request_id, status=req.status.value)
        if decision == "reject":
            return await self._reject(org_id, req, reason, processed_by), None
        return await self._approve(org_id, req, slot_id, processed_by)

    async def _held_slot(self, req: PendingRequest) -> Slot | None:
        """The slot this request currently consumes capacity in, if any."""
        if req.slot_id is not None:
            return await self.store.slots.get(req.org_id, req.slot_id)
        return await self.store.match_slot(req.org_id, req.provider_id, req.requested_at, req.kind)

    async def _reject(self, org_id: uuid.UUID, req: PendingRequest, reason: str | None, processed_by: uuid.UUID | None) -> PendingRequest:
        request_id = req.id

        async def unit() -> PendingRequest:
            ok = await self.store.requests.mark_resolved(
                org_id, request_id, RequestStatus.REJECTED,
                rejection_reason=reason, processed_by=processed_by, processed_at=self.clock.now(),
            )
            if not ok:
                raise AlreadyResolved("Request was resolved concurrently", request_id=request_id)
            fresh = await self.store.requests.get(org_id, request_id, fresh=True)
            held = await self._held_slot(fresh)
            if held is not None:
                await self.reconciler.reconcile_slot(held)
            await self.outbox.enqueue(org_id, "REQUEST_REJECTED", "request", request_id, {
                "request_id": str(request_id),
                "patient_phone": fresh.patient_phone,
                "reason": reason,
            })
            return fresh

        fresh = await self._run("reject_request", unit)
        logger.info("Rejected request %s: %s", request_id, reason)
        return fresh

    async def _approve(self, org_id: uuid.UUID, req: PendingRequest, slot_id: uuid.UUID | None, processed_by: uuid.UUID | None) -> tuple[PendingRequest, Booking]:
        request_id = req.id
        target_id = slot_id or req.slot_id
        if target_id is None:
            match = await self.store.match_slot(org_id, req.provider_id, req.requested_at, req.kind)
            if match is None:
                # stays pending until staff pick a slot by hand
                raise NoMatchingSlot(
                    "No active slot contains the requested time; choose a slot",
                    request_id=request_id, provider_id=req.provider_id, requested_at=req.requested_at,
                )
            target_id = match.id
        held = await self._held_slot(req)
        held_id = held.id if held is not None else None
        old_booking_slot = None
        if req.request_type == RequestType.RESCHEDULE:
            old_booking_slot = (await self.get_booking(org_id, req.booking_id)).slot_id

        async def unit() -> tuple[PendingRequest, Booking]:
            wanted = {target_id: True}
            if old_booking_slot is not None and old_booking_slot != target_id:
                wanted[old_booking_slot] = False
            slots = await self._lock_many(org_id, wanted)
            if not await self.store.requests.mark_resolved(
                org_id, request_id, RequestStatus.APPROVED,
                processed_by=processed_by, processed_at=self.clock.now(),
            ):
                raise AlreadyResolved("Request was resolved concurrently", request_id=request_id)
            fresh = await self.store.requests.get(org_id, request_id, fresh=True)
            booking = await self.store.approve(fresh, slots[target_id])
            fresh.result_booking_id = booking.id
            await self.session.flush()

            touched = dict(slots)
            if held_id is not None and held_id not in touched:
                touched[held_id] = await self.store.slots.get(org_id, held_id)
            for s in touched.values():
                if s is not None:
                    await self.reconciler.reconcile_slot(s)
            await self.outbox.enqueue(org_id, "REQUEST_APPROVED", "request", request_id, {
                "request_id": str(request_id), "booking_id": str(booking.id), "slot_id": str(target_id),
            })
            if fresh.request_type == RequestType.RESCHEDULE:
                await self._emit(org_id, "BOOKING_RESCHEDULED", booking, slots[target_id], previous_slot_id=str(old_booking_slot))
            else:
                await self._emit(org_id, "BOOKING_ADMITTED", booking, slots[target_id], request_id=str(request_id))
            return fresh, booking

        try:
            fresh, booking = await self._run("approve_request", unit)
        except SlotSaturated as e:
            logger.info("Approval of request %s rejected: %s", request_id, e.message)
            raise
        logger.info("Approved request %s into slot %s as booking %s (order=%d, at=%s)", request_id, target_id, booking.id, booking.admission_order, booking.scheduled_at)
        return fresh, booking
