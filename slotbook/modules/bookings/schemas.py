import uuid
from datetime import datetime
from typing import Literal
from pydantic import BaseModel, Field, model_validator
from slotbook.modules.bookings.models import BookingStatus, RequestStatus, RequestType
from slotbook.modules.slots.models import SlotKind

class BookingCreate(BaseModel):
    # either slot_id, or provider_id + requested_at to auto-match the slot
    slot_id: uuid.UUID | None = None
    provider_id: uuid.UUID | None = None
    patient_id: uuid.UUID
    patient_name: str | None = Field(default=None, max_length=160)
    patient_phone: str | None = Field(default=None, max_length=32)
    requested_at: datetime | None = None
    kind: SlotKind | None = None
    emergency: bool = False
    consultation_fee: float | None = Field(default=None, ge=0)
    notes: str | None = None
    symptoms: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0, le=240)
    meta: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def _slot_or_time(self):
        if self.slot_id is None and (self.provider_id is None or self.requested_at is None):
            raise ValueError("provide slot_id, or provider_id together with requested_at")
        return self

class BookingOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    patient_id: uuid.UUID
    patient_name: str | None = None
    provider_id: uuid.UUID
    slot_id: uuid.UUID
    scheduled_at: datetime
    duration_minutes: int
    status: BookingStatus
    admission_order: int
    kind: SlotKind
    emergency: bool
    consultation_fee: float | None = None
    reschedule_count: int
    queue_position: int | None = None
    estimated_start_at: datetime | None = None
    checked_in_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    class Config: from_attributes = True

class CancelIn(BaseModel):
    reason: str | None = None

class RescheduleIn(BaseModel):
    slot_id: uuid.UUID

class StatusIn(BaseModel):
    status: Literal["checked_in", "in_progress", "completed", "no_show", "cancelled"]

class RequestCreate(BaseModel):
    request_type: RequestType = RequestType.NEW
    booking_id: uuid.UUID | None = None  # required for reschedule requests
    patient_id: uuid.UUID | None = None
    patient_name: str | None = Field(default=None, max_length=160)
    patient_phone: str | None = Field(default=None, max_length=32)
    provider_id: uuid.UUID | None = None
    requested_at: datetime
    slot_id: uuid.UUID | None = None  # pin the request to a slot
    kind: SlotKind = SlotKind.IN_CLINIC
    priority: Literal["normal", "high", "urgent"] = "normal"
    notes: str | None = None
    symptoms: str | None = None

    @model_validator(mode="after")
    def _shape(self):
        if self.request_type == RequestType.RESCHEDULE and self.booking_id is None:
            raise ValueError("booking_id is required for reschedule requests")
        if self.request_type == RequestType.NEW and (self.patient_id is None or self.provider_id is None):
            raise ValueError("patient_id and provider_id are required for new requests")
        return self

class RequestOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    request_type: RequestType
    booking_id: uuid.UUID | None = None
    patient_id: uuid.UUID
    patient_name: str | None = None
    provider_id: uuid.UUID
    requested_at: datetime
    slot_id: uuid.UUID | None = None
    assigned_time: datetime | None = None
    kind: SlotKind
    priority: str
    status: RequestStatus
    rejection_reason: str | None = None
    processed_at: datetime | None = None
    result_booking_id: uuid.UUID | None = None
    class Config: from_attributes = True

class ResolveIn(BaseModel):
    decision: Literal["approve", "reject"]
    slot_id: uuid.UUID | None = None
    reason: str | None = None

class ResolveOut(BaseModel):
    request: RequestOut
    booking: BookingOut | None = None
