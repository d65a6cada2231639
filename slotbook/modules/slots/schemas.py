import uuid
from datetime import date, time, datetime
from typing import Literal
from pydantic import BaseModel, Field, model_validator
from slotbook.modules.slots.models import SlotKind

# Quick-capacity presets offered by the slot creator
CAPACITY_PRESETS: dict[str, int] = {
    "small": 5,
    "standard": 10,
    "large": 20,
    "max": 50,
}

class SlotDefinition(BaseModel):
    label: str = Field(min_length=1, max_length=64)
    start: time
    end: time
    capacity: int | None = None
    preset: Literal["small", "standard", "large", "max"] | None = None
    kind: SlotKind = SlotKind.IN_CLINIC

    @model_validator(mode="after")
    def _capacity_or_preset(self):
        if self.capacity is None and self.preset is None:
            raise ValueError("provide capacity or preset")
        return self

    def resolved_capacity(self) -> int:
        if self.capacity is not None:
            return self.capacity
        return CAPACITY_PRESETS[self.preset]

class SlotCreate(BaseModel):
    provider_id: uuid.UUID
    date_from: date
    date_to: date | None = None  # inclusive; defaults to date_from
    slots: list[SlotDefinition] = Field(min_length=1)

class SlotUpdate(BaseModel):
    # allow updating a subset of fields
    label: str | None = Field(default=None, min_length=1, max_length=64)
    start: time | None = None
    end: time | None = None
    capacity: int | None = None

class SlotOut(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    provider_id: uuid.UUID
    slot_date: date
    label: str
    start_time: time
    end_time: time
    max_capacity: int
    current_bookings: int
    kind: SlotKind
    active: bool
    created_at: datetime | None = None
    class Config: from_attributes = True

class SlotAvailabilityOut(SlotOut):
    available_capacity: int
    is_full: bool
    admitted: int
    pending: int

class SkippedSlot(BaseModel):
    date: date
    label: str
    kind: SlotKind

class SlotCreateResult(BaseModel):
    created: list[SlotOut]
    skipped: list[SkippedSlot]

class SlotListOut(BaseModel):
    slots: list[SlotOut]
    total: int

class SlotStats(BaseModel):
    total_slots: int
    total_capacity: int
    total_bookings: int
    average_utilization: float

class BulkDeactivateRequest(BaseModel):
    slot_ids: list[uuid.UUID]

class BulkDeactivateResult(BaseModel):
    deactivated: int
    failed: list[uuid.UUID]
