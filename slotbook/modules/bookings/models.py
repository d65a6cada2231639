import enum
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, Enum, ForeignKey, Text, JSON, Boolean, Numeric, Index
from slotbook.core.base import Base, TimestampedTenantMixin
from slotbook.modules.slots.models import SlotKind


class BookingStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


# statuses that hold a capacity unit in their slot
ACTIVE_STATUSES = (BookingStatus.SCHEDULED, BookingStatus.CHECKED_IN, BookingStatus.IN_PROGRESS)
TERMINAL_STATUSES = (BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW)


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestType(str, enum.Enum):
    NEW = "new"
    RESCHEDULE = "reschedule"


class Booking(Base, TimestampedTenantMixin):
    __table_args__ = (
        Index("ix_booking_slot_status", "slot_id", "status"),
        Index("ix_booking_provider_day", "org_id", "provider_id", "scheduled_at"),
    )

    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    patient_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    patient_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_id: Mapped[uuid.UUID] = mapped_column(index=True)
    slot_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("slot.id"))

    # clinic-local wall time
    scheduled_at: Mapped[datetime] = mapped_column(DateTime)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30)
    status: Mapped[BookingStatus] = mapped_column(Enum(BookingStatus, native_enum=False, length=24), default=BookingStatus.SCHEDULED)
    admission_order: Mapped[int] = mapped_column(Integer, default=0)  # 0-based within the slot
    kind: Mapped[SlotKind] = mapped_column(Enum(SlotKind, native_enum=False, length=16), default=SlotKind.IN_CLINIC)
    emergency: Mapped[bool] = mapped_column(Boolean, default=False)

    consultation_fee: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    symptoms: Mapped[str | None] = mapped_column(Text, nullable=True)
    reschedule_count: Mapped[int] = mapped_column(default=0)

    # day queue, written by reconciliation
    queue_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_start_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Freeform metadata container (channel, source request, etc.)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class PendingRequest(Base, TimestampedTenantMixin):
    __table_args__ = (
        Index("ix_pendingrequest_provider_status", "org_id", "provider_id", "status"),
    )

    request_type: Mapped[RequestType] = mapped_column(Enum(RequestType, native_enum=False, length=16), default=RequestType.NEW)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("booking.id"), nullable=True)  # reschedule requests

    patient_id: Mapped[uuid.UUID] = mapped_column(index=True)
    patient_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    patient_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_id: Mapped[uuid.UUID] = mapped_column(index=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime)  # clinic-local
    slot_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("slot.id"), nullable=True)  # pinned slot, optional
    assigned_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    kind: Mapped[SlotKind] = mapped_column(Enum(SlotKind, native_enum=False, length=16), default=SlotKind.IN_CLINIC)
    priority: Mapped[str] = mapped_column(String(16), default="normal")  # normal | high | urgent
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    symptoms: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[RequestStatus] = mapped_column(Enum(RequestStatus, native_enum=False, length=16), default=RequestStatus.PENDING)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    result_booking_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
