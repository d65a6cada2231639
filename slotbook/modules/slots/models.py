import enum
import uuid
from datetime import date, time
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Date, Time, Enum, Index, CheckConstraint
from slotbook.core.base import Base, TimestampedTenantMixin


class SlotKind(str, enum.Enum):
    IN_CLINIC = "in_clinic"
    VIDEO = "video"


class Slot(Base, TimestampedTenantMixin):
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_slot_time_order"),
        CheckConstraint("max_capacity >= 1 AND max_capacity <= 50", name="ck_slot_capacity"),
        Index("ix_slot_provider_date", "org_id", "provider_id", "slot_date"),
    )

    provider_id: Mapped[uuid.UUID] = mapped_column(index=True)
    slot_date: Mapped[date] = mapped_column(Date)
    label: Mapped[str] = mapped_column(String(64))  # e.g. "Morning"
    start_time: Mapped[time] = mapped_column(Time)  # clinic-local
    end_time: Mapped[time] = mapped_column(Time)
    max_capacity: Mapped[int] = mapped_column(Integer, default=10)
    # derived cache, written only by reconciliation
    current_bookings: Mapped[int] = mapped_column(Integer, default=0)
    kind: Mapped[SlotKind] = mapped_column(Enum(SlotKind, native_enum=False, length=16), default=SlotKind.IN_CLINIC)
    active: Mapped[bool] = mapped_column(default=True)
    # set once the first booking is admitted; blocks hard delete forever after
    ever_booked: Mapped[bool] = mapped_column(default=False)

    def overlaps(self, start: time, end: time) -> bool:
        return start < self.end_time and end > self.start_time
