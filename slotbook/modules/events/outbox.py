import uuid
import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import TIMESTAMP, text, String, Integer, Text, JSON, select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.base import Base, TimestampedTenantMixin, naive_utcnow
from slotbook.core.db import SessionLocal
from slotbook.modules.notifications.service import NotificationDispatcher
from slotbook.platform.provider_registry import registry

log = logging.getLogger("event.outbox")

TOPIC = "slotbook.events"


class EventOutbox(Base, TimestampedTenantMixin):
    event_type: Mapped[str] = mapped_column(String(64))
    subject_type: Mapped[str] = mapped_column(String(32))
    subject_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)

    occurred_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), server_default=text("CURRENT_TIMESTAMP"))

    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending | processing | sent
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), server_default=text("CURRENT_TIMESTAMP"))
    # set once the bus accepted the event; a later retry only re-runs the notification
    published_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=False), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, org_id: uuid.UUID, *, event_type: str, subject_type: str, subject_id: str, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        obj = EventOutbox(
            org_id=org_id,
            event_type=event_type,
            subject_type=subject_type,
            subject_id=str(subject_id),
            payload=payload,
            occurred_at=occurred_at or naive_utcnow(),
            status="pending",
            attempts=0,
            next_attempt_at=naive_utcnow(),
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def claim_batch(self, limit: int = 50) -> list[EventOutbox]:
        # SELECT ... FOR UPDATE SKIP LOCKED
        q = (
            select(EventOutbox)
            .where(
                and_(
                    EventOutbox.deleted_at.is_(None),
                    EventOutbox.status == "pending",
                    EventOutbox.next_attempt_at <= naive_utcnow(),
                )
            )
            .order_by(EventOutbox.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        res = await self.session.execute(q)
        rows = list(res.scalars().all())
        for r in rows:
            r.status = "processing"
        await self.session.flush()
        return rows

    async def mark_published(self, obj: EventOutbox):
        obj.published_at = naive_utcnow()
        await self.session.flush()

    async def mark_sent(self, obj: EventOutbox):
        obj.status = "sent"
        obj.last_error = None
        await self.session.flush()

    async def mark_failed(self, obj: EventOutbox, error: str):
        obj.status = "pending"  # retry
        obj.attempts = (obj.attempts or 0) + 1
        backoff = min(60, 2 ** min(obj.attempts, 6))  # 2,4,8,16,32,60s
        obj.next_attempt_at = naive_utcnow() + timedelta(seconds=backoff)
        obj.last_error = error[:2000]
        await self.session.flush()


class OutboxService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = OutboxRepository(session)

    async def enqueue(self, org_id: uuid.UUID, event_type: str, subject_type: str, subject_id: str | uuid.UUID, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        return await self.repo.enqueue(org_id, event_type=event_type, subject_type=subject_type, subject_id=str(subject_id), payload=payload, occurred_at=occurred_at)


def envelope(ev: EventOutbox) -> dict:
    return {
        "org_id": str(ev.org_id),
        "event_type": ev.event_type,
        "subject": {"type": ev.subject_type, "id": ev.subject_id},
        "payload": ev.payload,
        "occurred_at": ev.occurred_at.isoformat() if ev.occurred_at else None,
        "outbox_id": str(ev.id),
    }


async def relay_once(session: AsyncSession, bus, dispatcher, limit: int = 50) -> int:
    """Publish one batch of committed events; returns how many were claimed.

    A failed publish or notification puts the event back with backoff. It is
    never raised to the caller; the admission that produced it is already
    committed. An event the bus already accepted is not published again when
    only its notification failed.
    """
    repo = OutboxRepository(session)
    batch = await repo.claim_batch(limit=limit)
    for ev in batch:
        try:
            if ev.published_at is None:
                await bus.publish(topic=TOPIC, key=ev.subject_id or "-", value=envelope(ev))
                await repo.mark_published(ev)
            await dispatcher.dispatch(ev.event_type, ev.payload)
            await repo.mark_sent(ev)
        except Exception as ex:  # noqa
            log.exception("Relay failed for outbox event %s (%s, published=%s)", ev.id, ev.event_type, ev.published_at is not None)
            await repo.mark_failed(ev, error=str(ex))
    await session.commit()
    return len(batch)


# ---- Background relay ----

async def run_outbox_relay(poll_interval_seconds: float = 1.0):
    bus = registry.event_bus()
    dispatcher = NotificationDispatcher(registry.notifier())
    log.info("Outbox relay started with bus=%s notifier=%s", bus.__class__.__name__, dispatcher.notifier.__class__.__name__)
    try:
        while True:
            async with SessionLocal() as session:
                try:
                    claimed = await relay_once(session, bus, dispatcher)
                    if not claimed:
                        await asyncio.sleep(poll_interval_seconds)
                        continue
                except Exception:
                    log.exception("Outbox relay iteration failed")
                    await session.rollback()
                    await asyncio.sleep(poll_interval_seconds)
            await asyncio.sleep(0)  # yield
    except asyncio.CancelledError:
        log.info("Outbox relay cancelled; shutting down")
        raise
