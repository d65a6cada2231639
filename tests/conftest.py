"""
Test configuration and fixtures.

Provides:
- A file-backed SQLite database per test (concurrent sessions really contend)
- A pinned clinic clock
- Service factories for the catalog, admission controller and worker
- HTTPX AsyncClient against the FastAPI app with the session overridden
"""
import os
import uuid
from datetime import date, datetime, time

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Configure before the app (and its settings singleton) is imported
os.environ["ENV"] = "test"
os.environ["DATABASE_DSN"] = "sqlite+aiosqlite://"
os.environ["BACKGROUND_TASKS_ENABLED"] = "false"
os.environ["EVENT_BUS_PROVIDER"] = "noop"
os.environ["NOTIFIER_PROVIDER"] = "noop"
os.environ["SWEEP_LOCK_PROVIDER"] = "memory"

from slotbook.core.base import Base
from slotbook.core.clock import FixedClock, get_clock
from slotbook.core.config import settings
from slotbook.core.db import get_session, import_models
from slotbook.main import app
from slotbook.modules.admission.service import AdmissionController
from slotbook.modules.reconciliation.service import ReconciliationWorker
from slotbook.modules.slots.models import SlotKind
from slotbook.modules.slots.schemas import SlotCreate, SlotDefinition
from slotbook.modules.slots.service import SlotCatalog
from slotbook.platform.adapters.lock_memory import InMemorySweepLock


ORG = uuid.UUID(settings.DEFAULT_ORG_ID)
PROVIDER = uuid.UUID("00000000-0000-0000-0000-0000000000d1")
DAY = date(2025, 6, 1)
# the day before DAY, before clinic hours
NOW = datetime(2025, 5, 31, 8, 0)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    import_models()
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'slotbook.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


# =============================================================================
# Services
# =============================================================================

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def sweep_lock() -> InMemorySweepLock:
    return InMemorySweepLock()


@pytest.fixture
def catalog(session, clock) -> SlotCatalog:
    return SlotCatalog(session, clock)


@pytest.fixture
def controller(session, clock) -> AdmissionController:
    return AdmissionController(session, clock)


@pytest.fixture
def worker(session, clock, sweep_lock) -> ReconciliationWorker:
    return ReconciliationWorker(session, clock, sweep_lock)


@pytest.fixture
def make_slot(catalog):
    """Create one slot and return it."""
    async def _make(label="Morning", start=time(9, 0), end=time(12, 0), capacity=3, *, day=DAY, provider_id=PROVIDER, kind=SlotKind.IN_CLINIC):
        created, _ = await catalog.create_slots(ORG, SlotCreate(
            provider_id=provider_id,
            date_from=day,
            slots=[SlotDefinition(label=label, start=start, end=end, capacity=capacity, kind=kind)],
        ))
        return created[0]
    return _make


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
async def client(session_factory, clock):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_clock] = lambda: clock
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
