from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from .config import settings
from .base import Base

engine = create_async_engine(settings.DATABASE_DSN, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def get_session():
    async with SessionLocal() as session:
        yield session

def import_models():
    # registers every mapped table on Base.metadata
    from slotbook.modules.slots import models as _slots  # noqa: F401
    from slotbook.modules.bookings import models as _bookings  # noqa: F401
    from slotbook.modules.events import outbox as _outbox  # noqa: F401

async def init_models():
    ## In dev-only "create_all" mode create tables directly; otherwise, migrations own the schema.
    if settings.DB_MANAGE == "create_all":
        import_models()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

@asynccontextmanager
async def rollback_on_error(session: AsyncSession):
    """Roll the session back if the wrapped unit raises, so no write lock outlives a failed operation."""
    try:
        yield session
    except BaseException:
        await session.rollback()
        raise
