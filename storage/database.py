import logging
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import settings
from storage.models import Base

logger = logging.getLogger(__name__)

if not settings.database_url:
    raise RuntimeError("DATABASE_URL must be configured")

# One engine per process; the gate, admin routes and usage writes share its pool.
engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db():
    """Create the gate tables if they do not exist yet.

    Production schemas are managed by the alembic migrations; this keeps a
    fresh development database usable without running them.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Gate tables ready ({len(Base.metadata.tables)} tables)")


async def close_db():
    await engine.dispose()
    logger.info("Database pool closed")


@asynccontextmanager
async def get_session():
    """Session scoped to one unit of work: commit on success, rollback on error."""
    session = async_session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
