"""
Air Monitor - Database Configuration
Async SQLAlchemy, used only by the durable storage backend
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def create_engine(database_url: str) -> AsyncEngine | None:
    """Create async engine, or None when no database is configured."""
    if not database_url:
        return None

    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
    )


def create_session_maker(engine: AsyncEngine | None) -> async_sessionmaker[AsyncSession] | None:
    """Session factory bound to the engine."""
    if engine is None:
        return None

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet."""
    # Import models so they are registered on Base.metadata
    from airmonitor.models import Device, StoredReading  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
