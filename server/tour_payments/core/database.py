"""Async engine, session factory and declarative base."""

from typing import Any, AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from .config import Settings, settings


def engine_options(config: Settings) -> dict[str, Any]:
    """
    Engine keyword arguments for the configured database.

    In-memory SQLite needs a single shared connection or every session would
    see an empty database; server databases get a bounded, pre-pinged pool.
    """
    url = make_url(config.database_url)
    if url.get_backend_name() == "sqlite":
        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
        return options
    return {
        "pool_pre_ping": True,
        "pool_size": config.database_pool_size,
        "max_overflow": config.database_max_overflow,
    }


engine = create_async_engine(settings.database_url, echo=False, **engine_options(settings))

# Bookings are read after commit to build responses, so keep attributes loaded
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Declarative base for bookings, destinations and audit records."""


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; uncommitted work is rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# Alias for FastAPI dependency injection
get_db = get_async_session


async def init_db() -> None:
    """Create any missing tables (migrations remain the source of truth in production)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
