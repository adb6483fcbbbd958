"""
Database Session Management

Provides async database session factory and connection management.
"""

from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.config import settings


def build_async_engine(
    url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
) -> AsyncEngine:
    """
    Create the async engine for a database URL.

    SQLite does not accept queue pool sizing, and an in-memory SQLite
    database only lives as long as its single connection, so it gets a
    ``StaticPool`` instead.
    """
    kwargs: Dict[str, Any] = {"echo": echo, "future": True}
    parsed = make_url(url)

    if parsed.get_backend_name() == "sqlite":
        if parsed.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_size"] = pool_size
        kwargs["max_overflow"] = max_overflow
        kwargs["pool_pre_ping"] = True

    return create_async_engine(url, **kwargs)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by request dependencies and the database store."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all mapped tables that do not exist yet."""
    # Import models to register them
    from app.db.models import idempotency  # noqa: F401
    from app.db.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# Async engine for FastAPI
async_engine = build_async_engine(
    settings.database_url,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    echo=settings.debug,
)

# Async session factory
async_session_maker = build_session_maker(async_engine)


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Initialize the schema; tables are only auto-created in development."""
    if settings.is_development:
        await create_tables(engine or async_engine)


async def close_db(engine: Optional[AsyncEngine] = None) -> None:
    """Close database connection pool."""
    await (engine or async_engine).dispose()
