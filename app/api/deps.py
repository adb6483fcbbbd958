"""
API Dependencies Module

Common dependencies used across API routes.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from app.config import settings
from app.db.session import async_session_maker
from app.core.idempotency.store import IdempotencyStore


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis connection dependency."""
    client = redis.from_url(str(settings.redis_url), decode_responses=True)
    try:
        yield client
    finally:
        await client.aclose()


def get_idempotency_store(request: Request) -> IdempotencyStore:
    """Get the idempotency store the application was built with."""
    return request.app.state.idempotency_store


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
RedisClient = Annotated[redis.Redis, Depends(get_redis)]
IdempotencyStoreDep = Annotated[IdempotencyStore, Depends(get_idempotency_store)]
