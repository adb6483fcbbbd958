"""
Pytest Configuration and Fixtures

Shared fixtures for unit and integration tests.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request, Response
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.idempotency.guard import IdempotencyMiddleware
from app.core.idempotency.store import MemoryIdempotencyStore, SqlAlchemyIdempotencyStore
from app.db.base import Base
from app.db.models import IdempotencyRecord  # noqa: F401
from app.db.session import build_async_engine, build_session_maker, create_tables


# Test database URL
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SAMPLE_REQUEST_ID = "123e4567-e89b-12d3-a456-426614174000"

# Not valid UTF-8
RECEIPT_BYTES = b"\x89PNG\r\n\x1a\n\xff\xfe\x00"


class FrozenClock:
    """Controllable replacement for the guard's UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def build_downstream_app() -> FastAPI:
    """Business handlers standing in for the real controllers."""
    app = FastAPI()
    app.state.calls = 0

    @app.post("/api/v1/exchange", status_code=201)
    async def exchange(request: Request):
        request.app.state.calls += 1
        request.state.user_id = 42
        payload = await request.json()
        request.app.state.last_payload = payload
        return {"success": True}

    @app.post("/api/v1/auth/register", status_code=201)
    async def register(request: Request):
        request.app.state.calls += 1
        return {"success": True, "user_id": request.app.state.calls}

    @app.get("/api/v1/exchange")
    async def list_exchanges(request: Request):
        request.app.state.calls += 1
        return {"items": []}

    @app.post("/api/v1/others")
    async def others(request: Request):
        request.app.state.calls += 1
        return {"ok": True}

    @app.post("/api/v1/carbon-track/receipt", status_code=201)
    async def receipt(request: Request):
        request.app.state.calls += 1
        return Response(content=RECEIPT_BYTES, media_type="application/octet-stream", status_code=201)

    @app.post("/api/v1/messages")
    async def send_message(request: Request):
        request.app.state.calls += 1
        raise ValueError("handler exploded")

    return app


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store() -> MemoryIdempotencyStore:
    return MemoryIdempotencyStore()


@pytest.fixture
def downstream_app() -> FastAPI:
    return build_downstream_app()


@pytest.fixture
def guard(downstream_app: FastAPI, memory_store: MemoryIdempotencyStore, clock: FrozenClock) -> IdempotencyMiddleware:
    return IdempotencyMiddleware(downstream_app, store=memory_store, clock=clock)


@pytest_asyncio.fixture
async def guard_client(guard: IdempotencyMiddleware) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client talking to the downstream app through the guard."""
    transport = ASGITransport(app=guard, client=("203.0.113.7", 51000))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create test database and session factory."""
    engine = build_async_engine(TEST_DATABASE_URL)
    await create_tables(engine)

    yield build_session_maker(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def sql_store(session_maker) -> SqlAlchemyIdempotencyStore:
    return SqlAlchemyIdempotencyStore(session_maker)


@pytest.fixture
def mock_redis() -> MagicMock:
    """Create mock Redis client."""
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.set = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=1)
    mock.eval = AsyncMock(return_value=1)
    mock.exists = AsyncMock(return_value=0)
    mock.ping = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def request_id_headers() -> dict:
    return {"X-Request-ID": SAMPLE_REQUEST_ID}
