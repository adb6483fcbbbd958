"""
Idempotency Stores

Persistence backends for captured responses. The guard only needs two
operations from a store: find a live record by key, and insert a new one.
Purging is used by the expired-record reaper.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

import redis.asyncio as redis
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.core.idempotency.entry import IdempotencyEntry
from app.core.idempotency.exceptions import DuplicateIdempotencyKeyError
from app.db.models.idempotency import IdempotencyRecord


class IdempotencyStore(ABC):
    """Abstract base class for idempotency record stores."""

    @abstractmethod
    async def find_recent(self, key: str, since: datetime) -> Optional[IdempotencyEntry]:
        """
        Find the record for ``key`` created strictly after ``since``.

        Args:
            key: Client-supplied idempotency key
            since: Lower bound on record creation time

        Returns:
            The stored entry, or None if there is no live record
        """

    @abstractmethod
    async def save(self, entry: IdempotencyEntry, stale_before: datetime) -> None:
        """
        Insert a new record.

        A record for the same key created at or before ``stale_before`` is
        outside the replay window and gets replaced.

        Raises:
            DuplicateIdempotencyKeyError: a live record already holds the key
        """

    @abstractmethod
    async def purge(self, older_than: datetime) -> int:
        """Delete records created before ``older_than``; return the count."""

    async def close(self) -> None:
        """Release backend resources."""


class SqlAlchemyIdempotencyStore(IdempotencyStore):
    """
    Relational store backed by the ``idempotency_records`` table.

    Each operation uses its own short-lived session so that store failures
    never leak into the handler's unit of work.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def find_recent(self, key: str, since: datetime) -> Optional[IdempotencyEntry]:
        stmt = (
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.idempotency_key == key,
                IdempotencyRecord.created_at > since,
            )
            .limit(1)
        )
        async with self.session_maker() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return record.to_entry() if record else None

    async def save(self, entry: IdempotencyEntry, stale_before: datetime) -> None:
        async with self.session_maker() as session:
            try:
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.idempotency_key == entry.idempotency_key,
                        IdempotencyRecord.created_at <= stale_before,
                    )
                )
                session.add(IdempotencyRecord.from_entry(entry))
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateIdempotencyKeyError(entry.idempotency_key) from exc

    async def purge(self, older_than: datetime) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.created_at < older_than)
            )
            await session.commit()
            return result.rowcount or 0


class RedisIdempotencyStore(IdempotencyStore):
    """
    Redis store keeping each record as a JSON string.

    Records are written with SET NX and a TTL equal to the replay window, so
    Redis both enforces key uniqueness and expires stale records itself.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "idem:",
        ttl: int = 86400,
    ):
        """
        Args:
            redis_client: Client created with ``decode_responses=True``
            key_prefix: Prefix for record keys
            ttl: Record time to live in seconds
        """
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.ttl = ttl

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def _get(self, key: str) -> Optional[IdempotencyEntry]:
        data = await self.redis.get(self._make_key(key))
        if not data:
            return None
        return IdempotencyEntry.from_dict(json.loads(data))

    async def find_recent(self, key: str, since: datetime) -> Optional[IdempotencyEntry]:
        entry = await self._get(key)
        if entry is None or not entry.is_live(since):
            return None
        return entry

    async def save(self, entry: IdempotencyEntry, stale_before: datetime) -> None:
        payload = json.dumps(entry.to_dict())
        stored = await self.redis.set(
            self._make_key(entry.idempotency_key),
            payload,
            nx=True,
            ex=self.ttl,
        )
        if stored:
            return

        existing = await self._get(entry.idempotency_key)
        if existing is not None and existing.is_live(stale_before):
            raise DuplicateIdempotencyKeyError(entry.idempotency_key)

        await self.redis.set(self._make_key(entry.idempotency_key), payload, ex=self.ttl)

    async def purge(self, older_than: datetime) -> int:
        # Keys expire through their TTL.
        return 0

    async def close(self) -> None:
        await self.redis.aclose()


class MemoryIdempotencyStore(IdempotencyStore):
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        self._entries: Dict[str, IdempotencyEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def find_recent(self, key: str, since: datetime) -> Optional[IdempotencyEntry]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_live(since):
                return None
            return entry

    async def save(self, entry: IdempotencyEntry, stale_before: datetime) -> None:
        async with self._lock:
            existing = self._entries.get(entry.idempotency_key)
            if existing is not None and existing.is_live(stale_before):
                raise DuplicateIdempotencyKeyError(entry.idempotency_key)
            self._entries[entry.idempotency_key] = entry

    async def purge(self, older_than: datetime) -> int:
        async with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if entry.created_at < older_than
            ]
            for key in expired:
                self._entries.pop(key, None)
            return len(expired)


def build_idempotency_store(settings: Settings) -> IdempotencyStore:
    """Create the store selected by ``IDEMPOTENCY_BACKEND``."""
    if settings.idempotency_backend == "redis":
        client = redis.from_url(str(settings.redis_url), decode_responses=True)
        return RedisIdempotencyStore(
            client,
            key_prefix=settings.idempotency_key_prefix,
            ttl=settings.idempotency_replay_window_seconds,
        )

    if settings.idempotency_backend == "memory":
        return MemoryIdempotencyStore()

    from app.db.session import async_session_maker
    return SqlAlchemyIdempotencyStore(async_session_maker)
