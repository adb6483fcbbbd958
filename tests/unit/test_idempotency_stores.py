"""
Idempotency Store Unit Tests
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from app.core.idempotency.entry import IdempotencyEntry
from app.core.idempotency.exceptions import DuplicateIdempotencyKeyError
from app.core.idempotency.store import MemoryIdempotencyStore, RedisIdempotencyStore

KEY = "123e4567-e89b-12d3-a456-426614174000"
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = timedelta(hours=24)


def make_entry(key: str = KEY, created_at: datetime = NOW, **overrides) -> IdempotencyEntry:
    values = dict(
        idempotency_key=key,
        request_method="POST",
        request_uri="/api/v1/exchange",
        request_body='{"product_id":1}',
        response_status=201,
        response_body='{"success":true}',
        user_id=7,
        ip_address="203.0.113.7",
        user_agent="pytest",
        created_at=created_at,
    )
    values.update(overrides)
    return IdempotencyEntry(**values)


class TestIdempotencyEntry:
    """Tests for the backend-neutral entry."""

    def test_naive_datetime_treated_as_utc(self):
        entry = make_entry(created_at=datetime(2025, 6, 1, 12, 0))
        assert entry.created_at == NOW

    def test_dict_round_trip(self):
        entry = make_entry()
        assert IdempotencyEntry.from_dict(json.loads(json.dumps(entry.to_dict()))) == entry

    def test_liveness_is_strict(self):
        entry = make_entry()
        assert entry.is_live(NOW - timedelta(seconds=1))
        assert not entry.is_live(NOW)

    def test_utf8_body_stored_as_text(self):
        entry = IdempotencyEntry.capture(
            '{"note":"café"}'.encode("utf-8"),
            idempotency_key=KEY,
            request_method="POST",
            request_uri="/api/v1/exchange",
            response_status=201,
            created_at=NOW,
        )
        assert entry.response_body == '{"note":"café"}'
        assert entry.response_body_encoding == "utf-8"
        assert entry.response_bytes() == '{"note":"café"}'.encode("utf-8")

    def test_binary_body_stored_as_base64(self):
        raw = b"\x89PNG\r\n\x1a\n\xff\xfe\x00"
        entry = IdempotencyEntry.capture(
            raw,
            idempotency_key=KEY,
            request_method="POST",
            request_uri="/api/v1/carbon-track/receipt",
            response_status=201,
            created_at=NOW,
        )
        assert entry.response_body_encoding == "base64"
        assert entry.response_bytes() == raw

    def test_corrupt_base64_body_raises(self):
        entry = make_entry(response_body="not base64!", response_body_encoding="base64")
        with pytest.raises(ValueError, match="Corrupt base64"):
            entry.response_bytes()

    def test_dict_without_encoding_defaults_to_utf8(self):
        data = make_entry().to_dict()
        del data["response_body_encoding"]
        assert IdempotencyEntry.from_dict(data).response_body_encoding == "utf-8"


class TestSqlAlchemyStore:
    """Tests for the relational store on SQLite."""

    @pytest.mark.asyncio
    async def test_find_missing(self, sql_store):
        assert await sql_store.find_recent(KEY, NOW - WINDOW) is None

    @pytest.mark.asyncio
    async def test_save_then_find(self, sql_store):
        await sql_store.save(make_entry(), stale_before=NOW - WINDOW)

        found = await sql_store.find_recent(KEY, NOW - WINDOW)
        assert found == make_entry()

    @pytest.mark.asyncio
    async def test_body_encoding_persisted(self, sql_store):
        entry = make_entry(response_body="iVBORw0KGgr//gA=", response_body_encoding="base64")
        await sql_store.save(entry, stale_before=NOW - WINDOW)

        found = await sql_store.find_recent(KEY, NOW - WINDOW)
        assert found.response_body_encoding == "base64"
        assert found.response_bytes() == b"\x89PNG\r\n\x1a\n\xff\xfe\x00"

    @pytest.mark.asyncio
    async def test_find_respects_window(self, sql_store):
        await sql_store.save(make_entry(), stale_before=NOW - WINDOW)

        later = NOW + WINDOW + timedelta(seconds=1)
        assert await sql_store.find_recent(KEY, later - WINDOW) is None

    @pytest.mark.asyncio
    async def test_live_duplicate_rejected(self, sql_store):
        await sql_store.save(make_entry(), stale_before=NOW - WINDOW)

        second = make_entry(created_at=NOW + timedelta(minutes=1), response_status=500)
        with pytest.raises(DuplicateIdempotencyKeyError):
            await sql_store.save(second, stale_before=second.created_at - WINDOW)

        found = await sql_store.find_recent(KEY, NOW - WINDOW)
        assert found.response_status == 201

    @pytest.mark.asyncio
    async def test_stale_record_replaced(self, sql_store):
        await sql_store.save(make_entry(), stale_before=NOW - WINDOW)

        later = NOW + timedelta(hours=30)
        await sql_store.save(
            make_entry(created_at=later, response_status=202),
            stale_before=later - WINDOW,
        )

        found = await sql_store.find_recent(KEY, later - WINDOW)
        assert found.response_status == 202
        assert found.created_at == later

    @pytest.mark.asyncio
    async def test_purge(self, sql_store):
        other = "9b2f3c1e-7d4a-4f6b-8e2d-1a3c5b7d9f00"
        await sql_store.save(make_entry(created_at=NOW - timedelta(days=10)), stale_before=NOW - WINDOW)
        await sql_store.save(make_entry(key=other), stale_before=NOW - WINDOW)

        deleted = await sql_store.purge(NOW - timedelta(days=7))

        assert deleted == 1
        assert await sql_store.find_recent(other, NOW - WINDOW) is not None


class TestMemoryStore:
    """Tests for the process-local store."""

    @pytest.mark.asyncio
    async def test_save_find_and_duplicate(self, memory_store):
        await memory_store.save(make_entry(), stale_before=NOW - WINDOW)

        assert await memory_store.find_recent(KEY, NOW - WINDOW) == make_entry()
        with pytest.raises(DuplicateIdempotencyKeyError):
            await memory_store.save(make_entry(), stale_before=NOW - WINDOW)

    @pytest.mark.asyncio
    async def test_purge(self, memory_store):
        await memory_store.save(make_entry(created_at=NOW - timedelta(days=8)), stale_before=NOW - WINDOW)

        assert await memory_store.purge(NOW - timedelta(days=7)) == 1
        assert len(memory_store) == 0


class TestRedisStore:
    """Tests for the Redis store with a mocked client."""

    @pytest.fixture
    def store(self, mock_redis):
        return RedisIdempotencyStore(mock_redis, key_prefix="idem:", ttl=86400)

    @pytest.mark.asyncio
    async def test_find_missing(self, store, mock_redis):
        assert await store.find_recent(KEY, NOW - WINDOW) is None
        mock_redis.get.assert_awaited_once_with(f"idem:{KEY}")

    @pytest.mark.asyncio
    async def test_find_live_and_expired(self, store, mock_redis):
        mock_redis.get = AsyncMock(return_value=json.dumps(make_entry().to_dict()))

        assert await store.find_recent(KEY, NOW - WINDOW) == make_entry()
        assert await store.find_recent(KEY, NOW) is None

    @pytest.mark.asyncio
    async def test_save_uses_set_nx_with_ttl(self, store, mock_redis):
        await store.save(make_entry(), stale_before=NOW - WINDOW)

        args, kwargs = mock_redis.set.call_args
        assert args[0] == f"idem:{KEY}"
        assert json.loads(args[1])["response_body"] == '{"success":true}'
        assert kwargs == {"nx": True, "ex": 86400}

    @pytest.mark.asyncio
    async def test_save_duplicate(self, store, mock_redis):
        mock_redis.set = AsyncMock(return_value=None)
        mock_redis.get = AsyncMock(return_value=json.dumps(make_entry().to_dict()))

        with pytest.raises(DuplicateIdempotencyKeyError):
            await store.save(make_entry(created_at=NOW + timedelta(minutes=1)), stale_before=NOW - WINDOW)

    @pytest.mark.asyncio
    async def test_save_overwrites_stale(self, store, mock_redis):
        mock_redis.set = AsyncMock(side_effect=[None, True])
        mock_redis.get = AsyncMock(return_value=json.dumps(make_entry().to_dict()))

        later = NOW + timedelta(hours=30)
        await store.save(make_entry(created_at=later), stale_before=later - WINDOW)

        assert mock_redis.set.await_count == 2
        assert mock_redis.set.call_args.kwargs == {"ex": 86400}

    @pytest.mark.asyncio
    async def test_close(self, store, mock_redis):
        await store.close()
        mock_redis.aclose.assert_awaited_once()
