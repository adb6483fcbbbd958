"""
Distributed Lock Manager

Redis-based distributed locking so periodic maintenance runs on one
instance at a time in a multi-node deployment.
"""

import logging
import uuid
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Atomic check-and-delete so only the owner releases
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class DistributedLockManager:
    """
    Redis-based distributed lock manager.

    Features:
    - Unique lock holder ID per instance
    - Automatic lock expiration (TTL)
    - Safe release (only owner can release)
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        lock_ttl: int = 300,
        lock_prefix: str = "carbontrack:lock:",
    ):
        """
        Initialize lock manager.

        Args:
            redis_client: Redis client
            lock_ttl: Default lock TTL in seconds
            lock_prefix: Prefix for lock keys
        """
        self._redis = redis_client
        self.lock_ttl = lock_ttl
        self.lock_prefix = lock_prefix
        self.instance_id = str(uuid.uuid4())

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> "DistributedLockManager":
        return cls(redis.from_url(redis_url, decode_responses=True), **kwargs)

    async def close(self) -> None:
        """Close Redis connection."""
        await self._redis.aclose()
        logger.info("Distributed lock manager disconnected")

    def _make_key(self, name: str) -> str:
        """Create full lock key."""
        return f"{self.lock_prefix}{name}"

    async def acquire(self, name: str, ttl: Optional[int] = None) -> bool:
        """
        Try once to acquire a distributed lock.

        Args:
            name: Lock name
            ttl: Lock TTL in seconds (uses default if not specified)

        Returns:
            True if lock acquired, False if another instance holds it
        """
        acquired = await self._redis.set(
            self._make_key(name),
            self.instance_id,
            nx=True,
            ex=ttl or self.lock_ttl,
        )
        if acquired:
            logger.debug(f"Lock acquired: {name}")
        return bool(acquired)

    async def release(self, name: str) -> bool:
        """
        Release a distributed lock.

        Only releases if this instance owns the lock.

        Returns:
            True if released, False if not owned or not exists
        """
        result = await self._redis.eval(
            _RELEASE_SCRIPT, 1, self._make_key(name), self.instance_id
        )
        if result:
            logger.debug(f"Lock released: {name}")
            return True
        logger.debug(f"Lock not released (not owner): {name}")
        return False

