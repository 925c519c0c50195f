"""Distributed job locks backed by Redis.

A lock is a single key set with ``SET NX EX``: only one instance can hold
it, and a crashed holder releases it when the TTL expires.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "polybuddy:lock:"
DEFAULT_LOCK_TTL_SECONDS = 600

# Delete the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class JobLockError(Exception):
    """Raised when a job lock is held by another instance."""

    pass


class RedisJobLock:
    """Mutual exclusion for a named job across service instances.

    Example:
        ```python
        lock = RedisJobLock(redis, "sync")
        async with lock.hold():
            await do_sync()
        ```
    """

    def __init__(
        self,
        redis: Redis,
        name: str,
        *,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        """Initialize the lock.

        Args:
            redis: Redis async client.
            name: Job name, used in the key.
            ttl_seconds: Expiry of a held lock.
            key_prefix: Redis key prefix.
        """
        self._redis = redis
        self._key = f"{key_prefix}{name}"
        self._ttl = ttl_seconds
        self._token: str | None = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> bool:
        """Try to take the lock without waiting.

        Returns:
            True if acquired, False if another holder has it.
        """
        token = uuid.uuid4().hex
        acquired = await self._redis.set(self._key, token, nx=True, ex=self._ttl)
        if acquired:
            self._token = token
            return True
        return False

    async def release(self) -> None:
        """Release the lock if this instance still holds it."""
        if self._token is None:
            return
        token, self._token = self._token, None
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key, token)
        if not released:
            logger.warning("Lock %s expired before release", self._key)

    @contextlib.asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            JobLockError: If the lock is already held elsewhere.
        """
        if not await self.acquire():
            raise JobLockError(f"Lock {self._key} is held by another instance")
        try:
            yield
        finally:
            await self.release()
