"""Distributed per-container lock on Redis."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from lxcforge.exceptions import LockContentionError


logger = logging.getLogger(__name__)

LOCK_PREFIX = "container-lock:"
DEFAULT_LOCK_TTL = 300

# Delete only if the caller still owns the lock
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def container_lock_key(container_id: str) -> str:
    return f"{LOCK_PREFIX}{container_id}"


class RedisLock:
    """SET NX EX lock with token-checked release. Expires on its own if the holder dies."""

    def __init__(self, redis, default_ttl: int = DEFAULT_LOCK_TTL):
        """Initialize lock helper."""
        self.redis = redis
        self.default_ttl = default_ttl

    async def acquire(self, key: str, ttl: Optional[int] = None) -> Optional[str]:
        """Try to take the lock. Returns the ownership token, or None if already held."""
        token = str(uuid.uuid4())
        acquired = await self.redis.set(key, token, ex=ttl or self.default_ttl, nx=True)
        if not acquired:
            logger.debug(f"Lock {key} is held by another operation")
            return None
        return token

    async def release(self, key: str, token: str) -> bool:
        """Release the lock if token still owns it. Returns whether a key was deleted."""
        result = await self.redis.eval(RELEASE_SCRIPT, 1, key, token)
        released = int(result or 0) == 1
        if not released:
            logger.debug(f"Lock {key} not released, token no longer owns it")
        return released

    @asynccontextmanager
    async def hold(self, key: str, ttl: Optional[int] = None) -> AsyncIterator[str]:
        """Hold the lock for the duration of the block.

        Raises LockContentionError when someone else holds it.
        """
        token = await self.acquire(key, ttl)
        if token is None:
            raise LockContentionError(key)
        try:
            yield token
        finally:
            try:
                await self.release(key, token)
            except Exception as e:
                # Lock expires with its TTL
                logger.warning(f"Failed to release lock {key}: {e}")
