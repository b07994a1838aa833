"""Short-lived Redis leases that serialize redemptions of a single code.

Flow Diagram — Lease Lifecycle
==============================
::
    ┌─────────────┐
    │ acquire()   │  SET lock:invite:<code> <token> NX PX <ttl>
    └──────┬──────┘
    SET?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ None    │  │ token   │
│ (busy)  │  │         │
└─────────┘  └────┬────┘
                  ▼
           ┌─────────────┐
           │ ...work...  │
           └──────┬──────┘
                  ▼
           ┌─────────────┐
           │ release()   │  Lua: GET == token ? DEL : 0
           └─────────────┘

Key Behaviours
===============
- acquire is a single atomic SET NX PX; there is no read-then-write window.
- release deletes only if the stored token is still ours, so a slow holder
  whose lease already expired cannot delete the next holder's lease.
- The TTL is the only cleanup for a crashed holder.
- release never raises: a failed release is logged and left to the TTL.

Classes:
    LockManager:  Acquire/release token-guarded leases in Redis.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis
from redis.exceptions import RedisError

from invite_api.exceptions import StoreUnavailableError

__all__ = ["LockManager", "RELEASE_LOCK_SCRIPT"]

logger = logging.getLogger(__name__)

RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockManager:
    def __init__(self, cache: redis.Redis, key_prefix: str = "lock:invite:"):
        self._cache = cache
        self._prefix = key_prefix

    def key_for(self, name: str) -> str:
        return f"{self._prefix}{name}"

    async def acquire(self, name: str, ttl_ms: int) -> str | None:
        """Try to take the lease for ``name``.

        Returns:
            The holder token, or None if another lease is live.

        Raises:
            StoreUnavailableError: If Redis cannot be reached.
        """
        assert ttl_ms > 0, f"ttl_ms must be positive, got {ttl_ms!r}"
        token = uuid.uuid4().hex
        try:
            acquired = await self._cache.set(self.key_for(name), token, px=ttl_ms, nx=True)
        except RedisError as exc:
            raise StoreUnavailableError("lock store", str(exc)) from exc
        return token if acquired else None

    async def release(self, name: str, token: str) -> bool:
        try:
            deleted = await self._cache.eval(RELEASE_LOCK_SCRIPT, 1, self.key_for(name), token)
        except RedisError as exc:
            logger.error(f"Failed to release lock for {name}: {exc}")
            return False
        if not deleted:
            logger.warning(f"Lock for {name} was no longer held by this token")
        return bool(deleted)

    @asynccontextmanager
    async def lease(self, name: str, ttl_ms: int) -> AsyncIterator[str | None]:
        """Hold the lease for the body of a ``with`` block.

        Yields None when the lease is busy; the caller decides what that means.
        """
        token = await self.acquire(name, ttl_ms)
        try:
            yield token
        finally:
            if token is not None:
                await self.release(name, token)
