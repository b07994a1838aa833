"""Read-through Redis cache of invite records.

The cache is disposable: the database is the only source of truth, so every
cache failure degrades to a miss (reads) or a no-op (writes) instead of
failing the request.

Flow Diagram — Cache Reads
==========================
::
    ┌─────────────┐
    │ get(code)   │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ GET invite: │──── RedisError ───┐
    │ <code>      │                   │
    └──────┬──────┘                   │
    HIT?  │                           │
    ┌─────┴─────┐                     │
    │ NO         │ YES                │
    ▼            ▼                    ▼
┌─────────┐  ┌──────────┐        ┌─────────┐
│ None    │  │ decode   │─ bad ─▶│ None    │
└─────────┘  │ payload  │        │ (miss)  │
             └──────────┘        └─────────┘

Key Behaviours
===============
- Reads go to the replica client, writes and deletes to the primary.
- invalidate() must run after every committed mutation and before the
  lease is released.
- Redemptions are never cached; identity checks always hit the database.

Classes:
    InviteCache:  get / put / invalidate for CachedInvitePayload.
"""

import logging

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import ValidationError
from redis.exceptions import RedisError

from invite_api.models import Invite
from invite_api.schemas import CachedInvitePayload

__all__ = ["InviteCache", "DEFAULT_CACHE_TTL_SECONDS"]

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 86400  # 24 hours

CACHE_ERRORS_TOTAL = Counter(
    "invite_api_cache_errors_total",
    "Cache operations that failed and were treated as miss/no-op",
    ["operation"],
)


class InviteCache:
    def __init__(
        self,
        cache_write: redis.Redis,
        cache_read: redis.Redis | None = None,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ):
        self._cache_write = cache_write
        self._cache_read = cache_read or cache_write
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def key_for(code: str) -> str:
        return f"invite:{code}"

    async def get(self, code: str) -> CachedInvitePayload | None:
        try:
            cached = await self._cache_read.get(self.key_for(code))
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="get").inc()
            logger.error(f"Cache get error for {code}: {exc}")
            return None

        if not cached:
            return None

        try:
            return CachedInvitePayload.model_validate_json(cached)
        except ValidationError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="decode").inc()
            logger.error(f"Cache deserialization error for {code}: {exc}")
            return None

    async def put(self, invite: Invite | CachedInvitePayload, ttl_seconds: int | None = None) -> None:
        payload = CachedInvitePayload.model_validate(invite)
        try:
            await self._cache_write.setex(
                self.key_for(payload.code),
                ttl_seconds or self._ttl_seconds,
                payload.model_dump_json(),
            )
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="put").inc()
            logger.error(f"Cache put error for {payload.code}: {exc}")

    async def invalidate(self, code: str) -> None:
        try:
            await self._cache_write.delete(self.key_for(code))
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="invalidate").inc()
            logger.error(f"Cache invalidate error for {code}: {exc}")
