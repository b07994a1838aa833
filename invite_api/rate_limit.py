"""Per-client sliding-window rate limiting backed by Redis sorted sets.

Each request adds a member scored with its timestamp to ``rl:<policy>:<ip>``;
members older than the window are trimmed, and the trim, add and count run in
one MULTI/EXEC transaction. A refused request removes its own member again.
The limiter fails open: if Redis is unavailable the request goes through and
the error is logged.

X-RateLimit-* headers are set on successful responses and are also left on
``request.state.rate_limit_headers`` for the error handlers.

How to Use
===========
::
    strict_rate_limit = RateLimiter("rl:strict", lambda s: s.RATE_LIMIT_STRICT_MAX)

    @router.post("/use", dependencies=[Depends(strict_rate_limit)])
    async def use_invite(...): ...
"""

import datetime
import logging
import time
import uuid
from collections.abc import Callable

from fastapi import Depends, Request, Response
from redis.exceptions import RedisError

from invite_api.config import Settings
from invite_api.dependencies import ServiceManager, client_ip_for, get_service_manager
from invite_api.exceptions import RateLimitedError

__all__ = ["RateLimiter", "default_rate_limit", "strict_rate_limit"]

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, key_prefix: str, max_requests: Callable[[Settings], int]):
        self._key_prefix = key_prefix
        self._max_requests = max_requests

    async def __call__(
        self,
        request: Request,
        response: Response,
        manager: ServiceManager = Depends(get_service_manager),
    ) -> None:
        settings = manager.settings
        limit = self._max_requests(settings)
        window_seconds = settings.RATE_LIMIT_WINDOW_SECONDS
        now_ms = int(time.time() * 1000)
        client_ip = client_ip_for(request, settings.TRUSTED_PROXY_HOPS)
        key = f"{self._key_prefix}:{client_ip or 'unknown'}"
        member = f"{now_ms}-{uuid.uuid4().hex}"
        cache = manager.cache_writer

        try:
            # Trim, record and count in one MULTI so concurrent requests see each other.
            async with cache.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now_ms - window_seconds * 1000)
                pipe.zadd(key, {member: now_ms})
                pipe.zcard(key)
                pipe.expire(key, window_seconds)
                _, _, count, _ = await pipe.execute()
            if count > limit:
                # Refused requests do not use up the window.
                await cache.zrem(key, member)
        except RedisError as exc:
            logger.error(f"Rate limiter error for {key}, allowing request: {exc}")
            return

        reset_at = datetime.datetime.fromtimestamp(now_ms / 1000 + window_seconds, tz=datetime.timezone.utc)
        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(0, limit - count)),
            "X-RateLimit-Reset": reset_at.isoformat(),
        }
        # Error handlers build their own response; they copy these from request.state.
        request.state.rate_limit_headers = headers
        if count > limit:
            raise RateLimitedError(window_seconds)
        response.headers.update(headers)


default_rate_limit = RateLimiter("rl:default", lambda s: s.RATE_LIMIT_DEFAULT_MAX)
strict_rate_limit = RateLimiter("rl:strict", lambda s: s.RATE_LIMIT_STRICT_MAX)
