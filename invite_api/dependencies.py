"""Dependency injection for the invite code service.

This module provides a centralized way to inject database and cache dependencies
with consistent naming across all API endpoints. Shared resources live on one
ServiceManager built at startup and stored on ``app.state``; nothing here is a
module-level instance, so tests and multiple apps can each own their own.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from invite_api.cache import InviteCache
from invite_api.codec import InviteCodeCodec
from invite_api.config import Settings, get_settings
from invite_api.database import get_db
from invite_api.invite_service import InviteService
from invite_api.locks import LockManager

__all__ = [
    "RequestContext",
    "ServiceManager",
    "get_invite_service",
    "get_request_context",
    "get_service_manager",
]


# ============================================================================
# SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Process-wide shared resources, built once in the app lifespan.

    Holds the Redis clients and the stateless helpers built on them (codec,
    lock manager, cache layer) so request handlers do not rebuild them.

    Clients passed in by the caller are used as-is and are not closed by
    ``cleanup``; clients created here from settings are.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache_writer: Optional[redis.Redis] = None,
        cache_reader: Optional[redis.Redis] = None,
    ):
        self.settings = settings or get_settings()
        self.cache_writer = cache_writer
        self.cache_reader = cache_reader
        self._owned_clients: list[redis.Redis] = []
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if self._initialized:
            return

        self.logger = self._setup_logger()
        if self.cache_writer is None:
            self.cache_writer = self._setup_redis(self.settings.REDIS_URL)
        if self.cache_reader is None:
            # No replica configured: reads share the primary connection pool.
            if self.settings.REDIS_REPLICA_URL:
                self.cache_reader = self._setup_redis(self.settings.REDIS_REPLICA_URL)
            else:
                self.cache_reader = self.cache_writer

        self.codec = InviteCodeCodec(self.settings.INVITE_ALPHABET, self.settings.SYSTEM_SALT)
        self.locks = LockManager(self.cache_writer)
        self.invite_cache = InviteCache(
            self.cache_writer,
            self.cache_reader,
            ttl_seconds=self.settings.INVITE_CACHE_TTL_SECONDS,
        )
        self._initialized = True
        self.logger.info(f"Service manager initialized for {self.settings.APP_NAME} ({self.settings.APP_ENV})")

    def _setup_logger(self) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("inviteapi")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL)
        return logger

    def _setup_redis(self, url: str) -> redis.Redis:
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=self.settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=self.settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        self._owned_clients.append(client)
        return client

    async def cleanup(self) -> None:
        """Cleanup shared resources at shutdown."""
        for client in self._owned_clients:
            await client.aclose()
        self._owned_clients.clear()
        self._initialized = False


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request context with tracking and shared resource access.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Shared resources built at startup
        request_id: Unique identifier for this request
        trace_id: Correlation ID for distributed tracing
        user_agent: Client user agent string
        client_ip: Client IP address (X-Forwarded-For aware)
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    start_time: float = field(default_factory=lambda: time.time())
    tags: list[str] = field(default_factory=list)

    @property
    def cache_writer(self) -> redis.Redis:
        return self.service_manager.cache_writer

    @property
    def cache_reader(self) -> redis.Redis:
        return self.service_manager.cache_reader

    @property
    def codec(self) -> InviteCodeCodec:
        return self.service_manager.codec

    @property
    def locks(self) -> LockManager:
        return self.service_manager.locks

    @property
    def invite_cache(self) -> InviteCache:
        return self.service_manager.invite_cache

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger with this request's context attached."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


def client_ip_for(request: Request, trusted_hops: int = 0) -> Optional[str]:
    """Return the address of the client that sent ``request``.

    X-Forwarded-For is only read when ``trusted_hops`` proxies sit in front of
    the app; each proxy appends the peer it saw, so the entry ``trusted_hops``
    from the right is the last one a trusted proxy wrote. Anything left of it
    is client-supplied.
    """
    peer = request.client.host if request.client else None
    forwarded = request.headers.get("x-forwarded-for")
    if trusted_hops <= 0 or not forwarded:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if not hops:
        return peer
    return hops[-trusted_hops] if len(hops) >= trusted_hops else hops[0]


async def get_service_manager(request: Request) -> ServiceManager:
    """Return the ServiceManager the app lifespan stored on ``app.state``."""
    manager: Optional[ServiceManager] = getattr(request.app.state, "service_manager", None)
    if manager is None:
        raise RuntimeError("ServiceManager is not configured; is the application lifespan running?")
    if not manager.initialized:
        await manager.initialize()
    return manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        trace_id=request.headers.get("x-trace-id"),
        user_agent=request.headers.get("user-agent"),
        client_ip=client_ip_for(request, manager.settings.TRUSTED_PROXY_HOPS),
    )


def get_invite_service(ctx: RequestContext = Depends(get_request_context)) -> InviteService:
    return InviteService.from_context(ctx)
