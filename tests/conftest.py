"""Shared pytest fixtures for service, repository and API tests.

The database is a temporary SQLite file driven through aiosqlite, so several
sessions can see each other's commits the way PostgreSQL connections do.
Redis is replaced by ``InMemoryRedis``, an async double for the handful of
commands the service sends.
"""

import asyncio
import datetime
import os
import time
from collections.abc import AsyncGenerator, Callable

TEST_ALPHABET = "K7Q2N5XR8BMVY9CW3PFGJH6DZT4SL"
TEST_SALT = "TestSalt2024"

# Settings are read on import of invite_api.database.
os.environ.setdefault("SYSTEM_SALT", TEST_SALT)
os.environ.setdefault("INVITE_ALPHABET", TEST_ALPHABET)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from invite_api.config import Settings  # noqa: E402
from invite_api.database import build_engine, build_sessionmaker, create_tables, get_db  # noqa: E402
from invite_api.dependencies import RequestContext, ServiceManager, get_service_manager  # noqa: E402
from invite_api.invite_service import InviteService  # noqa: E402
from invite_api.locks import RELEASE_LOCK_SCRIPT  # noqa: E402
from invite_api.main import app  # noqa: E402
from invite_api.models import Invite, utcnow  # noqa: E402


# ============================================================================
# REDIS TEST DOUBLE
# ============================================================================


class InMemoryRedis:
    """Async stand-in for the subset of redis.asyncio.Redis the service uses.

    Every command yields to the event loop once, like a network round trip
    would, so concurrent callers interleave between commands.
    """

    def __init__(self):
        self._values: dict[str, str] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._deadlines: dict[str, float] = {}

    def _purge(self, name: str) -> None:
        deadline = self._deadlines.get(name)
        if deadline is not None and time.monotonic() >= deadline:
            self._values.pop(name, None)
            self._zsets.pop(name, None)
            self._deadlines.pop(name, None)

    def _exists(self, name: str) -> bool:
        self._purge(name)
        return name in self._values or name in self._zsets

    async def ping(self) -> bool:
        await asyncio.sleep(0)
        return True

    async def get(self, name: str) -> str | None:
        await asyncio.sleep(0)
        self._purge(name)
        return self._values.get(name)

    async def set(self, name: str, value, ex: int | None = None, px: int | None = None, nx: bool = False):
        await asyncio.sleep(0)
        if nx and self._exists(name):
            return None
        self._values[name] = str(value)
        self._deadlines.pop(name, None)
        if ex is not None:
            self._deadlines[name] = time.monotonic() + ex
        elif px is not None:
            self._deadlines[name] = time.monotonic() + px / 1000
        return True

    async def setex(self, name: str, time_seconds: int, value) -> bool:
        return await self.set(name, value, ex=time_seconds)

    async def delete(self, *names: str) -> int:
        await asyncio.sleep(0)
        deleted = 0
        for name in names:
            if self._exists(name):
                deleted += 1
            self._values.pop(name, None)
            self._zsets.pop(name, None)
            self._deadlines.pop(name, None)
        return deleted

    async def eval(self, script: str, numkeys: int, *keys_and_args):
        await asyncio.sleep(0)
        if script != RELEASE_LOCK_SCRIPT:
            raise NotImplementedError("InMemoryRedis only runs the lock release script")
        name, token = keys_and_args
        self._purge(name)
        if self._values.get(name) == token:
            del self._values[name]
            self._deadlines.pop(name, None)
            return 1
        return 0

    def _zremrangebyscore(self, name: str, min, max) -> int:
        self._purge(name)
        members = self._zsets.get(name, {})
        low, high = float(min), float(max)
        doomed = [member for member, score in members.items() if low <= score <= high]
        for member in doomed:
            del members[member]
        return len(doomed)

    def _zcard(self, name: str) -> int:
        self._purge(name)
        return len(self._zsets.get(name, {}))

    def _zadd(self, name: str, mapping: dict[str, float]) -> int:
        self._purge(name)
        members = self._zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in members)
        members.update(mapping)
        return added

    def _expire(self, name: str, time_seconds: int) -> bool:
        if not self._exists(name):
            return False
        self._deadlines[name] = time.monotonic() + time_seconds
        return True

    async def zremrangebyscore(self, name: str, min, max) -> int:
        await asyncio.sleep(0)
        return self._zremrangebyscore(name, min, max)

    async def zcard(self, name: str) -> int:
        await asyncio.sleep(0)
        return self._zcard(name)

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        await asyncio.sleep(0)
        return self._zadd(name, mapping)

    async def zrem(self, name: str, *members: str) -> int:
        await asyncio.sleep(0)
        self._purge(name)
        zset = self._zsets.get(name, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    async def expire(self, name: str, time_seconds: int) -> bool:
        await asyncio.sleep(0)
        return self._expire(name, time_seconds)

    def pipeline(self, transaction: bool = True) -> "InMemoryPipeline":
        return InMemoryPipeline(self)

    async def flushdb(self) -> bool:
        self._values.clear()
        self._zsets.clear()
        self._deadlines.clear()
        return True

    async def aclose(self) -> None:
        return None


class InMemoryPipeline:
    """MULTI/EXEC double: queued commands run back to back on ``execute``."""

    def __init__(self, redis: InMemoryRedis):
        self._redis = redis
        self._queue: list[tuple[Callable, tuple]] = []

    async def __aenter__(self) -> "InMemoryPipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._queue.clear()

    def zremrangebyscore(self, name: str, min, max) -> "InMemoryPipeline":
        self._queue.append((self._redis._zremrangebyscore, (name, min, max)))
        return self

    def zadd(self, name: str, mapping: dict[str, float]) -> "InMemoryPipeline":
        self._queue.append((self._redis._zadd, (name, mapping)))
        return self

    def zcard(self, name: str) -> "InMemoryPipeline":
        self._queue.append((self._redis._zcard, (name,)))
        return self

    def expire(self, name: str, time_seconds: int) -> "InMemoryPipeline":
        self._queue.append((self._redis._expire, (name, time_seconds)))
        return self

    async def execute(self) -> list:
        await asyncio.sleep(0)
        # No await between commands, so nothing interleaves with the batch.
        results = [command(*args) for command, args in self._queue]
        self._queue.clear()
        return results


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Test settings with the fixed alphabet and salt."""
    return Settings(
        SYSTEM_SALT=TEST_SALT,
        INVITE_ALPHABET=TEST_ALPHABET,
        INVITE_MAX_CODE_ATTEMPTS=3,
        RATE_LIMIT_STRICT_MAX=5,
        RATE_LIMIT_WINDOW_SECONDS=60,
    )


@pytest.fixture
def redis_client() -> InMemoryRedis:
    return InMemoryRedis()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path, settings: Settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = build_engine(settings, f"sqlite+aiosqlite:///{tmp_path / 'invites.db'}")
    await create_tables(engine)

    yield build_sessionmaker(engine)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def service_manager(settings: Settings, redis_client: InMemoryRedis) -> AsyncGenerator[ServiceManager, None]:
    manager = ServiceManager(settings, cache_writer=redis_client, cache_reader=redis_client)
    await manager.initialize()
    yield manager
    await manager.cleanup()


@pytest_asyncio.fixture(scope="function")
async def make_service(
    service_manager: ServiceManager, session_factory
) -> AsyncGenerator[Callable[[], InviteService], None]:
    """Build InviteServices that each own a session, like separate requests."""
    sessions: list[AsyncSession] = []

    def _make() -> InviteService:
        session = session_factory()
        sessions.append(session)
        return InviteService(RequestContext(database=session, service_manager=service_manager))

    yield _make

    for session in sessions:
        await session.close()


@pytest.fixture
def invite_service(make_service) -> InviteService:
    return make_service()


@pytest.fixture
def make_invite() -> Callable[..., Invite]:
    """Factory for transient Invite rows with sensible defaults."""

    def _make(code: str = "AAAA-BBBB", **overrides) -> Invite:
        now = utcnow()
        values = dict(
            code=code,
            referrer_email="admin@example.com",
            max_uses=1,
            current_uses=0,
            is_active=True,
            expires_at=now + datetime.timedelta(days=30),
            created_at=now,
            updated_at=now,
            redemptions=[],
        )
        values.update(overrides)
        return Invite(**values)

    return _make


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, service_manager: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_service_manager() -> ServiceManager:
        return service_manager

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_manager] = override_get_service_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
