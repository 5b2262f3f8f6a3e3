import asyncio
import os

os.environ.setdefault("TRACING_ENABLED", "false")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import truckstamp_api.models  # noqa: E402,F401
from truckstamp_api.api.dependencies.rate_limit import get_rate_limiter  # noqa: E402
from truckstamp_api.api.v1.endpoints.billing_webhooks import get_stripe_provider  # noqa: E402
from truckstamp_api.app import create_app  # noqa: E402
from truckstamp_api.db.base import Base  # noqa: E402
from truckstamp_api.db.session import get_session  # noqa: E402
from truckstamp_api.models.user import User  # noqa: E402
from truckstamp_api.models.vendor import Vendor  # noqa: E402
from truckstamp_api.services.billing.providers import StripeBillingProvider  # noqa: E402
from truckstamp_api.services.rate_limit import RateLimiter  # noqa: E402


WEBHOOK_SECRET = "whsec_test_secret"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
VENDOR_LAT = -33.9249
VENDOR_LNG = 18.4241


class FakePipeline:
    """Buffers commands and applies them back to back, like MULTI/EXEC."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def __getattr__(self, name: str):
        def _queue(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._commands.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self) -> list[Any]:
        commands, self._commands = self._commands, []
        await self._redis.round_trip()
        # Base-class commands never yield, so the batch is applied atomically.
        return [await getattr(FakeRedis, name)(self._redis, *args, **kwargs) for name, args, kwargs in commands]


class FakeRedis:
    """Sorted-set subset of ``redis.asyncio.Redis`` used by the rate limiter."""

    def __init__(self) -> None:
        self._sets: dict[str, dict[str, float]] = {}
        self.expirations: dict[str, int] = {}

    async def zremrangebyscore(self, key: str, minimum: float, maximum: float) -> int:
        members = self._sets.get(key, {})
        doomed = [member for member, score in members.items() if minimum <= score <= maximum]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        members = self._sets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in members)
        members.update(mapping)
        return added

    async def zcard(self, key: str) -> int:
        return len(self._sets.get(key, {}))

    async def zrem(self, key: str, *members: str) -> int:
        stored = self._sets.get(key, {})
        return sum(1 for member in members if stored.pop(member, None) is not None)

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        ordered = sorted(self._sets.get(key, {}).items(), key=lambda item: item[1])
        stop = None if end == -1 else end + 1
        window = ordered[start:stop]
        if withscores:
            return window
        return [member for member, _ in window]

    async def expire(self, key: str, seconds: int) -> bool:
        self.expirations[key] = seconds
        return True

    async def round_trip(self) -> None:
        return None

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


class YieldingRedis(FakeRedis):
    """Gives up the event loop on every round trip, so concurrent callers interleave."""

    async def round_trip(self) -> None:
        await asyncio.sleep(0)

    async def zremrangebyscore(self, key: str, minimum: float, maximum: float) -> int:
        await self.round_trip()
        return await super().zremrangebyscore(key, minimum, maximum)

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        await self.round_trip()
        return await super().zadd(key, mapping)

    async def zcard(self, key: str) -> int:
        await self.round_trip()
        return await super().zcard(key)

    async def zrem(self, key: str, *members: str) -> int:
        await self.round_trip()
        return await super().zrem(key, *members)

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        await self.round_trip()
        return await super().zrange(key, start, end, withscores=withscores)


class BrokenPipeline:
    def __getattr__(self, name: str):
        def _queue(*_: Any, **__: Any) -> "BrokenPipeline":
            return self

        return _queue

    async def execute(self) -> list[Any]:
        raise RedisConnectionError("connection refused")


class BrokenRedis:
    """Counter store that is always unreachable."""

    def pipeline(self, transaction: bool = True) -> BrokenPipeline:
        return BrokenPipeline()

    def __getattr__(self, name: str):
        async def _unavailable(*_: Any, **__: Any) -> None:
            raise RedisConnectionError("connection refused")

        return _unavailable


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def stripe_provider() -> StripeBillingProvider:
    return StripeBillingProvider("sk_test_123", WEBHOOK_SECRET)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions use separate connections."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'truckstamp.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, fake_redis, stripe_provider):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(fake_redis)
    app.dependency_overrides[get_stripe_provider] = lambda: stripe_provider

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


async def _create_user(session: AsyncSession, email: str = "customer@example.com", **overrides: Any) -> User:
    user = User(email=email, **overrides)
    session.add(user)
    await session.flush()
    return user


async def _create_vendor(session: AsyncSession, **overrides: Any) -> Vendor:
    values: dict[str, Any] = {
        "name": "Taco Truck",
        "cuisine": "Mexican",
        "is_open": True,
        "lat": VENDOR_LAT,
        "lng": VENDOR_LNG,
        "location_updated_at": NOW - timedelta(minutes=5),
        "stamps_required": 10,
    }
    values.update(overrides)
    vendor = Vendor(**values)
    session.add(vendor)
    await session.flush()
    return vendor


@pytest.fixture
def make_user():
    return _create_user


@pytest.fixture
def make_vendor():
    return _create_vendor


@pytest.fixture
def broken_redis() -> BrokenRedis:
    return BrokenRedis()


@pytest.fixture
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture
def yielding_redis() -> YieldingRedis:
    return YieldingRedis()
