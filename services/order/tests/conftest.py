"""
Pytest configuration and fixtures.

Redis is replaced by an in-memory double that implements the subset of
redis.asyncio commands the pipeline uses. The store runs the real SQL on
an in-memory SQLite database.
"""
import asyncio
from collections import defaultdict
from decimal import Decimal

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.cache import OrderCache
from app.processor import OrderProcessor
from app.store import OrderStore, create_schema
from app.stream import OrderStream

ALL_COMMANDS = "*"


def _parse_id(entry_id: str) -> tuple[int, int]:
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis(decode_responses=True)."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = defaultdict(list)
        self.failing: set[str] = set()
        self.calls: list[str] = []
        self._seq = 0
        self.closed = False

    def fail(self, *commands: str) -> None:
        self.failing = set(commands) if commands else {ALL_COMMANDS}

    def recover(self) -> None:
        self.failing = set()

    def _record(self, command: str) -> None:
        self.calls.append(command)
        if ALL_COMMANDS in self.failing or command in self.failing:
            raise RedisConnectionError(f"{command} failed: connection refused")

    # ── strings ──

    async def get(self, key):
        self._record("get")
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self._record("setex")
        self.values[key] = value
        self.ttls[key] = int(ttl)
        return True

    async def set(self, key, value, ex=None, nx=False):
        self._record("set")
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = int(ex)
        return True

    async def expire(self, key, ttl):
        self._record("expire")
        if key not in self.values:
            return False
        self.ttls[key] = int(ttl)
        return True

    async def ping(self):
        self._record("ping")
        return True

    async def aclose(self):
        self.closed = True

    # ── streams ──

    async def xadd(self, name, fields):
        self._record("xadd")
        self._seq += 1
        entry_id = f"1700000000000-{self._seq}"
        self.streams[name].append((entry_id, dict(fields)))
        return entry_id

    async def xread(self, streams, count=None, block=None):
        self._record("xread")
        response = []
        for name, last in streams.items():
            entries = self.streams.get(name, [])
            if last == "$":
                after = _parse_id(entries[-1][0]) if entries else (0, 0)
            else:
                after = _parse_id(last)
            new = [(eid, dict(f)) for eid, f in entries if _parse_id(eid) > after]
            if count:
                new = new[:count]
            if new:
                response.append([name, new])
        if not response and block is not None:
            await asyncio.sleep(min(block, 10) / 1000)
        return response

    async def xrevrange(self, name, max="+", min="-", count=None):
        self._record("xrevrange")
        entries = list(reversed(self.streams.get(name, [])))
        return entries[:count] if count else entries


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def stream(redis) -> OrderStream:
    return OrderStream(redis, "orders_stream")


@pytest.fixture
def cache(redis) -> OrderCache:
    return OrderCache(redis, ttl_seconds=3600)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine) -> OrderStore:
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return OrderStore(async_session)


@pytest.fixture
def processor(stream, cache, store) -> OrderProcessor:
    return OrderProcessor(
        stream,
        cache,
        store,
        tax_rate=Decimal("0.18"),
        block_ms=10,
        start_position="0-0",
        max_consecutive_errors=5,
        backoff_base_ms=1,
        backoff_max_ms=5,
    )


@pytest.fixture
def shutdown() -> asyncio.Event:
    return asyncio.Event()
