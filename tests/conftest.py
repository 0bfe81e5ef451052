"""
Shared fixtures: in-memory SQLite database, fakeredis cache and
hand-written fakes for the network collaborators.
"""
import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ["OPENAI_API_KEY"] = ""
os.environ["AMAZON_PARTNER_TAG"] = ""
os.environ["R2_ACCOUNT_ID"] = ""
os.environ["REQUEST_DELAY_SECONDS"] = "0"

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from nichefeed.exceptions import FetchError
from nichefeed.models import Base, StepStatus
from nichefeed.services.cache import CacheStore


class Clock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingAudit:
    """Collects step entries instead of writing StepLog rows."""

    def __init__(self):
        self.run_id = "test-run"
        self.entries = []

    async def log(self, step, status, input=None, output=None, message=None):
        self.entries.append(SimpleNamespace(step=step, status=status, input=input, output=output, message=message))

    async def ok(self, step, input=None, output=None, message=None):
        await self.log(step, StepStatus.OK, input, output, message)

    async def warn(self, step, input=None, output=None, message=None):
        await self.log(step, StepStatus.WARN, input, output, message)

    async def error(self, step, input=None, output=None, message=None):
        await self.log(step, StepStatus.ERROR, input, output, message)

    def steps(self) -> list[str]:
        return [e.step for e in self.entries]


class FakeScraper:
    """
    Serves canned search pages and products.

    search_pages maps page number -> list of SearchItem (or an exception to
    raise); products maps ASIN -> ScrapedProduct (or an exception).
    """

    def __init__(self, search_pages=None, products=None):
        self.search_pages = search_pages or {}
        self.products = products or {}
        self.search_calls = []
        self.product_calls = []

    async def search(self, query, page):
        self.search_calls.append((query, page))
        value = self.search_pages.get(page, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def product(self, url, snippet=""):
        self.product_calls.append(url)
        asin = url.rstrip("/").split("/")[-1]
        value = self.products.get(asin)
        if value is None:
            raise FetchError("Unexpected status 404", url=url, status=404)
        if isinstance(value, Exception):
            raise value
        return value.__class__.from_dict(value.to_dict())

    async def close(self):
        pass


class FakeChatCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(
            id=f"resp_{len(self.calls)}",
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply))],
            usage=None,
        )


class FakeOpenAI:
    def __init__(self, replies):
        self.chat = SimpleNamespace(completions=FakeChatCompletions(replies))


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = fake_aioredis.FakeRedis(server=FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache(redis, clock):
    return CacheStore(redis, stale_retention=timedelta(days=60), clock=clock)


@pytest.fixture
def audit():
    return RecordingAudit()
