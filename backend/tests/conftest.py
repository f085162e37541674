"""
Shared test fixtures for crawl-orchestrator.

Provides:
- session_factory: async sessions on a throwaway SQLite file with all tables created
- runner / dispatcher / channel / clock: scriptable scheduler collaborators
- crawl_scheduler: CrawlScheduler wired to the fixtures above
- conflicting_writes: makes conditional target writes lose to a concurrent writer
"""

import os

# Force sqlite for tests, must be set before any crawl_orchestrator imports.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from crawl_orchestrator.models import Base, Target, TargetType
from crawl_orchestrator.runners import InMemoryJobRunner
from crawl_orchestrator.schemas import TargetUpsert
from crawl_orchestrator.services import target_store
from crawl_orchestrator.services.dispatcher import JobDispatcher
from crawl_orchestrator.services.notifier import CompletionNotifier
from crawl_orchestrator.services.scheduler import CrawlScheduler

T0 = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, *, hours: float = 0, minutes: float = 0, seconds: float = 0) -> None:
        self.now += int(((hours * 60 + minutes) * 60 + seconds) * 1000)


class RecordingChannel:
    def __init__(self):
        self.events: list[dict] = []
        self.fail = False

    async def publish(self, event: dict) -> None:
        if self.fail:
            raise RuntimeError("channel down")
        self.events.append(event)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runner():
    return InMemoryJobRunner()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def dispatcher(runner):
    return JobDispatcher(runner, retry_wait_seconds=0, submit_timeout_seconds=5)


@pytest.fixture
def make_scheduler(session_factory, dispatcher, channel, clock):
    def _make(**kwargs) -> CrawlScheduler:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("max_concurrent_dispatches", 4)
        return CrawlScheduler(
            session_factory,
            kwargs.pop("dispatcher", dispatcher),
            CompletionNotifier(channel),
            **kwargs,
        )

    return _make


@pytest.fixture
def crawl_scheduler(make_scheduler):
    return make_scheduler()


@pytest.fixture
def register(session_factory, clock):
    async def _register(url: str = "https://example.com", **fields):
        fields.setdefault("target_type", TargetType.WEBSITE)
        async with session_factory() as db:
            return await target_store.upsert_target(
                db, TargetUpsert(url=url, **fields), now=clock()
            )

    return _register


class ConflictingWriter:
    """Wraps ``target_store.get_target`` and bumps the row right after each read.

    While ``remaining`` is positive, every conditional write based on the
    returned snapshot loses.
    """

    def __init__(self, read):
        self.read = read
        self.remaining = 0

    async def __call__(self, db, url):
        target = await self.read(db, url)
        if target is not None and self.remaining > 0:
            self.remaining -= 1
            await db.execute(
                update(Target)
                .where(Target.url == url)
                .values(updated_at=Target.updated_at + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return target


@pytest.fixture
def conflicting_writes(monkeypatch):
    writer = ConflictingWriter(target_store.get_target)
    monkeypatch.setattr(target_store, "get_target", writer)
    return writer
