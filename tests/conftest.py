import os

# Settings are read at import time; point them at test values first
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WORKER_API_KEY", "test-worker-key")

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from media_queue.db.session import (
    build_engine,
    build_session_factory,
    get_db_session,
    get_session_factory,
    init_db,
)
from media_queue.main import app
from media_queue.queues.events import EventBatchQueue
from media_queue.queues.jobs import ProxyJobQueue
from media_queue.queues.registry import get_event_queue, get_job_queue

WORKER_KEY = "test-worker-key"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def job_queue(clock):
    return ProxyJobQueue(clock=clock)


@pytest.fixture
def event_queue(clock):
    return EventBatchQueue(clock=clock)


@pytest.fixture
def worker_key(monkeypatch):
    from media_queue.settings import settings
    monkeypatch.setattr(settings, "WORKER_API_KEY", WORKER_KEY)
    return WORKER_KEY


@pytest.fixture
def auth_headers(worker_key):
    return {"Authorization": f"Worker {worker_key}"}


@pytest_asyncio.fixture
async def api_client(session_factory, job_queue, event_queue, worker_key):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    app.dependency_overrides[get_event_queue] = lambda: event_queue

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
