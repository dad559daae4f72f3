from __future__ import annotations

import os
import sys
from pathlib import Path

# Test defaults must be in place before the package reads its settings
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["DRAMATIQ_BROKER_URL"] = "stub://"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STORAGE_BACKEND"] = "filesystem"
os.environ.setdefault("SECRET_KEY", "test-secret")

# Add backend folder to sys.path so `import receipt_extraction...` works when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for _path in (BACKEND_DIR, TESTS_DIR):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from receipt_extraction.core.database import init_db, make_session_factory  # noqa: E402
from receipt_extraction.services import job_queue as job_queue_module  # noqa: E402
from receipt_extraction.services.cache import ImageCache  # noqa: E402
from receipt_extraction.services.extraction_store import ExtractionStore  # noqa: E402
from receipt_extraction.services.job_queue import JobLedger, JobQueue  # noqa: E402
from receipt_extraction.services.storage_service import StorageService  # noqa: E402

from fakes import FakeActor, FakeAsyncRedis, FakeRedis, FakeRedisStore, make_image  # noqa: E402


# ---------------------------------------------------------------------------
# Fixtures


@pytest.fixture
def redis_store() -> FakeRedisStore:
    return FakeRedisStore()


@pytest.fixture
def sync_redis(redis_store) -> FakeRedis:
    return FakeRedis(redis_store)


@pytest.fixture
def async_redis(redis_store) -> FakeAsyncRedis:
    return FakeAsyncRedis(redis_store)


@pytest.fixture
def ledger(sync_redis, monkeypatch) -> JobLedger:
    ledger = JobLedger(sync_redis, namespace="jobs:test")
    # Anything resolving the process-wide ledger (middleware, tasks) gets this one
    monkeypatch.setattr(job_queue_module, "_ledger", ledger)
    return ledger


@pytest.fixture
def actor() -> FakeActor:
    return FakeActor()


@pytest.fixture
def queue(actor, ledger) -> JobQueue:
    return JobQueue(actor, ledger)


@pytest.fixture
def cache(async_redis) -> ImageCache:
    return ImageCache(async_redis, ttl=900)


@pytest.fixture
def storage(tmp_path) -> StorageService:
    return StorageService(backend="filesystem", base_dir=tmp_path / "storage")


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG")


@pytest.fixture
def engine():
    return create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest_asyncio.fixture
async def session_factory(engine):
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> ExtractionStore:
    return ExtractionStore(session_factory)
