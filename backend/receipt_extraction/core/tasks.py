"""Dramatiq broker and actor definitions for background extraction.

Receipt extraction calls a vision model that may take minutes, so it
runs in Dramatiq workers fed from Redis. To run the worker:

```bash
dramatiq receipt_extraction.worker --processes 1 --threads 4
```

The broker URL defaults to ``REDIS_URL``; override it via
``DRAMATIQ_BROKER_URL``. Setting it to ``stub://`` installs an in-memory
``StubBroker`` (used by the test-suite).

Each message runs the async pipeline in its own event loop
(``asyncio.run``) with per-run resources: a NullPool database engine
and a fresh async Redis client.
"""

from __future__ import annotations

import asyncio
import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, CurrentMessage, Retries, ShutdownNotifications, TimeLimit
from redis import asyncio as aioredis

from receipt_extraction.core.config import settings
from receipt_extraction.core.database import worker_session_factory
from receipt_extraction.core.errors import JobCancelledError
from receipt_extraction.core.observability import sentry_set_tags
from receipt_extraction.models.schemas import ExtractionJob
from receipt_extraction.services.cache import ImageCache
from receipt_extraction.services.extraction_store import ExtractionStore
from receipt_extraction.services.inference_service import build_inference_client
from receipt_extraction.services.job_queue import JobLedgerMiddleware, JobQueue, get_ledger
from receipt_extraction.services.notifier import RedisUpdatePublisher
from receipt_extraction.services.pipeline import ExtractionPipeline
from receipt_extraction.services.storage_service import get_storage

logger = logging.getLogger(__name__)

PROCESS_RECEIPT_ACTOR = "process_receipt"

# Inference may legitimately take the full timeout; leave room for I/O around it
TIME_LIMIT_MS = int((settings.INFERENCE_TIMEOUT_SECONDS + 120) * 1000)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def build_broker(url: str | None = None) -> dramatiq.Broker:
    broker_url = url or settings.broker_url
    if broker_url.startswith("stub://"):
        broker = StubBroker()
    else:
        broker = RedisBroker(url=broker_url)
    logger.info("Configuring Dramatiq broker %s", type(broker).__name__)

    if not _has_mw(broker, AgeLimit):
        broker.add_middleware(AgeLimit())
    if not _has_mw(broker, TimeLimit):
        broker.add_middleware(TimeLimit())
    if not _has_mw(broker, ShutdownNotifications):
        broker.add_middleware(ShutdownNotifications())
    if not _has_mw(broker, CurrentMessage):
        broker.add_middleware(CurrentMessage())
    if not _has_mw(broker, Retries):
        broker.add_middleware(
            Retries(
                max_retries=settings.job_max_retries,
                min_backoff=settings.JOB_MIN_BACKOFF_MS,
                max_backoff=settings.JOB_MAX_BACKOFF_MS,
            )
        )
    if not _has_mw(broker, JobLedgerMiddleware):
        broker.add_middleware(JobLedgerMiddleware(PROCESS_RECEIPT_ACTOR))
    return broker


broker = build_broker()
dramatiq.set_broker(broker)


async def run_extraction_job(job: ExtractionJob) -> None:
    redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with worker_session_factory() as session_factory:
            pipeline = ExtractionPipeline(
                store=ExtractionStore(session_factory),
                cache=ImageCache(redis_client),
                storage=get_storage(),
                inference=build_inference_client(),
                notifier=RedisUpdatePublisher(redis_client),
                ledger=get_ledger(),
            )
            await pipeline.run(job)
    finally:
        await redis_client.aclose()


@dramatiq.actor(
    actor_name=PROCESS_RECEIPT_ACTOR,
    queue_name=settings.JOB_QUEUE_NAME,
    max_retries=settings.job_max_retries,
    min_backoff=settings.JOB_MIN_BACKOFF_MS,
    max_backoff=settings.JOB_MAX_BACKOFF_MS,
    time_limit=TIME_LIMIT_MS,
    throws=(JobCancelledError,),
)
def process_receipt(extraction_id: str, filename: str, user_id: str) -> None:
    """Extract one receipt. Raising lets the Retries middleware reschedule it."""
    message = CurrentMessage.get_current_message()
    attempt = int(message.options.get("retries", 0)) + 1 if message else 1
    sentry_set_tags({"extraction_id": extraction_id, "attempt": attempt})
    logger.info("Processing extraction %s (attempt %d/%d)", extraction_id, attempt, settings.JOB_MAX_ATTEMPTS)
    job = ExtractionJob(extraction_id=extraction_id, filename=filename, user_id=user_id)
    asyncio.run(run_extraction_job(job))


_job_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue(process_receipt, get_ledger())
    return _job_queue
