"""Job tracking for queued extractions.

Dramatiq's Redis broker does not expose "which partition is this
message in" lookups, so a small ledger kept in Redis mirrors every
extraction job while it lives in the queue:

* one hash per job (``<ns>:job:<extraction_id>``) with the payload,
  message id, attempt count and last error;
* one set per :class:`JobPartition` holding extraction ids;
* a cancellation tombstone per deleted extraction, checked before a
  message is processed and again before the worker commits.

:class:`JobLedgerMiddleware` keeps the ledger in step with the broker.
:class:`JobQueue` is what the orchestrator talks to.

The ledger uses the synchronous redis client, the same one dramatiq
middleware runs with.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import dramatiq
import redis
from dramatiq.middleware import Middleware, SkipMessage

from receipt_extraction.core.config import settings
from receipt_extraction.models.enums import JobPartition
from receipt_extraction.models.schemas import ExtractionJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueuedJob:
    """Snapshot of one job as the ledger currently sees it."""

    partition: JobPartition
    extraction_id: str
    message_id: Optional[str]
    user_id: Optional[str]
    filename: Optional[str]
    attempts: int = 0
    error: Optional[str] = None


class JobLedger:
    def __init__(
        self,
        client: Any,
        namespace: Optional[str] = None,
        tombstone_ttl: Optional[int] = None,
    ) -> None:
        self._client = client
        self.namespace = namespace or f"jobs:{settings.JOB_QUEUE_NAME}"
        self.tombstone_ttl = int(tombstone_ttl or settings.JOB_TOMBSTONE_TTL)

    # key helpers -------------------------------------------------------

    def _job_key(self, extraction_id: str) -> str:
        return f"{self.namespace}:job:{extraction_id}"

    def _partition_key(self, partition: JobPartition) -> str:
        return f"{self.namespace}:{partition.value}"

    def _tombstone_key(self, extraction_id: str) -> str:
        return f"{self.namespace}:cancelled:{extraction_id}"

    @property
    def _cancelled_set(self) -> str:
        return f"{self.namespace}:cancelled"

    # writes ------------------------------------------------------------

    def _move(self, extraction_id: str, partition: JobPartition, fields: dict[str, Any]) -> None:
        pipe = self._client.pipeline()
        for other in JobPartition:
            if other is not partition:
                pipe.srem(self._partition_key(other), extraction_id)
        pipe.sadd(self._partition_key(partition), extraction_id)
        pipe.hset(
            self._job_key(extraction_id),
            mapping={k: str(v) for k, v in {**fields, "partition": partition.value}.items() if v is not None},
        )
        pipe.execute()

    def record_enqueued(
        self,
        job: ExtractionJob,
        message_id: str,
        *,
        delayed: bool = False,
        attempts: int = 0,
    ) -> None:
        if self.is_cancelled(job.extraction_id):
            return
        partition = JobPartition.DELAYED if delayed else JobPartition.WAITING
        self._move(
            job.extraction_id,
            partition,
            {
                "extraction_id": job.extraction_id,
                "user_id": job.user_id,
                "filename": job.filename,
                "message_id": message_id,
                "attempts": attempts,
                "updated_at": time.time(),
            },
        )

    def record_started(self, extraction_id: str, attempt: int) -> bool:
        """Mark the job ACTIVE. Returns False when it was cancelled."""
        if self.is_cancelled(extraction_id):
            return False
        self._move(extraction_id, JobPartition.ACTIVE, {"attempts": attempt, "updated_at": time.time()})
        return True

    def record_succeeded(self, extraction_id: str) -> None:
        self.forget(extraction_id)

    def record_error(self, extraction_id: str, error: str) -> None:
        if self._client.exists(self._job_key(extraction_id)):
            self._client.hset(self._job_key(extraction_id), "error", error)

    def record_failed(self, extraction_id: str, error: Optional[str] = None) -> None:
        """Dead-letter a job whose attempts are exhausted."""
        if self.is_cancelled(extraction_id):
            self.forget(extraction_id)
            return
        self._move(extraction_id, JobPartition.FAILED, {"error": error, "updated_at": time.time()})

    def forget(self, extraction_id: str) -> None:
        pipe = self._client.pipeline()
        for partition in JobPartition:
            pipe.srem(self._partition_key(partition), extraction_id)
        pipe.delete(self._job_key(extraction_id))
        pipe.execute()

    def _tombstone(self, extraction_id: str) -> None:
        self._client.set(self._tombstone_key(extraction_id), "1", ex=self.tombstone_ttl)

    def cancel_active(self, extraction_id: str) -> bool:
        """Force-fail an ACTIVE job.

        The SMOVE out of the ACTIVE set is atomic, so exactly one of a
        concurrent cancel and the job finishing wins. Returns False when
        the job is not active (anymore).
        """
        moved = self._client.smove(
            self._partition_key(JobPartition.ACTIVE), self._cancelled_set, extraction_id
        )
        if not moved:
            return False
        self._tombstone(extraction_id)
        pipe = self._client.pipeline()
        pipe.srem(self._cancelled_set, extraction_id)
        pipe.delete(self._job_key(extraction_id))
        pipe.execute()
        return True

    def remove(self, extraction_id: str) -> None:
        """Drop a non-active job. A message still sitting in the broker is skipped on delivery."""
        self._tombstone(extraction_id)
        self.forget(extraction_id)

    # reads -------------------------------------------------------------

    def is_cancelled(self, extraction_id: str) -> bool:
        return bool(self._client.exists(self._tombstone_key(extraction_id)))

    def _load(self, partition: JobPartition, extraction_id: str) -> QueuedJob:
        raw = self._client.hgetall(self._job_key(extraction_id)) or {}
        data = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }
        return QueuedJob(
            partition=partition,
            extraction_id=extraction_id,
            message_id=data.get("message_id"),
            user_id=data.get("user_id"),
            filename=data.get("filename"),
            attempts=int(data.get("attempts") or 0),
            error=data.get("error"),
        )

    def find_job(self, extraction_id: str) -> Optional[QueuedJob]:
        """Look the job up partition by partition in rank order; first hit wins."""
        for partition in JobPartition.search_order():
            if self._client.sismember(self._partition_key(partition), extraction_id):
                return self._load(partition, extraction_id)
        return None

    def list_jobs(self, partition: JobPartition) -> list[QueuedJob]:
        members = self._client.smembers(self._partition_key(partition)) or set()
        ids = sorted(m.decode() if isinstance(m, bytes) else m for m in members)
        return [self._load(partition, extraction_id) for extraction_id in ids]


_ledger: Optional[JobLedger] = None


def get_ledger() -> JobLedger:
    """Process-wide ledger on a sync Redis client."""
    global _ledger
    if _ledger is None:
        _ledger = JobLedger(redis.Redis.from_url(settings.REDIS_URL, decode_responses=True))
    return _ledger


def _extraction_id(message: dramatiq.Message) -> Optional[str]:
    return (message.kwargs or {}).get("extraction_id")


class JobLedgerMiddleware(Middleware):
    """Keeps the :class:`JobLedger` in step with broker events.

    Only messages of ``actor_name`` are tracked.
    """

    def __init__(self, actor_name: str, ledger_factory: Callable[[], JobLedger] = get_ledger) -> None:
        self.actor_name = actor_name
        self._ledger_factory = ledger_factory

    @property
    def ledger(self) -> JobLedger:
        return self._ledger_factory()

    def _tracked(self, message: dramatiq.Message) -> Optional[str]:
        if message.actor_name != self.actor_name:
            return None
        return _extraction_id(message)

    def before_enqueue(self, broker, message, delay):
        # Written before the message becomes visible to workers
        extraction_id = self._tracked(message)
        if not extraction_id:
            return
        job = ExtractionJob(**message.kwargs)
        self.ledger.record_enqueued(
            job,
            message.message_id,
            delayed=bool(delay),
            attempts=int(message.options.get("retries", 0)),
        )

    def before_process_message(self, broker, message):
        extraction_id = self._tracked(message)
        if not extraction_id:
            return
        attempt = int(message.options.get("retries", 0)) + 1
        if not self.ledger.record_started(extraction_id, attempt):
            logger.info("Skipping cancelled extraction job %s", extraction_id)
            raise SkipMessage()

    def after_process_message(self, broker, message, *, result=None, exception=None):
        extraction_id = self._tracked(message)
        if not extraction_id:
            return
        if exception is None:
            self.ledger.record_succeeded(extraction_id)
        else:
            self.ledger.record_error(extraction_id, str(exception))

    def after_skip_message(self, broker, message):
        extraction_id = self._tracked(message)
        if extraction_id:
            self.ledger.forget(extraction_id)

    def after_nack(self, broker, message):
        extraction_id = self._tracked(message)
        if not extraction_id:
            return
        self.ledger.record_failed(extraction_id, message.options.get("traceback"))


class JobQueue:
    """Orchestrator-facing queue facade."""

    def __init__(self, actor: Any, ledger: JobLedger) -> None:
        self._actor = actor
        self.ledger = ledger

    def enqueue(self, job: ExtractionJob) -> str:
        try:
            message = self._actor.send_with_options(kwargs=job.model_dump())
        except Exception:
            # The ledger entry was written before the send
            self.ledger.forget(job.extraction_id)
            raise
        logger.info("Extraction %s queued (message %s)", job.extraction_id, message.message_id)
        return message.message_id

    def find_job(self, extraction_id: str) -> Optional[QueuedJob]:
        return self.ledger.find_job(extraction_id)

    def list_jobs(self, partition: Optional[JobPartition] = None, user_id: Optional[str] = None) -> list[QueuedJob]:
        """Jobs in one partition, or in all of them in search order."""
        partitions = [partition] if partition is not None else JobPartition.search_order()
        jobs = [job for p in partitions for job in self.ledger.list_jobs(p)]
        if user_id is not None:
            jobs = [job for job in jobs if job.user_id == user_id]
        return jobs

    def neutralize(self, job: QueuedJob) -> str:
        """Make sure ``job`` never commits. Returns ``"cancelled"`` or ``"removed"``."""
        if job.partition is JobPartition.ACTIVE:
            if self.ledger.cancel_active(job.extraction_id):
                logger.info("Job for extraction %s cancelled", job.extraction_id)
                return "cancelled"
            logger.warning("Job for extraction %s no longer active, removing instead", job.extraction_id)
        self.ledger.remove(job.extraction_id)
        logger.info("Job for extraction %s removed from queue", job.extraction_id)
        return "removed"
