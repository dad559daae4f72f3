from __future__ import annotations

import dramatiq
import pytest
from dramatiq.middleware import SkipMessage

from receipt_extraction.models.enums import JobPartition
from receipt_extraction.models.schemas import ExtractionJob
from receipt_extraction.services.job_queue import JobLedgerMiddleware, JobQueue

from fakes import FakeActor

JOB = ExtractionJob(extraction_id="ext-1", filename="r.png", user_id="user-1")


def _message(actor_name="process_receipt", **options):
    return dramatiq.Message(
        queue_name="extraction",
        actor_name=actor_name,
        args=(),
        kwargs=JOB.model_dump(),
        options=options,
    )


@pytest.fixture
def middleware(ledger):
    return JobLedgerMiddleware("process_receipt", ledger_factory=lambda: ledger)


def test_enqueue_places_job_in_waiting(ledger):
    ledger.record_enqueued(JOB, "msg-1")
    job = ledger.find_job("ext-1")
    assert job.partition is JobPartition.WAITING
    assert job.message_id == "msg-1"
    assert job.user_id == "user-1"
    assert job.filename == "r.png"


def test_partitions_are_exclusive(ledger):
    ledger.record_enqueued(JOB, "msg-1")
    ledger.record_started("ext-1", 1)
    assert [j.extraction_id for j in ledger.list_jobs(JobPartition.ACTIVE)] == ["ext-1"]
    assert ledger.list_jobs(JobPartition.WAITING) == []


def test_find_job_prefers_active(ledger, sync_redis):
    ledger.record_enqueued(JOB, "msg-1")
    # A stale WAITING entry next to the ACTIVE one
    sync_redis.sadd("jobs:test:active", "ext-1")
    assert ledger.find_job("ext-1").partition is JobPartition.ACTIVE


def test_find_job_missing(ledger):
    assert ledger.find_job("nope") is None


def test_record_error_and_failed(ledger):
    ledger.record_enqueued(JOB, "msg-1")
    ledger.record_started("ext-1", 3)
    ledger.record_error("ext-1", "timeout")
    ledger.record_failed("ext-1", "timeout")
    job = ledger.find_job("ext-1")
    assert job.partition is JobPartition.FAILED
    assert job.attempts == 3
    assert job.error == "timeout"


def test_cancel_active_tombstones_job(ledger, redis_store):
    ledger.record_enqueued(JOB, "msg-1")
    ledger.record_started("ext-1", 1)
    assert ledger.cancel_active("ext-1") is True
    assert ledger.is_cancelled("ext-1")
    assert ledger.find_job("ext-1") is None
    assert redis_store.expiry["jobs:test:cancelled:ext-1"] == ledger.tombstone_ttl
    # Only one canceller wins
    assert ledger.cancel_active("ext-1") is False


def test_cancelled_job_cannot_start_or_requeue(ledger):
    ledger.record_enqueued(JOB, "msg-1")
    ledger.remove("ext-1")
    assert ledger.record_started("ext-1", 1) is False
    ledger.record_enqueued(JOB, "msg-2", delayed=True)
    assert ledger.find_job("ext-1") is None


def test_middleware_tracks_enqueue_and_delay(middleware, ledger):
    middleware.before_enqueue(None, _message(), None)
    assert ledger.find_job("ext-1").partition is JobPartition.WAITING
    middleware.before_enqueue(None, _message(retries=1), 2000)
    job = ledger.find_job("ext-1")
    assert job.partition is JobPartition.DELAYED
    assert job.attempts == 1


def test_middleware_ignores_other_actors(middleware, ledger):
    middleware.before_enqueue(None, _message(actor_name="something_else"), None)
    assert ledger.find_job("ext-1") is None


def test_middleware_marks_active_then_forgets_on_success(middleware, ledger):
    message = _message()
    middleware.before_enqueue(None, message, None)
    middleware.before_process_message(None, message)
    assert ledger.find_job("ext-1").partition is JobPartition.ACTIVE
    middleware.after_process_message(None, message, result=None, exception=None)
    assert ledger.find_job("ext-1") is None


def test_middleware_skips_cancelled_message(middleware, ledger):
    message = _message()
    middleware.before_enqueue(None, message, None)
    ledger.remove("ext-1")
    with pytest.raises(SkipMessage):
        middleware.before_process_message(None, message)
    middleware.after_skip_message(None, message)
    assert ledger.find_job("ext-1") is None


def test_middleware_dead_letters_on_nack(middleware, ledger):
    message = _message(retries=2, traceback="Traceback ...")
    middleware.before_enqueue(None, message, None)
    middleware.before_process_message(None, message)
    middleware.after_process_message(None, message, exception=RuntimeError("boom"))
    assert ledger.find_job("ext-1").error == "boom"
    middleware.after_nack(None, message)
    job = ledger.find_job("ext-1")
    assert job.partition is JobPartition.FAILED
    assert job.error == "Traceback ..."


def test_enqueue_sends_job_kwargs(queue, actor):
    assert queue.enqueue(JOB) == "msg-1"
    assert actor.sent == [{"extraction_id": "ext-1", "filename": "r.png", "user_id": "user-1"}]


def test_neutralize_active_job_cancels(queue, ledger):
    ledger.record_enqueued(JOB, "msg-1")
    ledger.record_started("ext-1", 1)
    assert queue.neutralize(queue.find_job("ext-1")) == "cancelled"
    assert ledger.is_cancelled("ext-1")


@pytest.mark.parametrize("delayed", [False, True])
def test_neutralize_queued_job_removes(queue, ledger, delayed):
    ledger.record_enqueued(JOB, "msg-1", delayed=delayed)
    assert queue.neutralize(queue.find_job("ext-1")) == "removed"
    assert queue.find_job("ext-1") is None
    assert ledger.is_cancelled("ext-1")


def test_neutralize_falls_back_when_job_finished(queue, ledger):
    ledger.record_enqueued(JOB, "msg-1")
    ledger.record_started("ext-1", 1)
    job = queue.find_job("ext-1")
    ledger.forget("ext-1")
    assert queue.neutralize(job) == "removed"


def test_worker_start_is_not_overwritten_by_enqueue_bookkeeping(middleware, ledger):
    message = _message()
    middleware.before_enqueue(None, message, None)
    middleware.before_process_message(None, message)
    assert ledger.find_job("ext-1").partition is JobPartition.ACTIVE
    assert "after_enqueue" not in vars(JobLedgerMiddleware)


def test_failed_send_leaves_no_ledger_entry(ledger):
    queue = JobQueue(FakeActor(fail=ConnectionError("broker down")), ledger)
    # What the enqueue hook would have written before the send failed
    ledger.record_enqueued(JOB, "msg-1")
    with pytest.raises(ConnectionError):
        queue.enqueue(JOB)
    assert queue.find_job("ext-1") is None


def test_list_jobs_filters_by_partition_and_user(queue, ledger):
    ledger.record_enqueued(JOB, "msg-1")
    other = ExtractionJob(extraction_id="ext-2", filename="b.png", user_id="user-2")
    ledger.record_enqueued(other, "msg-2")
    ledger.record_started("ext-2", 1)

    assert [j.extraction_id for j in queue.list_jobs()] == ["ext-2", "ext-1"]
    assert [j.extraction_id for j in queue.list_jobs(JobPartition.WAITING)] == ["ext-1"]
    assert [j.extraction_id for j in queue.list_jobs(user_id="user-2")] == ["ext-2"]
    assert queue.list_jobs(JobPartition.FAILED) == []
