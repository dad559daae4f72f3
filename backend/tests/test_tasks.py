from __future__ import annotations

import pytest
from dramatiq import Worker
from dramatiq.middleware import CurrentMessage
from dramatiq.brokers.stub import StubBroker

from receipt_extraction.core import tasks
from receipt_extraction.core.errors import InferenceError, JobCancelledError
from receipt_extraction.core.tasks import broker, build_broker, process_receipt
from receipt_extraction.models.enums import JobPartition
from receipt_extraction.models.schemas import ExtractionJob
from receipt_extraction.services.job_queue import JobLedgerMiddleware, JobQueue

JOB = ExtractionJob(extraction_id="ext-1", filename="r.png", user_id="user-1")


@pytest.fixture
def stub_worker():
    worker = Worker(broker, worker_timeout=100, worker_threads=1)
    worker.start()
    yield worker
    worker.stop()
    broker.flush_all()


def test_stub_broker_is_configured():
    stub = build_broker("stub://")
    assert isinstance(stub, StubBroker)
    assert any(isinstance(m, JobLedgerMiddleware) for m in stub.middleware)
    assert isinstance(broker, StubBroker)


def test_enqueue_records_waiting_job(ledger):
    queue = JobQueue(process_receipt, ledger)
    message_id = queue.enqueue(JOB)
    job = ledger.find_job("ext-1")
    assert job.partition is JobPartition.WAITING
    assert job.message_id == message_id
    broker.flush_all()


def test_worker_runs_job_and_clears_ledger(ledger, monkeypatch, stub_worker):
    seen = []

    async def fake_run(job):
        seen.append(job)

    monkeypatch.setattr(tasks, "run_extraction_job", fake_run)
    process_receipt.send(**JOB.model_dump())
    broker.join(process_receipt.queue_name)
    stub_worker.join()

    assert seen == [JOB]
    assert ledger.find_job("ext-1") is None


def test_cancelled_message_is_skipped(ledger, monkeypatch, stub_worker):
    seen = []

    async def fake_run(job):
        seen.append(job)

    monkeypatch.setattr(tasks, "run_extraction_job", fake_run)
    ledger.remove("ext-1")
    process_receipt.send(**JOB.model_dump())
    broker.join(process_receipt.queue_name)
    stub_worker.join()

    assert seen == []
    assert ledger.find_job("ext-1") is None


def test_actor_retry_policy():
    options = process_receipt.options
    assert options["max_retries"] == 2
    assert options["min_backoff"] == 2000
    assert options["time_limit"] > 600_000
    assert JobCancelledError in options["throws"]


def test_failing_job_is_retried_then_dead_lettered(ledger, monkeypatch, stub_worker):
    attempts = []

    async def failing_run(job):
        attempts.append(CurrentMessage.get_current_message().options.get("retries", 0))
        raise InferenceError("Ollama request timed out after 600s")

    monkeypatch.setattr(tasks, "run_extraction_job", failing_run)
    # Same retry budget as the actor, with a short backoff to keep the run quick
    process_receipt.send_with_options(kwargs=JOB.model_dump(), min_backoff=10, max_backoff=50)
    broker.join(process_receipt.queue_name, fail_fast=False)
    stub_worker.join()

    assert attempts == [0, 1, 2]
    job = ledger.find_job("ext-1")
    assert job.partition is JobPartition.FAILED
    assert job.attempts == 3
    assert "timed out" in job.error


def test_cancelled_job_is_not_retried(ledger, monkeypatch, stub_worker):
    attempts = []

    async def cancelled_run(job):
        attempts.append(job.extraction_id)
        raise JobCancelledError("Extraction ext-1 was deleted")

    monkeypatch.setattr(tasks, "run_extraction_job", cancelled_run)
    process_receipt.send(**JOB.model_dump())
    broker.join(process_receipt.queue_name, fail_fast=False)
    stub_worker.join()

    assert attempts == ["ext-1"]
