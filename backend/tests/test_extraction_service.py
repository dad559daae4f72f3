from __future__ import annotations

import pytest

from receipt_extraction.core.config import settings
from receipt_extraction.core.errors import (
    ExtractionNotFoundError,
    PayloadTooLargeError,
    StorageError,
    ValidationError,
)
from receipt_extraction.models.enums import ExtractionStatus, JobPartition
from receipt_extraction.services.extraction_service import ExtractionService
from receipt_extraction.services.job_queue import JobQueue

from fakes import FakeActor, RecordingNotifier, make_image


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, storage, cache, queue, notifier):
    return ExtractionService(store, storage, cache, queue, notifier)


@pytest.mark.parametrize(
    "data,content_type,error",
    [
        (b"", "image/png", ValidationError),
        (None, "image/png", ValidationError),
        (b"%PDF-1.7", "application/pdf", ValidationError),
        (b"not really a png", "image/png", ValidationError),
    ],
)
def test_validate_upload_rejects(data, content_type, error):
    with pytest.raises(error):
        ExtractionService.validate_upload(data, content_type)


def test_validate_upload_size_limit(monkeypatch, png_bytes):
    monkeypatch.setattr(settings, "MAX_UPLOAD_SIZE", len(png_bytes) - 1)
    with pytest.raises(PayloadTooLargeError):
        ExtractionService.validate_upload(png_bytes, "image/png")


def test_validate_upload_accepts_jpeg_and_webp():
    ExtractionService.validate_upload(make_image("JPEG"), "image/jpeg")
    ExtractionService.validate_upload(make_image("WEBP"), "image/webp")


@pytest.mark.asyncio
async def test_create_stores_and_queues(service, store, storage, cache, actor, ledger, png_bytes):
    created = await service.create(png_bytes, "receipt.png", "user-1", "image/png")
    assert created.status == ExtractionStatus.EXTRACTING
    assert created.filename == "receipt.png"
    assert created.image_url.startswith(f"/api/extractions/{created.id}/image?")

    await service.drain()

    record = await store.get(created.id, "user-1")
    assert record.status == ExtractionStatus.EXTRACTING
    assert await storage.download(created.id, "receipt.png", "user-1") == png_bytes
    assert await cache.get(created.id) == png_bytes
    assert actor.sent == [{"extraction_id": created.id, "filename": "receipt.png", "user_id": "user-1"}]


@pytest.mark.asyncio
async def test_create_rejects_before_storing(service, store):
    with pytest.raises(ValidationError):
        await service.create(b"", "receipt.png", "user-1", "image/png")
    assert await store.list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_storage_failure_persists_nothing(service, store, storage, png_bytes, monkeypatch):
    async def _boom(*args, **kwargs):
        raise StorageError("bucket unavailable")

    monkeypatch.setattr(storage, "upload", _boom)
    with pytest.raises(StorageError):
        await service.create(png_bytes, "receipt.png", "user-1", "image/png")
    assert await store.list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_queue_failure_marks_failed(store, storage, cache, ledger, notifier, png_bytes):
    queue = JobQueue(FakeActor(fail=ConnectionError("broker down")), ledger)
    service = ExtractionService(store, storage, cache, queue, notifier)

    created = await service.create(png_bytes, "receipt.png", "user-1", "image/png")
    await service.drain()

    record = await store.get(created.id)
    assert record.status == ExtractionStatus.FAILED
    assert record.failure_reason.startswith("Failed to queue extraction")
    assert await cache.get(created.id) is None
    assert notifier.events[-1][1]["status"] == "FAILED"


@pytest.mark.asyncio
async def test_list_and_get_are_scoped(service, png_bytes):
    first = await service.create(png_bytes, "a.png", "user-1", "image/png")
    second = await service.create(png_bytes, "b.png", "user-1", "image/png")
    await service.create(png_bytes, "c.png", "user-2", "image/png")
    await service.drain()

    listed = await service.list("user-1")
    assert {e.id for e in listed} == {first.id, second.id}

    view = await service.get(first.id, "user-1")
    assert view.filename == "a.png"
    assert "sig=" in view.image_url

    with pytest.raises(ExtractionNotFoundError):
        await service.get(first.id, "user-2")


@pytest.mark.asyncio
async def test_delete_removes_everything_and_cancels_job(service, store, storage, cache, ledger, png_bytes):
    created = await service.create(png_bytes, "receipt.png", "user-1", "image/png")
    await service.drain()
    ledger.record_started(created.id, 1)
    assert ledger.find_job(created.id).partition is JobPartition.ACTIVE

    await service.delete(created.id, "user-1")

    assert await store.get(created.id) is None
    assert await cache.get(created.id) is None
    with pytest.raises(StorageError):
        await storage.download(created.id, "receipt.png", "user-1")
    assert ledger.is_cancelled(created.id)
    assert ledger.find_job(created.id) is None


@pytest.mark.asyncio
async def test_delete_of_unknown_or_foreign_id_is_silent(service, store, png_bytes):
    created = await service.create(png_bytes, "receipt.png", "user-1", "image/png")
    await service.drain()
    await service.delete("does-not-exist", "user-1")
    await service.delete(created.id, "user-2")
    assert await store.get(created.id) is not None


@pytest.mark.asyncio
async def test_record_deleted_before_hand_off_is_not_cached_or_queued(
    service, store, redis_store, actor, ledger, png_bytes
):
    await store.create("ext-gone", "user-1", "receipt.png", "/api/extractions/ext-gone/image")
    assert await store.delete("ext-gone") is True

    await service._hand_off("ext-gone", "receipt.png", "user-1", png_bytes)

    assert "receipt:ext-gone" not in redis_store.strings
    assert actor.sent == []
    assert ledger.find_job("ext-gone") is None
