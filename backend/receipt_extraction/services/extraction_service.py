"""Extraction orchestrator used by the API.

``create`` stores the upload, persists a SUBMITTING record and returns
straight away. A background hand-off task then caches the image, moves
the record to EXTRACTING and queues the job for a worker. If the
hand-off cannot reach the queue the record is marked FAILED.

``delete`` neutralises any queued or running job before removing the
stored image, the cached image and the record.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional, Sequence

from receipt_extraction.core.config import settings
from receipt_extraction.core.errors import (
    ExtractionNotFoundError,
    PayloadTooLargeError,
    ValidationError,
)
from receipt_extraction.core.observability import sentry_breadcrumb
from receipt_extraction.models.enums import ExtractionStatus
from receipt_extraction.models.schemas import (
    ExtractionCreated,
    ExtractionJob,
    ExtractionRead,
)
from receipt_extraction.models.tables import Extraction
from receipt_extraction.services.cache import ImageCache
from receipt_extraction.services.extraction_store import ExtractionStore
from receipt_extraction.services.job_queue import JobQueue
from receipt_extraction.services.notifier import UpdateSink
from receipt_extraction.services.storage_service import StorageService
from receipt_extraction.utils.image_processing import sniff_image_format

logger = logging.getLogger(__name__)


class ExtractionService:
    def __init__(
        self,
        store: ExtractionStore,
        storage: StorageService,
        cache: ImageCache,
        queue: JobQueue,
        notifier: Optional[UpdateSink] = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.cache = cache
        self.queue = queue
        self.notifier = notifier
        self._handoffs: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # create

    @staticmethod
    def validate_upload(data: Optional[bytes], content_type: Optional[str]) -> None:
        if not data:
            raise ValidationError("No file provided")
        if (content_type or "").lower() not in settings.ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"Unsupported file type: {content_type or 'unknown'}",
                {"allowed": sorted(settings.ALLOWED_CONTENT_TYPES)},
            )
        if len(data) > settings.MAX_UPLOAD_SIZE:
            raise PayloadTooLargeError(
                f"File too large. Maximum size is {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB",
                {"size": len(data), "limit": settings.MAX_UPLOAD_SIZE},
            )
        if sniff_image_format(data) is None:
            raise ValidationError("File is not a readable image")

    async def create(
        self,
        data: Optional[bytes],
        filename: Optional[str],
        user_id: str,
        content_type: Optional[str],
    ) -> ExtractionCreated:
        self.validate_upload(data, content_type)
        filename = filename or "receipt"
        extraction_id = str(uuid.uuid4())
        logger.info("Creating extraction for %s", filename)

        # StorageError propagates; nothing is persisted yet
        await self.storage.upload(data, extraction_id, filename, user_id, content_type or "application/octet-stream")
        image_url = await self.storage.signed_url(extraction_id, filename, user_id)

        await self.store.create(extraction_id, user_id, filename, image_url)
        sentry_breadcrumb(category="extraction", message="created", data={"extraction_id": extraction_id})

        task = asyncio.create_task(
            self._hand_off(extraction_id, filename, user_id, data),
            name=f"extraction-handoff-{extraction_id}",
        )
        self._handoffs.add(task)
        task.add_done_callback(self._handoff_done)

        return ExtractionCreated(
            id=extraction_id,
            image_url=image_url,
            filename=filename,
            status=ExtractionStatus.EXTRACTING,
        )

    async def _hand_off(self, extraction_id: str, filename: str, user_id: str, data: bytes) -> None:
        job = ExtractionJob(extraction_id=extraction_id, filename=filename, user_id=user_id)
        try:
            record = await self.store.update_status(extraction_id, ExtractionStatus.EXTRACTING)
            if record is None:
                logger.info("Extraction %s gone before hand-off; not queueing", extraction_id)
                return
            # Only cache images for records that still exist
            await self.cache.put(extraction_id, data)
            self.queue.enqueue(job)
        except Exception as exc:
            logger.error("Failed to queue extraction %s: %s", extraction_id, exc, exc_info=True)
            failed = await self.store.update_status(
                extraction_id, ExtractionStatus.FAILED, reason=f"Failed to queue extraction: {exc}"
            )
            await self.cache.delete(extraction_id)
            if failed is not None and self.notifier is not None:
                await self.notifier.emit_update(user_id, ExtractionRead.model_validate(failed).to_event())
            raise

    def _handoff_done(self, task: asyncio.Task) -> None:
        self._handoffs.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background hand-off %s failed: %s", task.get_name(), exc)

    async def drain(self) -> None:
        """Wait for outstanding hand-off tasks."""
        while self._handoffs:
            await asyncio.gather(*list(self._handoffs), return_exceptions=True)

    # ------------------------------------------------------------------
    # reads

    async def _with_signed_url(self, record: Extraction) -> ExtractionRead:
        view = ExtractionRead.model_validate(record)
        view.image_url = await self.storage.signed_url(record.id, record.filename, record.user_id)
        return view

    async def list(self, user_id: str) -> list[ExtractionRead]:
        records: Sequence[Extraction] = await self.store.list_for_user(user_id)
        return list(await asyncio.gather(*(self._with_signed_url(r) for r in records)))

    async def get(self, extraction_id: str, user_id: str) -> ExtractionRead:
        record = await self.store.get(extraction_id, user_id)
        if record is None:
            raise ExtractionNotFoundError(f"Extraction {extraction_id} not found", {"id": extraction_id})
        return await self._with_signed_url(record)

    # ------------------------------------------------------------------
    # delete

    async def delete(self, extraction_id: str, user_id: str) -> None:
        record = await self.store.get(extraction_id, user_id)
        if record is None:
            return

        job = self.queue.find_job(record.id)
        if job is not None:
            self.queue.neutralize(job)

        await self.storage.delete(record.id, record.filename, user_id)
        await self.cache.delete(record.id)
        await self.store.delete(record.id)
        logger.info("Extraction %s deleted successfully", extraction_id)
