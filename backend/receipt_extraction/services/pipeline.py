"""Worker-side extraction pipeline.

One :meth:`ExtractionPipeline.run` call handles one job attempt:

1. get the image (cache first, then the object store);
2. ask the vision model to read it;
3. classify the reply (valid / invalid receipt / unusable);
4. validate a valid receipt against ``ExtractionResult``;
5. commit the outcome and push it to the user.

An unreadable receipt is a final answer (INVALID) and is not retried.
Every other failure marks the record FAILED and re-raises so the queue
can retry. A later attempt may still turn FAILED into EXTRACTED.

Before committing, the pipeline checks the job ledger: if the
extraction was deleted while the model was busy, nothing is written.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from receipt_extraction.core.errors import JobCancelledError, ReceiptValidationError
from receipt_extraction.core.observability import sentry_breadcrumb, sentry_metric_inc
from receipt_extraction.models.enums import ExtractionStatus
from receipt_extraction.models.schemas import ExtractionJob, ExtractionRead, ExtractionResult
from receipt_extraction.models.tables import Extraction
from receipt_extraction.services.cache import ImageCache
from receipt_extraction.services.extraction_store import ExtractionStore
from receipt_extraction.services.inference_service import InferenceClient
from receipt_extraction.services.notifier import UpdateSink
from receipt_extraction.services.storage_service import StorageService
from receipt_extraction.utils.receipt_parser import (
    ExtractionOutcome,
    InvalidReceipt,
    OperationalFailure,
    ReceiptData,
    classify_receipt_response,
)

logger = logging.getLogger(__name__)


class CancellationCheck(Protocol):
    def is_cancelled(self, extraction_id: str) -> bool: ...


def validate_receipt(data: ReceiptData) -> ExtractionResult:
    try:
        return ExtractionResult.model_validate(data)
    except PydanticValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ReceiptValidationError(f"Validation failed: {messages}") from exc


class ExtractionPipeline:
    def __init__(
        self,
        store: ExtractionStore,
        cache: ImageCache,
        storage: StorageService,
        inference: InferenceClient,
        notifier: UpdateSink,
        ledger: Optional[CancellationCheck] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.storage = storage
        self.inference = inference
        self.notifier = notifier
        self.ledger = ledger

    async def acquire_image(self, job: ExtractionJob) -> bytes:
        image = await self.cache.get(job.extraction_id)
        if image is not None:
            logger.info("Cache hit for %s", job.extraction_id)
            return image
        logger.info("Cache miss - downloading from storage for %s", job.extraction_id)
        image = await self.storage.download(job.extraction_id, job.filename, job.user_id)
        # Cache for future retries
        await self.cache.put(job.extraction_id, image)
        return image

    def _ensure_not_cancelled(self, job: ExtractionJob) -> None:
        if self.ledger is not None and self.ledger.is_cancelled(job.extraction_id):
            raise JobCancelledError(
                f"Extraction {job.extraction_id} was deleted", {"extraction_id": job.extraction_id}
            )

    async def _notify(self, job: ExtractionJob, record: Optional[Extraction]) -> None:
        if record is None:
            return
        payload = ExtractionRead.model_validate(record).to_event()
        await self.notifier.emit_update(job.user_id, payload)

    async def run(self, job: ExtractionJob) -> ExtractionOutcome:
        extraction_id = job.extraction_id
        started = time.monotonic()
        logger.info("Processing extraction %s", extraction_id)
        sentry_breadcrumb(category="extraction", message="pipeline.start", data={"extraction_id": extraction_id})
        try:
            image = await self.acquire_image(job)
            envelope = await self.inference.extract_receipt(image)
            outcome = classify_receipt_response(envelope)

            if isinstance(outcome, InvalidReceipt):
                self._ensure_not_cancelled(job)
                record = await self.store.update_status(
                    extraction_id, ExtractionStatus.INVALID, reason=outcome.reason
                )
                await self._notify(job, record)
                await self.cache.delete(extraction_id)
                logger.info("Extraction %s marked as invalid: %s", extraction_id, outcome.reason)
                sentry_metric_inc("extraction.completed", tags={"status": "invalid"})
                return outcome

            if isinstance(outcome, OperationalFailure):
                raise outcome.error

            result = validate_receipt(outcome.data)
            self._ensure_not_cancelled(job)
            record = await self.store.update_status(extraction_id, ExtractionStatus.EXTRACTED, result=result)
            await self._notify(job, record)
            logger.info(
                "Extraction %s completed in %dms", extraction_id, int((time.monotonic() - started) * 1000)
            )
            sentry_metric_inc("extraction.completed", tags={"status": "extracted"})
            return outcome
        except JobCancelledError:
            logger.info("Extraction %s was deleted mid-flight; discarding result", extraction_id)
            raise
        except Exception as exc:
            logger.error("Extraction %s failed: %s", extraction_id, exc, exc_info=True)
            await self._fail(job, exc)
            raise

    async def _fail(self, job: ExtractionJob, exc: BaseException) -> None:
        reason = str(exc) or "Unknown error occurred"
        record = await self.store.update_status(job.extraction_id, ExtractionStatus.FAILED, reason=reason)
        await self._notify(job, record)
        # Clean up cache
        await self.cache.delete(job.extraction_id)
        sentry_metric_inc("extraction.completed", tags={"status": "failed", "error": type(exc).__name__})
