"""Exception hierarchy for the receipt extraction service.

Errors fall into two families.  Synchronous request errors
(``ValidationError``, ``ExtractionNotFoundError``, ``StorageError``) are
mapped to HTTP responses by ``receipt_extraction.api.error_handlers``.
Pipeline errors (``InferenceError``, ``ResponseParseError`` and friends,
``ReceiptValidationError``) fail the current job attempt and are retried
by the queue.  A receipt the model flags as unreadable is *not* an error;
see ``receipt_extraction.utils.receipt_parser.InvalidReceipt``.
"""

from __future__ import annotations

from typing import Any, Optional


class ReceiptExtractionError(Exception):
    """Base exception for all service-specific errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


# =============================================================================
# Request errors
# =============================================================================


class ValidationError(ReceiptExtractionError):
    """Bad input to an orchestrator call (missing file, wrong type, ...)."""


class PayloadTooLargeError(ValidationError):
    """Upload exceeds ``MAX_UPLOAD_SIZE``."""


class ExtractionNotFoundError(ReceiptExtractionError):
    """No extraction with this id is visible to the caller."""


# =============================================================================
# Collaborator errors
# =============================================================================


class StorageError(ReceiptExtractionError):
    """Object store unavailable, denied, or object missing."""


class CacheError(ReceiptExtractionError):
    """Image cache failure. Never fatal; callers degrade to the object store."""


class InferenceError(ReceiptExtractionError):
    """The vision model call failed or timed out."""


# =============================================================================
# Model response errors
# =============================================================================


class ResponseParseError(ReceiptExtractionError):
    """The model response could not be decoded into a receipt object."""


class MissingFieldError(ResponseParseError):
    def __init__(self, field: str) -> None:
        super().__init__(f"Missing required field: {field}", {"field": field})
        self.field = field


class EmptyItemsError(ResponseParseError):
    def __init__(self) -> None:
        super().__init__("Items array is empty or invalid", {"field": "items"})


class InvalidFieldError(ResponseParseError):
    def __init__(self, field: str, value: Any) -> None:
        super().__init__(f"Invalid {field}: {value!r}", {"field": field})
        self.field = field
        self.value = value


class ReceiptValidationError(ReceiptExtractionError):
    """A parsed receipt failed schema validation."""


# =============================================================================
# Queue errors
# =============================================================================


class JobCancelledError(ReceiptExtractionError):
    """The job was cancelled because its extraction was deleted."""
