"""
Custom exception handlers for FastAPI.
Maps service errors to HTTP responses with a consistent JSON body.
"""

import logging

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
)

from receipt_extraction.core.errors import (
    ExtractionNotFoundError,
    PayloadTooLargeError,
    ReceiptExtractionError,
    StorageError,
    ValidationError,
)
from receipt_extraction.core.observability import sentry_capture

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[ReceiptExtractionError], int]] = [
    (PayloadTooLargeError, HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (ValidationError, HTTP_400_BAD_REQUEST),
    (ExtractionNotFoundError, HTTP_404_NOT_FOUND),
    (StorageError, HTTP_502_BAD_GATEWAY),
]


def status_for(exc: ReceiptExtractionError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return HTTP_500_INTERNAL_SERVER_ERROR


def service_exception_handler(request: Request, exc: ReceiptExtractionError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        sentry_capture(exc)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "details": exc.details,
        },
    )


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    sentry_capture(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )
