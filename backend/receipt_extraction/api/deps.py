"""FastAPI dependencies: caller identity and service wiring.

Identity is a plain bearer scheme, ``Authorization: Bearer <user_id>``.
WebSocket clients, which cannot set headers from the browser, may pass
``?token=<user_id>`` instead.

Long-lived services are built once in the application lifespan and kept
on ``app.state.services``; tests build their own with :func:`build_services`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Header, HTTPException, Request, status

from receipt_extraction.core.database import AsyncSessionLocal
from receipt_extraction.services.cache import ImageCache
from receipt_extraction.services.extraction_service import ExtractionService
from receipt_extraction.services.extraction_store import ExtractionStore
from receipt_extraction.services.job_queue import JobQueue
from receipt_extraction.services.notifier import Notifier
from receipt_extraction.services.storage_service import StorageService

logger = logging.getLogger(__name__)


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    user_id = parse_bearer(authorization)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing auth token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


@dataclass
class Services:
    extraction_service: ExtractionService
    notifier: Notifier
    storage: StorageService
    cache: ImageCache
    queue: JobQueue
    redis: Any


def build_services(
    redis_client: Any,
    queue: JobQueue,
    storage: Optional[StorageService] = None,
    session_factory=None,
) -> Services:
    storage = storage or StorageService()
    cache = ImageCache(redis_client)
    notifier = Notifier()
    service = ExtractionService(
        store=ExtractionStore(session_factory or AsyncSessionLocal),
        storage=storage,
        cache=cache,
        queue=queue,
        notifier=notifier,
    )
    return Services(service, notifier, storage, cache, queue, redis_client)


def _services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services are not initialised")
    return services


def get_extraction_service(request: Request) -> ExtractionService:
    return _services(request).extraction_service


def get_storage(request: Request) -> StorageService:
    return _services(request).storage


def get_queue(request: Request) -> JobQueue:
    return _services(request).queue
