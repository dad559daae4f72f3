"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and
manages the application lifespan: on startup it initialises logging,
Sentry and the database, builds the long-lived services and starts the
relay that forwards worker updates to WebSocket clients.

Run with:
    uvicorn receipt_extraction.api.main:app --reload
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exception_handlers import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from receipt_extraction.api.deps import build_services
from receipt_extraction.api.endpoints.health import router as health_router
from receipt_extraction.api.error_handlers import (
    generic_exception_handler,
    service_exception_handler,
    validation_exception_handler,
)
from receipt_extraction.api.routes.events import router as events_router
from receipt_extraction.api.routes.extractions import router as extractions_router
from receipt_extraction.api.routes.jobs import router as jobs_router
from receipt_extraction.core.config import settings
from receipt_extraction.core.database import init_db
from receipt_extraction.core.errors import ReceiptExtractionError
from receipt_extraction.core.observability import configure_logging, init_sentry
from receipt_extraction.core.tasks import get_job_queue
from receipt_extraction.services.cache import get_redis

# Configure logging
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info("Starting up...")
    # Centralised Sentry init (idempotent)
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    redis_client = await get_redis()
    services = build_services(redis_client, get_job_queue())
    app.state.services = services
    relay = asyncio.create_task(services.notifier.relay(redis_client), name="extraction-update-relay")
    yield
    # Shutdown
    logger.info("Shutting down...")
    await services.extraction_service.drain()
    relay.cancel()
    try:
        await relay
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Update relay ended with an error")
    await redis_client.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)

"""CORS configuration.

In development allow all ( * ) for simplest DX; otherwise use
BACKEND_CORS_ORIGINS.
"""
env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
allow_origins = ["*"] if env_is_dev else list(dict.fromkeys(settings.BACKEND_CORS_ORIGINS or []))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=not env_is_dev,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register custom exception handlers
app.add_exception_handler(ReceiptExtractionError, service_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include routers
app.include_router(extractions_router, prefix=settings.API_PREFIX)
app.include_router(jobs_router, prefix=settings.API_PREFIX)
app.include_router(events_router)
app.include_router(health_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": f"Welcome to the {settings.PROJECT_NAME} API"}
