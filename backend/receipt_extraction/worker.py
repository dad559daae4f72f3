"""Dramatiq worker entrypoint.

This module configures logging and Sentry for the worker process and
imports the task module so the broker and actors are registered when
the worker starts.

Run with:
    dramatiq receipt_extraction.worker --processes 1 --threads 4
"""

import logging
import os
import sys
from pathlib import Path

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Import settings first
from receipt_extraction.core.config import settings  # noqa: E402
from receipt_extraction.core.observability import configure_logging, init_sentry  # noqa: E402

configure_logging()
logger = logging.getLogger("receipt_extraction.worker")

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Propagate key env vars for libraries reading directly from os.environ
if settings.OPENAI_API_KEY:
    os.environ.setdefault("OPENAI_API_KEY", settings.OPENAI_API_KEY)

# Import tasks to register the broker and actors
from receipt_extraction.core.tasks import broker, process_receipt  # noqa: E402,F401

logger.info(
    "Worker ready: actor=%s queue=%s attempts=%d provider=%s",
    process_receipt.actor_name,
    process_receipt.queue_name,
    settings.JOB_MAX_ATTEMPTS,
    settings.INFERENCE_PROVIDER,
)
