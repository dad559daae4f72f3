"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "Receipt Extraction"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./receipts.db")

    # Redis (cache, job ledger, live update fan-out)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Image cache
    IMAGE_CACHE_TTL: int = Field(default=900)

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_REGION: Optional[str] = Field(default=None)
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")
    STORAGE_PREFIX: str = Field(default="receipts")
    SIGNED_URL_EXPIRY_SECONDS: int = Field(default=3600)
    # Used to sign filesystem-backend image URLs
    SECRET_KEY: str = Field(default="changeme")

    # Inference
    INFERENCE_PROVIDER: str = Field(default="ollama")
    OLLAMA_HOST: str = Field(default="http://localhost:11434")
    OLLAMA_MODEL: str = Field(default="llava:13b")
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_MODEL: str = Field(default="gpt-4o-mini")
    INFERENCE_TEMPERATURE: float = Field(default=0.1)
    INFERENCE_TIMEOUT_SECONDS: float = Field(default=600.0)
    INFERENCE_MAX_IMAGE_SIDE: int = Field(default=1600)

    # Job queue
    JOB_QUEUE_NAME: str = Field(default="extraction")
    JOB_MAX_ATTEMPTS: int = Field(default=3)
    JOB_MIN_BACKOFF_MS: int = Field(default=2000)
    JOB_MAX_BACKOFF_MS: int = Field(default=60000)
    # Cancellation markers outlive any pending redelivery of the message
    JOB_TOMBSTONE_TTL: int = Field(default=86400)

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    ALLOWED_CONTENT_TYPES: set[str] = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:5173", "http://127.0.0.1:5173"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    @property
    def broker_url(self) -> str:
        return self.DRAMATIQ_BROKER_URL or os.getenv("DRAMATIQ_BROKER_URL") or self.REDIS_URL

    @property
    def job_max_retries(self) -> int:
        """Retries on top of the first attempt."""
        return max(0, self.JOB_MAX_ATTEMPTS - 1)


# Instantiate global settings
settings = Settings()
