"""Object store gateway for receipt images.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3-compatible object storage and
   presigned GET URLs.
2. **filesystem**: Stores files under ``settings.STORAGE_DIRECTORY`` on
   disk. URLs point back at this API (``/api/extractions/<id>/image``)
   and carry an HMAC signature with an expiry.

Objects are addressed by ``<STORAGE_PREFIX>/<user_id>/<id>-<filename>``,
so the key can always be rebuilt from the extraction record. The minio
client is synchronous; calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlencode

from minio import Minio
from minio.error import S3Error

from receipt_extraction.core.config import settings
from receipt_extraction.core.errors import StorageError

logger = logging.getLogger(__name__)


def sign_image_token(extraction_id: str, exp_ts: int, secret: Optional[str] = None) -> str:
    msg = f"{extraction_id}:{exp_ts}".encode()
    key = (secret or settings.SECRET_KEY).encode()
    digest = hmac.new(key, msg, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_image_token(extraction_id: str, exp: int, sig: str, secret: Optional[str] = None) -> bool:
    now_ts = int(datetime.now(timezone.utc).timestamp())
    if now_ts > int(exp):
        return False
    expected = sign_image_token(extraction_id, int(exp), secret)
    return hmac.compare_digest(expected, sig)


class StorageService:
    """Unified storage gateway (MinIO or filesystem)."""

    def __init__(
        self,
        backend: Optional[str] = None,
        base_dir: Optional[str | Path] = None,
        client: Any = None,
    ) -> None:
        self.backend = (backend or settings.STORAGE_BACKEND or "minio").lower()
        self.prefix = settings.STORAGE_PREFIX.strip("/")
        self.expiry = int(settings.SIGNED_URL_EXPIRY_SECONDS)
        if self.backend == "minio":
            self._client = client or Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
                region=settings.MINIO_REGION,
            )
            self.bucket = settings.MINIO_BUCKET_NAME
            self._bucket_checked = False
        elif self.backend == "filesystem":
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                repo_root = Path(__file__).resolve().parents[3]
                base_path = (repo_root / base_path).resolve()
            self.base_dir = base_path
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Filesystem storage at %s", self.base_dir)
        else:
            raise ValueError(f"Unknown storage backend: {self.backend}")

    @staticmethod
    def _normalise_filename(filename: str) -> str:
        """Remove potentially dangerous characters and ensure a safe filename."""
        keepchars = {"-", "_", "."}
        safe = "".join(c for c in filename if c.isalnum() or c in keepchars).lstrip(".")
        return safe or "receipt"

    def object_key(self, extraction_id: str, filename: str, user_id: str) -> str:
        safe_user = self._normalise_filename(str(user_id))
        return f"{self.prefix}/{safe_user}/{extraction_id}-{self._normalise_filename(filename)}"

    def _path_for(self, key: str) -> Path:
        return self.base_dir / key

    # ------------------------------------------------------------------
    # MinIO helpers (blocking)

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)
        self._bucket_checked = True

    def _minio_put(self, key: str, data: bytes, content_type: str) -> None:
        self._ensure_bucket()
        self._client.put_object(self.bucket, key, BytesIO(data), len(data), content_type=content_type)

    def _minio_get(self, key: str) -> bytes:
        resp = self._client.get_object(self.bucket, key)
        try:
            return resp.read()
        finally:
            resp.close()
            resp.release_conn()

    # ------------------------------------------------------------------
    # Gateway operations

    async def upload(
        self,
        data: bytes,
        extraction_id: str,
        filename: str,
        user_id: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Store ``data`` and return its object key. Raises ``StorageError``."""
        key = self.object_key(extraction_id, filename, user_id)
        try:
            if self.backend == "minio":
                await asyncio.to_thread(self._minio_put, key, data, content_type)
            else:
                path = self._path_for(key)
                path.parent.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(path.write_bytes, data)
        except (S3Error, OSError, ValueError) as exc:
            raise StorageError(f"Failed to upload {key}: {exc}", {"key": key}) from exc
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return key

    async def download(self, extraction_id: str, filename: str, user_id: str) -> bytes:
        """Fetch stored bytes. Raises ``StorageError`` when missing or unreachable."""
        key = self.object_key(extraction_id, filename, user_id)
        try:
            if self.backend == "minio":
                data = await asyncio.to_thread(self._minio_get, key)
            else:
                data = await asyncio.to_thread(self._path_for(key).read_bytes)
        except FileNotFoundError as exc:
            raise StorageError(f"File not found: {key}", {"key": key}) from exc
        except Exception as exc:
            raise StorageError(f"Failed to download {key}: {exc}", {"key": key}) from exc
        if not data:
            raise StorageError(f"Empty object: {key}", {"key": key})
        return data

    async def delete(self, extraction_id: str, filename: str, user_id: str) -> None:
        """Remove the stored object. Failures are logged, never raised."""
        key = self.object_key(extraction_id, filename, user_id)
        try:
            if self.backend == "minio":
                await asyncio.to_thread(self._client.remove_object, self.bucket, key)
            else:
                self._path_for(key).unlink(missing_ok=True)
        except Exception as exc:
            logger.warning("Failed to delete stored image %s: %s", key, exc)

    async def signed_url(self, extraction_id: str, filename: str, user_id: str) -> str:
        """Return a time-limited read URL for the stored image."""
        if self.backend == "minio":
            key = self.object_key(extraction_id, filename, user_id)
            try:
                return await asyncio.to_thread(
                    self._client.presigned_get_object,
                    self.bucket,
                    key,
                    expires=timedelta(seconds=self.expiry),
                )
            except Exception as exc:
                raise StorageError(f"Failed to sign URL for {key}: {exc}", {"key": key}) from exc
        exp_ts = int((datetime.now(timezone.utc) + timedelta(seconds=self.expiry)).timestamp())
        sig = sign_image_token(extraction_id, exp_ts)
        q = urlencode({"exp": exp_ts, "sig": sig})
        return f"{settings.API_PREFIX}/extractions/{extraction_id}/image?{q}"

    async def ping(self) -> bool:
        if self.backend == "minio":
            try:
                await asyncio.to_thread(self._client.bucket_exists, self.bucket)
                return True
            except Exception:
                return False
        return self.base_dir.is_dir()


_storage: Optional[StorageService] = None


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage
