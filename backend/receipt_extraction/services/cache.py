"""Redis-backed cache for receipt images awaiting extraction.

The upload path caches the raw image so the worker can skip an object
store round trip. Entries are short-lived and always optional:

- Keys are namespaced ``receipt:<extraction_id>``.
- Values are base64 text so the same client (``decode_responses=True``)
  can serve other string keys.
- Redis failures surface as ``CacheError`` internally and are logged and
  swallowed at the public methods. A miss and an outage look
  the same to callers, who fall back to the object store.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Awaitable, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from receipt_extraction.core.config import settings
from receipt_extraction.core.errors import CacheError

logger = logging.getLogger(__name__)

_redis_client = None
_lock = asyncio.Lock()


async def get_redis():
    """Return a singleton async Redis client for the API process."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    async with _lock:
        if _redis_client is None:
            _redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def image_cache_key(extraction_id: str) -> str:
    return f"receipt:{extraction_id}"


class ImageCache:
    """Best-effort image cache keyed by extraction id."""

    def __init__(self, client: Any, ttl: Optional[int] = None) -> None:
        self._client = client
        self.ttl = int(ttl if ttl is not None else settings.IMAGE_CACHE_TTL)

    async def _call(self, op: str, key: str, awaitable: Awaitable[Any]) -> Any:
        """Await a Redis call, converting transport failures into CacheError."""
        try:
            return await awaitable
        except (RedisError, OSError) as exc:
            raise CacheError(f"Image cache {op} failed for {key}", {"key": key, "error": str(exc)}) from exc

    async def put(self, extraction_id: str, data: bytes, ttl: Optional[int] = None) -> None:
        key = image_cache_key(extraction_id)
        encoded = base64.b64encode(data).decode("ascii")
        try:
            await self._call("write", key, self._client.set(key, encoded, ex=int(ttl or self.ttl)))
        except CacheError as exc:
            logger.warning("%s: %s", exc, exc.details.get("error"))

    async def get(self, extraction_id: str) -> Optional[bytes]:
        key = image_cache_key(extraction_id)
        try:
            raw = await self._call("read", key, self._client.get(key))
        except CacheError as exc:
            logger.warning("%s: %s", exc, exc.details.get("error"))
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("ascii", errors="ignore")
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Discarding corrupt image cache entry %s", key)
            return None

    async def delete(self, extraction_id: str) -> None:
        key = image_cache_key(extraction_id)
        try:
            await self._call("delete", key, self._client.delete(key))
        except CacheError as exc:
            logger.warning("%s: %s", exc, exc.details.get("error"))

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", "-", self._client.ping()))
        except CacheError:
            return False
