from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from receipt_extraction.core.errors import StorageError
from receipt_extraction.services.storage_service import sign_image_token, verify_image_token


def test_object_key_layout(storage):
    key = storage.object_key("ext-1", "my receipt.png", "user-1")
    assert key == "receipts/user-1/ext-1-myreceipt.png"


def test_object_key_strips_path_traversal(storage):
    key = storage.object_key("ext-1", "../../etc/passwd", "user-1")
    assert ".." not in key
    assert key.startswith("receipts/user-1/ext-1-")


@pytest.mark.asyncio
async def test_upload_download_delete(storage, png_bytes):
    key = await storage.upload(png_bytes, "ext-1", "r.png", "user-1", "image/png")
    assert (storage.base_dir / key).exists()
    assert await storage.download("ext-1", "r.png", "user-1") == png_bytes
    await storage.delete("ext-1", "r.png", "user-1")
    assert not (storage.base_dir / key).exists()


@pytest.mark.asyncio
async def test_download_missing_raises(storage):
    with pytest.raises(StorageError):
        await storage.download("nope", "r.png", "user-1")


@pytest.mark.asyncio
async def test_delete_missing_is_silent(storage):
    await storage.delete("nope", "r.png", "user-1")


@pytest.mark.asyncio
async def test_filesystem_signed_url_round_trip(storage):
    url = await storage.signed_url("ext-1", "r.png", "user-1")
    parsed = urlparse(url)
    assert parsed.path == "/api/extractions/ext-1/image"
    params = parse_qs(parsed.query)
    exp, sig = int(params["exp"][0]), params["sig"][0]
    assert verify_image_token("ext-1", exp, sig)
    assert not verify_image_token("ext-2", exp, sig)


def test_expired_token_rejected():
    sig = sign_image_token("ext-1", 1000)
    assert not verify_image_token("ext-1", 1000, sig)
