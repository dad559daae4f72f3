"""API routes for receipt upload, retrieval and deletion."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status

from receipt_extraction.api.deps import (
    get_current_user_id,
    get_extraction_service,
    get_storage,
)
from receipt_extraction.core.config import settings
from receipt_extraction.core.errors import StorageError
from receipt_extraction.models.schemas import ExtractionCreated, ExtractionRead, MessageResponse
from receipt_extraction.services.extraction_service import ExtractionService
from receipt_extraction.services.storage_service import StorageService, verify_image_token
from receipt_extraction.utils.image_processing import sniff_image_format

router = APIRouter(prefix="/extractions", tags=["extractions"])

_MEDIA_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}


@router.post("", response_model=ExtractionCreated, status_code=status.HTTP_201_CREATED)
async def create_extraction(
    file: Optional[UploadFile] = File(None),
    user_id: str = Depends(get_current_user_id),
    service: ExtractionService = Depends(get_extraction_service),
) -> ExtractionCreated:
    """Upload a receipt image and start extracting it in the background."""
    data: Optional[bytes] = None
    filename = None
    content_type = None
    if file is not None:
        # One byte over the limit is enough to reject the upload
        data = await file.read(settings.MAX_UPLOAD_SIZE + 1)
        filename = file.filename
        content_type = file.content_type
    return await service.create(data, filename, user_id, content_type)


@router.get("", response_model=List[ExtractionRead])
async def list_extractions(
    user_id: str = Depends(get_current_user_id),
    service: ExtractionService = Depends(get_extraction_service),
) -> List[ExtractionRead]:
    return await service.list(user_id)


@router.get("/{extraction_id}", response_model=ExtractionRead)
async def get_extraction(
    extraction_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ExtractionService = Depends(get_extraction_service),
) -> ExtractionRead:
    return await service.get(extraction_id, user_id)


@router.delete("/{extraction_id}", response_model=MessageResponse)
async def delete_extraction(
    extraction_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ExtractionService = Depends(get_extraction_service),
) -> MessageResponse:
    await service.delete(extraction_id, user_id)
    return MessageResponse(message="Extraction deleted successfully")


@router.get("/{extraction_id}/image")
async def get_extraction_image(
    extraction_id: str,
    exp: int,
    sig: str,
    service: ExtractionService = Depends(get_extraction_service),
    storage: StorageService = Depends(get_storage),
):
    """Serve a stored image for a signed URL.

    Uses an HMAC-signed, short-lived token, so no Authorization header is
    required (browsers load it straight into an ``<img>``).
    """
    if not verify_image_token(extraction_id, exp, sig):
        raise HTTPException(status_code=401, detail="Invalid or expired link")
    record = await service.store.get(extraction_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Extraction not found")
    try:
        data = await storage.download(record.id, record.filename, record.user_id)
    except StorageError:
        raise HTTPException(status_code=404, detail="File not found")
    media_type = _MEDIA_TYPES.get(sniff_image_format(data) or "", "application/octet-stream")
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "private, max-age=300"})
