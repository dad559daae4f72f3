"""Image utilities.

Uploads are sniffed with Pillow before anything is stored, so a file
that merely claims to be ``image/png`` is rejected up front. Before
inference, large photos are downsized and EXIF orientation is applied
(phone cameras often store portrait shots rotated). Pillow failures in
the inference path return the original bytes unchanged.
"""

from __future__ import annotations

import logging
from io import BytesIO
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

_SUPPORTED_FORMATS = {"JPEG", "PNG", "WEBP"}
_ORIENTATION_TAG = 0x0112


def sniff_image_format(data: bytes) -> Optional[str]:
    """Return the Pillow format name (``JPEG``, ``PNG``, ``WEBP``) or ``None``.

    Only the header is inspected (``Image.verify``), the pixels are not
    decoded.
    """
    if not data:
        return None
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    if fmt not in _SUPPORTED_FORMATS:
        return None
    return fmt


def prepare_for_inference(image_data: bytes, max_size: int = 1600) -> bytes:
    """Orient and shrink a receipt image for the vision model.

    The longest edge is resized to ``max_size`` pixels while keeping the
    aspect ratio. Images already within bounds and without an EXIF
    rotation are returned untouched.

    :param image_data: Raw image bytes
    :param max_size: Maximum size of the longest edge in pixels
    :returns: JPEG bytes, or the original bytes
    """
    try:
        with Image.open(BytesIO(image_data)) as img:
            rotated = img.getexif().get(_ORIENTATION_TAG, 1) != 1
            if max(img.size) <= max_size and not rotated:
                return image_data
            work = ImageOps.exif_transpose(img)
            work.thumbnail((max_size, max_size))
            buf = BytesIO()
            work.convert("RGB").save(buf, format="JPEG", quality=90)
            return buf.getvalue()
    except Exception as exc:
        logger.debug("Image preprocessing skipped: %s", exc)
        return image_data
