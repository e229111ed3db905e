"""Image preprocessing utilities.

Receipt photos straight from a phone are often rotated through EXIF
metadata and far larger than a vision model needs.  The helper here
applies the EXIF orientation and shrinks the longest edge before the
image is sent upstream.  Pillow is used as the imaging backend.
"""

from __future__ import annotations

from io import BytesIO
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError


def preprocess_image(image_data: bytes, mime_type: str, max_size: int = 1600) -> Tuple[bytes, str]:
    """Prepare a receipt image for extraction.

    Applies the EXIF orientation, converts to RGB and resizes the longest
    edge to ``max_size`` pixels while keeping the aspect ratio.  The
    result is JPEG encoded.  Images Pillow cannot read are returned
    unchanged together with their original MIME type.

    :param image_data: Raw image bytes
    :param mime_type: MIME type reported by the client
    :param max_size: Maximum size of the longest edge in pixels
    :returns: ``(bytes, mime_type)`` to send to the provider
    """
    try:
        with Image.open(BytesIO(image_data)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("RGB")
            width, height = img.size
            max_dim = max(width, height)
            if max_dim > max_size:
                scale = max_size / float(max_dim)
                img = img.resize((int(width * scale), int(height * scale)))
            buf = BytesIO()
            img.save(buf, format="JPEG", quality=90)
            return buf.getvalue(), "image/jpeg"
    except (UnidentifiedImageError, OSError, ValueError):
        return image_data, mime_type
