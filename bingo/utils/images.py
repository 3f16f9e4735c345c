"""Image helpers for uploaded table photos and campaign images."""

from __future__ import annotations

import io
import mimetypes
from typing import NamedTuple

from django.core.exceptions import ValidationError
from PIL import Image, UnidentifiedImageError

MAX_IMAGE_BYTES = 10 * 1024 * 1024

PIL_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}

EXTENSION_MIME = {
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


class ImageInfo(NamedTuple):
    mime_type: str
    extension: str
    width: int
    height: int


def mime_from_name(file_name: str | None) -> str:
    """MIME by extension; anything unknown is sent as JPEG."""
    name = (file_name or "").lower()
    for ext, mime in EXTENSION_MIME.items():
        if name.endswith(ext):
            return mime
    return "image/jpeg"


def inspect_image(data: bytes, *, max_size_bytes: int = MAX_IMAGE_BYTES, field_name: str = "Image") -> ImageInfo:
    """Validate size and binary integrity; return the sniffed MIME type and dimensions."""
    if not data:
        raise ValidationError(f"{field_name} is required.", code="required")
    if len(data) > max_size_bytes:
        mb = max_size_bytes / (1024 * 1024)
        raise ValidationError(f"{field_name} size must be <= {mb:.1f}MB.", code="image_too_large")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        # verify() leaves the image unusable; reopen for metadata.
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            width, height = img.size
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValidationError(f"{field_name} is not a valid image.", code="invalid_image") from exc
    mime = PIL_FORMAT_MIME.get(fmt, "image/jpeg")
    extension = mimetypes.guess_extension(mime) or ".jpg"
    if extension == ".jpe":
        extension = ".jpg"
    return ImageInfo(mime, extension, width, height)


def sniff_mime(data: bytes, file_name: str | None = None) -> str:
    """Best-effort MIME for sending: Pillow first, file extension as fallback."""
    try:
        return inspect_image(data).mime_type
    except ValidationError:
        return mime_from_name(file_name)
