"""
Image ingestion: content sniffing and object key generation.

Blobs are identified by their content, never by the client's filename.
Keys are random so that a replaced image never collides with the blob it
replaces while the delayed delete of the old one is pending.
"""

import io
import re
import secrets

from PIL import Image, UnidentifiedImageError

from coffeeshop.core.errors import ValidationError
from coffeeshop.services.queues.tasks import UploadImagePayload

from .schemas import ImageUpload

THUMBNAIL_PREFIX = "images/products/thumbnails"
IMAGE_PREFIX = "images/products"

# Pillow format name -> extension used in keys and content types
FORMAT_EXTENSIONS = {
    "JPEG": "jpeg",
    "PNG": "png",
    "GIF": "gif",
    "WEBP": "webp",
    "BMP": "bmp",
    "TIFF": "tiff",
}


def detect_image_extension(data: bytes, field: str = "image") -> str:
    """Return the extension for an image blob, or raise ValidationError."""
    if not data:
        raise ValidationError("Image is empty", field=field)

    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(f"Content is not an image: {e}", field=field)

    extension = FORMAT_EXTENSIONS.get(image_format or "")
    if extension is None:
        raise ValidationError(f"Unsupported image format: {image_format}", field=field)
    return extension


def generate_token() -> str:
    return secrets.token_hex(16)


def category_slug(category: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", category.lower()).strip("-")
    return slug or "uncategorized"


def thumbnail_key(extension: str) -> str:
    return f"{THUMBNAIL_PREFIX}/{generate_token()}.{extension}"


def image_key(category: str, extension: str) -> str:
    return f"{IMAGE_PREFIX}/{category_slug(category)}/{generate_token()}.{extension}"


class SniffedImage:
    """An upload whose content has been identified as an image."""

    def __init__(self, data: bytes, extension: str):
        self.data = data
        self.extension = extension

    @classmethod
    def from_upload(cls, upload: ImageUpload, field: str) -> "SniffedImage":
        return cls(upload.data, detect_image_extension(upload.data, field=field))

    def to_payload(self, object_key: str) -> UploadImagePayload:
        return UploadImagePayload(
            image=self.data, object_key=object_key, extension=self.extension
        )
