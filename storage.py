"""
Local storage for issue photos.

Images are checked (content type, size, file signature), written under
``config.UPLOAD_DIR`` with a generated name and served by the app at
``config.UPLOAD_URL_PREFIX``.
"""

import os
import re
import uuid

import config
from errors import ValidationError
from log import get_logger

logger = get_logger("storage")

# content type -> stored extension
ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

SAFE_FILENAME_PATTERN = re.compile(r"[^a-zA-Z0-9._-]")


def _has_image_signature(content_type: str, content: bytes) -> bool:
    if content_type == "image/jpeg":
        return content.startswith(b"\xff\xd8\xff")
    if content_type == "image/png":
        return content.startswith(b"\x89PNG\r\n\x1a\n")
    if content_type == "image/gif":
        return content[:6] in (b"GIF87a", b"GIF89a")
    if content_type == "image/webp":
        return content[:4] == b"RIFF" and content[8:12] == b"WEBP"
    return False


def _sanitize_filename(filename: str) -> str:
    filename = (filename or "").replace("\\", "/").split("/")[-1]
    return SAFE_FILENAME_PATTERN.sub("_", filename)[:100]


def validate_image(filename: str, content_type: str, content: bytes) -> None:
    content_type = content_type or ""
    if content_type not in ALLOWED_IMAGE_TYPES:
        logger.warning("upload_invalid_type", content_type=content_type, filename=_sanitize_filename(filename)[:50])
        raise ValidationError.single("image", "Only image files are allowed")
    if not content:
        raise ValidationError.single("image", "Image file is empty")
    if len(content) > config.MAX_IMAGE_BYTES:
        raise ValidationError.single(
            "image", f"Image must be smaller than {config.MAX_IMAGE_BYTES // (1024 * 1024)}MB"
        )
    if not _has_image_signature(content_type, content):
        logger.warning("upload_invalid_signature", first_bytes=content[:8].hex())
        raise ValidationError.single("image", "File content does not match its image type")


def save_image(filename: str, content_type: str, content: bytes) -> str:
    """Validate and store an uploaded image. Returns the URL it is served at."""
    validate_image(filename, content_type, content)

    name = f"image-{uuid.uuid4().hex}{ALLOWED_IMAGE_TYPES[content_type]}"
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    with open(os.path.join(config.UPLOAD_DIR, name), "wb") as fh:
        fh.write(content)

    logger.info(
        "image_stored",
        stored_as=name,
        original=_sanitize_filename(filename),
        size_bytes=len(content),
    )
    return f"{config.UPLOAD_URL_PREFIX}/{name}"


def delete_image(url: str) -> bool:
    """Remove a stored image given the URL ``save_image`` returned."""
    prefix = f"{config.UPLOAD_URL_PREFIX}/"
    if not url or not url.startswith(prefix):
        return False
    path = os.path.join(config.UPLOAD_DIR, _sanitize_filename(url[len(prefix):]))
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    logger.info("image_removed", path=path)
    return True
