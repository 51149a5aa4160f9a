import io
import uuid
import structlog
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

__all__ = [
    "FORMAT_MIME_TYPES",
    "new_registration_id",
    "utc_now",
    "ensure_dir_exists",
    "sniff_mime_type",
    "format_file_size",
]

logger = structlog.get_logger()

# Pillow format name -> MIME type accepted by the oracle
FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}

def new_registration_id() -> str:
    """Generate a new unique registration ID."""
    return str(uuid.uuid4())

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_dir_exists(dir_path: str) -> str:
    """Ensure directory exists, create if it doesn't."""
    try:
        Path(dir_path).mkdir(parents=True, exist_ok=True)
        return dir_path
    except Exception as e:
        logger.error("Failed to create directory", dir_path=dir_path, error=str(e))
        raise

def sniff_mime_type(image_bytes: bytes) -> Optional[str]:
    """Detect the MIME type of image bytes from their header, None if unknown."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            return FORMAT_MIME_TYPES.get(img.format or "")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.debug("Could not sniff MIME type", error=str(e))
        return None

def format_file_size(size_bytes: int) -> str:
    """Format file size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024 and i < len(size_names) - 1:
        size_bytes /= 1024.0
        i += 1

    return f"{size_bytes:.1f} {size_names[i]}"
