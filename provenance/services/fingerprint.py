"""
Content fingerprinting for exact-match lookup.

The fingerprint is a SHA-256 digest over the raw image bytes, tagged with the
algorithm name so stored values can be migrated later. Nothing but the bytes
goes into it: filename, MIME type and upload time are irrelevant.
"""

import hashlib
import re
import structlog

from provenance.core.errors import EmptyInputError

__all__ = ["FINGERPRINT_PREFIX", "content_fingerprint", "is_content_fingerprint"]

logger = structlog.get_logger()

FINGERPRINT_ALGORITHM = "sha256"
FINGERPRINT_PREFIX = f"{FINGERPRINT_ALGORITHM}_"

_FINGERPRINT_RE = re.compile(r"^sha256_[0-9a-f]{64}$")

def content_fingerprint(image_bytes: bytes) -> str:
    """
    Compute the content fingerprint of raw image bytes.

    Returns:
        ``sha256_`` followed by 64 lowercase hex characters.

    Raises:
        EmptyInputError: If ``image_bytes`` is zero-length.
    """
    if not image_bytes:
        raise EmptyInputError("Cannot fingerprint empty image data")

    hash_obj = hashlib.new(FINGERPRINT_ALGORITHM)
    hash_obj.update(image_bytes)
    fingerprint = FINGERPRINT_PREFIX + hash_obj.hexdigest()

    logger.debug("Calculated content fingerprint", fingerprint=fingerprint, size=len(image_bytes))
    return fingerprint

def is_content_fingerprint(value) -> bool:
    """Check that ``value`` is a well-formed content fingerprint."""
    return isinstance(value, str) and bool(_FINGERPRINT_RE.match(value))
