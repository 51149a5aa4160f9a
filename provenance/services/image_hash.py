"""
Perceptual image hashing for near-duplicate detection.

A perceptual hash is a lossy 64-bit sketch of what an image looks like. It is
tolerant to resampling and re-encoding and must only ever be compared by
distance, never used as an identity key.
"""

import io
import re
import numpy as np
import structlog
from PIL import Image, UnidentifiedImageError
from typing import Callable, Dict, Optional
import cv2

from provenance import config
from provenance.core.errors import DecodeError, EmptyInputError, LengthMismatchError

__all__ = [
    "HASH_BITS",
    "HASH_ALGORITHMS",
    "dhash",
    "phash",
    "perceptual_hash",
    "is_perceptual_hash",
    "hamming_distance",
    "similarity",
]

logger = structlog.get_logger()

HASH_BITS = 64
HASH_HEX_LENGTH = HASH_BITS // 4

_HASH_RE = re.compile(rf"[0-9a-fA-F]{{{HASH_HEX_LENGTH}}}")

def _load_luminance(image_bytes: bytes) -> Image.Image:
    """Decode image bytes into a single-channel luminance image."""
    if not image_bytes:
        raise EmptyInputError("Cannot hash empty image data")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        return image.convert('L')
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        logger.warning("Failed to decode image", size=len(image_bytes), error=str(e))
        raise DecodeError(f"Unsupported or corrupt image data: {e}") from e

def _bits_to_hex(bits: np.ndarray) -> str:
    hash_bits = ''.join('1' if b else '0' for b in bits.flatten())
    return format(int(hash_bits, 2), f"0{len(hash_bits) // 4}x")

def dhash(image_bytes: bytes, hash_size: int = 8) -> str:
    """
    Generate difference hash (dHash) for an image.

    The image is squashed to (hash_size + 1) x hash_size with an area filter,
    aspect ratio discarded. A bit is set when a pixel is brighter than its
    right-hand neighbour, giving hash_size bits per row, row-major.
    """
    image = _load_luminance(image_bytes)

    # Resize to hash_size + 1 x hash_size
    image = image.resize((hash_size + 1, hash_size), Image.Resampling.BOX)

    pixels = np.asarray(image, dtype=np.int16)

    # Calculate horizontal gradient
    diff = pixels[:, :-1] > pixels[:, 1:]

    hash_hex = _bits_to_hex(diff)
    logger.debug("Generated dHash", hash=hash_hex, hash_size=hash_size)
    return hash_hex

def phash(image_bytes: bytes, hash_size: int = 8) -> str:
    """
    Generate perceptual hash (pHash) using DCT.
    More resistant to small crops and tonal edits than dHash, at a higher cost.
    """
    image = _load_luminance(image_bytes)

    # Resize to hash_size * 4 for better DCT
    image = image.resize((hash_size * 4, hash_size * 4), Image.Resampling.LANCZOS)

    pixels = np.asarray(image, dtype=np.float32)

    # Apply DCT (Discrete Cosine Transform)
    dct = cv2.dct(pixels)

    # Extract top-left hash_size x hash_size corner (low frequencies)
    dct_low = dct[:hash_size, :hash_size]

    median = np.median(dct_low)

    hash_hex = _bits_to_hex(dct_low > median)
    logger.debug("Generated pHash", hash=hash_hex, hash_size=hash_size)
    return hash_hex

HASH_ALGORITHMS: Dict[str, Callable[[bytes], str]] = {
    'dhash': dhash,
    'phash': phash,
}

def perceptual_hash(image_bytes: bytes, algorithm: Optional[str] = None) -> str:
    """Compute the 64-bit perceptual hash with the configured algorithm."""
    algorithm = algorithm or config.HASH_ALGORITHM
    try:
        hash_fn = HASH_ALGORITHMS[algorithm]
    except KeyError:
        raise ValueError(f"Unknown perceptual hash algorithm: {algorithm}")
    return hash_fn(image_bytes)

def is_perceptual_hash(value) -> bool:
    """True for exactly 16 hex digits: no sign, prefix, separators or whitespace."""
    return isinstance(value, str) and _HASH_RE.fullmatch(value) is not None

def _hash_to_int(value: str) -> int:
    if not is_perceptual_hash(value):
        raise LengthMismatchError(f"Expected a {HASH_BITS}-bit hex hash, got {value!r}")
    return int(value, 16)

def hamming_distance(hash1: str, hash2: str) -> int:
    """Count the differing bits between two 64-bit perceptual hashes."""
    return bin(_hash_to_int(hash1) ^ _hash_to_int(hash2)).count('1')

def similarity(hash1: str, hash2: str) -> float:
    """Similarity in [0, 1]; 1.0 means identical hashes."""
    return 1.0 - hamming_distance(hash1, hash2) / HASH_BITS
