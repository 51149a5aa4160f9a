"""
Exception taxonomy.

Input errors are reported to the caller and never retried. Dependency errors
are raised by ledger/oracle adapters and degraded by the services that call
them. Invariant violations are always surfaced.
"""

from typing import Optional

__all__ = [
    "ProvenanceError",
    "InputError",
    "EmptyInputError",
    "DecodeError",
    "LedgerError",
    "LedgerUnavailable",
    "LedgerRejected",
    "OracleUnavailable",
    "DuplicateFingerprintError",
    "LengthMismatchError",
    "AlreadyRegisteredError",
    "VerificationCancelled",
    "StorageError",
]


class ProvenanceError(Exception):
    """Base class for all provenance errors."""
    pass


# Input errors
class InputError(ProvenanceError, ValueError):
    """Uploaded data cannot be processed."""
    pass

class EmptyInputError(InputError):
    """Zero-length image data."""
    pass

class DecodeError(InputError):
    """Unsupported or corrupt image data."""
    pass


# Dependency errors
class LedgerError(ProvenanceError):
    pass

class LedgerUnavailable(LedgerError):
    """The ledger could not be reached or did not answer in time."""
    pass

class LedgerRejected(LedgerError):
    """The ledger refused a write."""

    def __init__(self, reason: str, duplicate: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.duplicate = duplicate

class OracleUnavailable(ProvenanceError):
    """The classification oracle failed, timed out or returned garbage."""
    pass


# Invariant violations
class DuplicateFingerprintError(ProvenanceError):
    """A record with this content fingerprint is already indexed."""

    def __init__(self, content_fingerprint: str):
        super().__init__(f"Fingerprint already indexed: {content_fingerprint}")
        self.content_fingerprint = content_fingerprint

class LengthMismatchError(ProvenanceError, ValueError):
    """Perceptual hashes are not both 64-bit values."""
    pass


class AlreadyRegisteredError(ProvenanceError):
    """The ledger already holds a registration for this content."""

    def __init__(self, content_fingerprint: str, reason: Optional[str] = None):
        super().__init__(reason or f"Content already registered: {content_fingerprint}")
        self.content_fingerprint = content_fingerprint

class VerificationCancelled(ProvenanceError):
    """The caller cancelled the verification between two stages."""
    pass

class StorageError(ProvenanceError):
    """Custom exception for record store operations."""
    pass
