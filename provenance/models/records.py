"""
Pydantic models for registrations and collaborator payloads.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum

_PERCEPTUAL_HASH_RE = re.compile(r"[0-9a-fA-F]{16}")

def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC so all registration times compare
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

class RegistrationRecord(BaseModel):
    """An image registered on the ledger. Created once, never mutated."""
    content_fingerprint: str = Field(..., description="sha256_ digest of the image bytes")
    perceptual_hash: str = Field(..., min_length=16, max_length=16, description="64-bit perceptual hash as hex")
    registration_id: str = Field(..., description="Ledger transaction handle")
    token_id: str = Field(..., description="Ledger token identifier")
    registered_at: datetime = Field(..., description="Ledger confirmation time, timezone-aware")
    classifier_score: Optional[float] = Field(None, ge=0.0, le=1.0, description="AI-origin score at registration")
    owner: Optional[str] = Field(None, description="Owner identifier passed to the ledger")

    class Config:
        frozen = True

    @field_validator('perceptual_hash')
    @classmethod
    def validate_perceptual_hash(cls, v):
        if not _PERCEPTUAL_HASH_RE.fullmatch(v):
            raise ValueError("perceptual_hash must be exactly 16 hex digits")
        return v.lower()

    @field_validator('registered_at')
    @classmethod
    def validate_registered_at(cls, v):
        return _as_utc(v)

class LedgerReceipt(BaseModel):
    """Confirmation returned by a successful ledger write."""
    registration_id: str
    token_id: str
    timestamp: datetime

    @field_validator('timestamp')
    @classmethod
    def validate_timestamp(cls, v):
        return _as_utc(v)

class LedgerEntry(BaseModel):
    """A confirmed ledger write, as replayed during index reconciliation."""
    content_fingerprint: str
    owner: Optional[str] = None
    receipt: LedgerReceipt
    metadata: Dict[str, Any] = Field(default_factory=dict)

class OracleVerdict(str, Enum):
    """Enumeration of oracle verdicts."""
    REAL = "REAL"
    AI_GENERATED = "AI_GENERATED"
    UNCERTAIN = "UNCERTAIN"

class OracleResult(BaseModel):
    """Classification returned by the AI-origin oracle."""
    verdict: OracleVerdict
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str = ""
