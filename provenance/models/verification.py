"""
Pydantic models for verification outcomes and API responses.
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum

from .records import RegistrationRecord

class VerificationStatus(str, Enum):
    """Enumeration of verification outcomes."""
    EXACT_MATCH = "EXACT_MATCH"
    SIMILAR_MATCH = "SIMILAR_MATCH"
    ORACLE_AI_GENERATED = "ORACLE_AI_GENERATED"
    ORACLE_LIKELY_REAL = "ORACLE_LIKELY_REAL"
    ORACLE_INCONCLUSIVE = "ORACLE_INCONCLUSIVE"
    UNVERIFIED_NO_ORACLE = "UNVERIFIED_NO_ORACLE"

class VerificationOutcome(BaseModel):
    """Result of one verification request. Never persisted."""
    status: VerificationStatus = Field(..., description="Terminal state of the decision cascade")
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0, description="None when undefined")
    record: Optional[RegistrationRecord] = Field(None, description="Matching registration, if any")
    content_fingerprint: str = Field(..., description="Fingerprint of the verified bytes")
    perceptual_hash: str = Field(..., description="Perceptual hash of the verified image")
    explanation: Optional[str] = Field(None, description="Oracle explanation, if consulted")
    degraded: bool = Field(default=False, description="A dependency failed during verification")
    message: str = Field(..., description="Human-readable message")

class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    version: str = Field(..., description="API version")
    components: Dict[str, Any] = Field(..., description="Component health status")
