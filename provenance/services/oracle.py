"""
AI-origin classification oracle adapters.

The oracle is the slowest and least deterministic signal in verification and
is only consulted once fingerprint checks are exhausted. Every failure mode
surfaces as ``OracleUnavailable``.
"""

import re
import structlog
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from provenance import config
from provenance.core.errors import OracleUnavailable
from provenance.models.records import OracleResult, OracleVerdict

logger = structlog.get_logger()

DEFAULT_CONFIDENCE = 0.7

ASSESSMENT_PROMPT = """You are a helpful digital content authenticity assistant helping people understand images.

Please examine this image and share your professional assessment:

1. ORIGIN ASSESSMENT: Based on visual characteristics, does this image appear to be a natural photograph taken with a camera, or does it appear to be computer-generated/digitally created artwork?

2. VISUAL OBSERVATIONS: What specific visual elements inform your assessment? Consider things like:
   - Texture patterns and surface details
   - Lighting consistency and shadow behavior
   - Geometric accuracy and perspective
   - Fine details in complex areas (hair, foliage, reflections)
   - Overall composition style

3. Provide your assessment using this exact format at the end:
   ASSESSMENT: CAMERA_PHOTO
   or
   ASSESSMENT: DIGITALLY_CREATED
   CONFIDENCE_LEVEL: [number from 0 to 100]

Please be thorough but concise in your analysis."""

_ASSESSMENT_RE = re.compile(r"ASSESSMENT:\s*(CAMERA_PHOTO|DIGITALLY_CREATED)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"CONFIDENCE_LEVEL:\s*(\d+)", re.IGNORECASE)
_EXPLANATION_SPLIT_RE = re.compile(r"ASSESSMENT:", re.IGNORECASE)

class Oracle:
    """Collaborator contract for the AI-origin classifier."""

    def classify(self, image_bytes: bytes, mime_type: Optional[str] = None) -> OracleResult:
        raise NotImplementedError

class StaticOracle(Oracle):
    """Returns a fixed result, or raises OracleUnavailable when given none."""

    def __init__(self, result: Optional[OracleResult] = None):
        self.result = result
        self.calls = 0

    def classify(self, image_bytes: bytes, mime_type: Optional[str] = None) -> OracleResult:
        self.calls += 1
        if self.result is None:
            raise OracleUnavailable("No oracle configured")
        return self.result

def image_format(mime_type: Optional[str]) -> str:
    """Map a MIME type onto one of the image formats the vision model accepts."""
    mime_type = (mime_type or "").lower()
    if 'jpeg' in mime_type or 'jpg' in mime_type:
        return 'jpeg'
    if 'gif' in mime_type:
        return 'gif'
    if 'webp' in mime_type:
        return 'webp'
    return 'png'

def parse_assessment(output_text: str) -> OracleResult:
    """
    Parse the model's free-text reply into a verdict.

    The reply ends with ``ASSESSMENT: CAMERA_PHOTO|DIGITALLY_CREATED`` and
    ``CONFIDENCE_LEVEL: 0-100``. A missing assessment means UNCERTAIN; a
    missing confidence defaults to 0.7. The explanation is the text before
    the assessment line.
    """
    verdict = OracleVerdict.UNCERTAIN
    assessment = _ASSESSMENT_RE.search(output_text)
    if assessment:
        if assessment.group(1).upper() == 'CAMERA_PHOTO':
            verdict = OracleVerdict.REAL
        else:
            verdict = OracleVerdict.AI_GENERATED

    confidence = DEFAULT_CONFIDENCE
    confidence_match = _CONFIDENCE_RE.search(output_text)
    if confidence_match:
        confidence = min(int(confidence_match.group(1)) / 100, 1.0)

    explanation = _EXPLANATION_SPLIT_RE.split(output_text)[0].strip()

    return OracleResult(
        verdict=verdict,
        confidence=confidence,
        explanation=explanation or output_text.strip(),
    )

class BedrockOracle(Oracle):
    """Vision-model oracle on AWS Bedrock through the Converse API."""

    def __init__(self, model_id: Optional[str] = None, region: Optional[str] = None,
                 timeout: Optional[float] = None, client: Any = None):
        self.model_id = model_id or config.ORACLE_MODEL_ID
        timeout = timeout if timeout is not None else config.ORACLE_TIMEOUT_SECONDS

        if client is None:
            client = boto3.client(
                "bedrock-runtime",
                region_name=region or config.AWS_REGION,
                config=BotoConfig(
                    connect_timeout=min(timeout, 10),
                    read_timeout=timeout,
                    retries={"max_attempts": 2},
                ),
            )
        self.client = client

        logger.info("Bedrock oracle initialized", model_id=self.model_id)

    def classify(self, image_bytes: bytes, mime_type: Optional[str] = None) -> OracleResult:
        fmt = image_format(mime_type)
        try:
            response = self.client.converse(
                modelId=self.model_id,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"image": {"format": fmt, "source": {"bytes": image_bytes}}},
                            {"text": ASSESSMENT_PROMPT},
                        ],
                    }
                ],
                inferenceConfig={"maxTokens": 1024, "temperature": 0.3, "topP": 0.9},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Bedrock classification failed", model_id=self.model_id, error=str(e))
            raise OracleUnavailable(f"Bedrock analysis failed: {e}") from e

        content = response.get("output", {}).get("message", {}).get("content", [])
        output_text = "".join(block.get("text", "") for block in content)
        if not output_text:
            raise OracleUnavailable("Bedrock returned an empty response")

        result = parse_assessment(output_text)
        logger.info("Bedrock classification completed",
                    model_id=self.model_id,
                    verdict=result.verdict.value,
                    confidence=result.confidence)
        return result
