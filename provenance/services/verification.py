"""
Verification decision pipeline.

Single pass, terminal on the first confident branch:

    exact fingerprint on the ledger -> perceptual similarity in the index
    -> oracle classification -> unverified

Dependency failures degrade the outcome instead of raising. Only input errors
(empty or undecodable images) and caller cancellation reach the caller.
"""

import threading
import structlog
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Optional

from provenance import config
from provenance.core.errors import LedgerUnavailable, OracleUnavailable, VerificationCancelled
from provenance.core.index import SimilarityIndex
from provenance.core.utils import sniff_mime_type
from provenance.models.records import OracleResult, OracleVerdict
from provenance.models.verification import VerificationOutcome, VerificationStatus
from provenance.services.fingerprint import content_fingerprint
from provenance.services.image_hash import perceptual_hash
from provenance.services.ledger import Ledger
from provenance.services.oracle import Oracle

logger = structlog.get_logger()

class VerificationPipeline:

    def __init__(
        self,
        index: SimilarityIndex,
        ledger: Optional[Ledger],
        oracle: Optional[Oracle],
        threshold: Optional[float] = None,
        oracle_timeout: Optional[float] = None,
        ledger_timeout: Optional[float] = None,
        hash_algorithm: Optional[str] = None,
        dependency_workers: Optional[int] = None,
    ):
        self.index = index
        self.ledger = ledger
        self.oracle = oracle
        self.threshold = threshold if threshold is not None else config.SIMILARITY_THRESHOLD
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError("Similarity threshold must be between 0.0 and 1.0")
        self.oracle_timeout = oracle_timeout if oracle_timeout is not None else config.ORACLE_TIMEOUT_SECONDS
        self.ledger_timeout = ledger_timeout if ledger_timeout is not None else config.LEDGER_TIMEOUT_SECONDS
        self.hash_algorithm = hash_algorithm or config.HASH_ALGORITHM

        workers = dependency_workers or config.DEPENDENCY_WORKERS

        self._hash_pool = ThreadPoolExecutor(max_workers=config.HASH_WORKERS, thread_name_prefix="verify-hash")
        # One pool per dependency: a hung oracle must not starve ledger lookups
        self._ledger_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verify-ledger")
        self._oracle_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verify-oracle")
        # Timed-out calls keep their thread; when every slot is held, fail fast instead of queueing
        self._ledger_slots = threading.BoundedSemaphore(workers)
        self._oracle_slots = threading.BoundedSemaphore(workers)

    def close(self):
        self._hash_pool.shutdown(wait=False)
        self._ledger_pool.shutdown(wait=False)
        self._oracle_pool.shutdown(wait=False)

    def verify(self, image_bytes: bytes, mime_type: Optional[str] = None,
               cancel_event: Optional[threading.Event] = None) -> VerificationOutcome:
        """
        Run the decision cascade for one uploaded image.

        Raises:
            EmptyInputError, DecodeError: The upload is not a usable image.
            VerificationCancelled: ``cancel_event`` was set between stages.
        """
        fp_future = self._hash_pool.submit(content_fingerprint, image_bytes)
        ph_future = self._hash_pool.submit(perceptual_hash, image_bytes, self.hash_algorithm)
        fingerprint = fp_future.result()
        phash = ph_future.result()
        degraded = False

        logger.info("Verifying image", content_fingerprint=fingerprint, perceptual_hash=phash)

        # Stage 1: exact match on the ledger
        self._check_cancelled(cancel_event, "exact")
        registered = False
        try:
            registered = self._call_ledger(fingerprint)
        except Exception as e:
            degraded = True
            logger.warning("Ledger lookup failed, assuming unregistered",
                           content_fingerprint=fingerprint, error=str(e) or type(e).__name__)

        if registered:
            record = self.index.lookup_exact(fingerprint)
            confidence = record.classifier_score if record else None
            logger.info("Exact match", content_fingerprint=fingerprint, indexed=record is not None)
            return VerificationOutcome(
                status=VerificationStatus.EXACT_MATCH,
                confidence=confidence,
                record=record,
                content_fingerprint=fingerprint,
                perceptual_hash=phash,
                degraded=degraded,
                message="This exact image is registered on the provenance ledger.",
            )

        # Stage 2: perceptual similarity against the index
        self._check_cancelled(cancel_event, "similarity")
        nearest = self.index.lookup_nearest(phash)
        if nearest is not None:
            record, score = nearest
            if score > self.threshold:
                logger.info("Similar match",
                            content_fingerprint=fingerprint,
                            token_id=record.token_id,
                            similarity=score,
                            threshold=self.threshold)
                return VerificationOutcome(
                    status=VerificationStatus.SIMILAR_MATCH,
                    confidence=score,
                    record=record,
                    content_fingerprint=fingerprint,
                    perceptual_hash=phash,
                    degraded=degraded,
                    message=(
                        f"Potential derivative detected! This image is {score * 100:.1f}% visually "
                        f"similar to registered token {record.token_id}."
                    ),
                )

        # Stage 3: oracle classification
        self._check_cancelled(cancel_event, "oracle")
        try:
            result = self._call_oracle(image_bytes, mime_type or sniff_mime_type(image_bytes))
        except Exception as e:
            logger.warning("Oracle unavailable, returning unverified",
                           content_fingerprint=fingerprint, error=str(e) or type(e).__name__)
            return VerificationOutcome(
                status=VerificationStatus.UNVERIFIED_NO_ORACLE,
                confidence=None,
                content_fingerprint=fingerprint,
                perceptual_hash=phash,
                degraded=True,
                message=(
                    "Warning: This image has no provenance record and AI analysis "
                    "is currently unavailable."
                ),
            )

        return self._oracle_outcome(result, fingerprint, phash, degraded)

    def _oracle_outcome(self, result: OracleResult, fingerprint: str, phash: str,
                        degraded: bool) -> VerificationOutcome:
        if result.verdict == OracleVerdict.AI_GENERATED:
            status = VerificationStatus.ORACLE_AI_GENERATED
            confidence = result.confidence
            message = (
                f"AI analysis indicates this image is AI-generated ({result.confidence * 100:.0f}% "
                "confidence), though it does not match any registered original."
            )
        elif result.verdict == OracleVerdict.REAL:
            status = VerificationStatus.ORACLE_LIKELY_REAL
            confidence = 1.0 - result.confidence
            message = (
                f"AI analysis suggests this image is likely a real photograph ({result.confidence * 100:.0f}% "
                "confidence). No provenance record found."
            )
        else:
            status = VerificationStatus.ORACLE_INCONCLUSIVE
            confidence = 0.5
            message = (
                "AI analysis was inconclusive. The image has no provenance record and the "
                "model could not determine its origin with high confidence."
            )

        logger.info("Oracle verdict",
                    content_fingerprint=fingerprint,
                    verdict=result.verdict.value,
                    status=status.value,
                    confidence=confidence)
        return VerificationOutcome(
            status=status,
            confidence=confidence,
            content_fingerprint=fingerprint,
            perceptual_hash=phash,
            explanation=result.explanation or None,
            degraded=degraded,
            message=message,
        )

    def _call_ledger(self, fingerprint: str) -> bool:
        if self.ledger is None:
            return False
        if not self._ledger_slots.acquire(blocking=False):
            raise LedgerUnavailable("All ledger workers are busy")
        future = self._submit(self._ledger_pool, self._ledger_slots, self.ledger.is_registered, fingerprint)
        try:
            return bool(future.result(timeout=self.ledger_timeout))
        except FutureTimeoutError:
            future.cancel()
            raise

    def _call_oracle(self, image_bytes: bytes, mime_type: Optional[str]) -> OracleResult:
        if self.oracle is None:
            raise RuntimeError("No oracle configured")
        if not self._oracle_slots.acquire(blocking=False):
            raise OracleUnavailable("All oracle workers are busy")
        future = self._submit(self._oracle_pool, self._oracle_slots, self.oracle.classify, image_bytes, mime_type)
        try:
            return future.result(timeout=self.oracle_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise

    @staticmethod
    def _submit(pool: ThreadPoolExecutor, slots: threading.BoundedSemaphore, fn, *args):
        """Submit a call holding an acquired slot; the slot is released when the call finishes."""
        try:
            future = pool.submit(fn, *args)
        except Exception:
            slots.release()
            raise
        future.add_done_callback(lambda _: slots.release())
        return future

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], stage: str):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Verification cancelled", stage=stage)
            raise VerificationCancelled(f"Verification cancelled before {stage} stage")
