"""
Registration gate: at most one registration per content fingerprint.

The ledger's atomic duplicate check is the enforcement point. The local
pre-check and the per-fingerprint lock only keep concurrent uploads of the
same bytes from wasting ledger writes.
"""

import threading
import structlog
from contextlib import contextmanager
from typing import Dict, List, Optional

from provenance import config
from provenance.core.errors import (
    AlreadyRegisteredError,
    DuplicateFingerprintError,
    InputError,
    LedgerError,
    LedgerRejected,
)
from provenance.core.index import SimilarityIndex
from provenance.models.records import RegistrationRecord
from provenance.services.fingerprint import content_fingerprint, is_content_fingerprint
from provenance.services.image_hash import perceptual_hash
from provenance.services.ledger import Ledger

logger = structlog.get_logger()

class RegistrationGate:

    def __init__(self, index: SimilarityIndex, ledger: Ledger, hash_algorithm: Optional[str] = None):
        self.index = index
        self.ledger = ledger
        self.hash_algorithm = hash_algorithm or config.HASH_ALGORITHM
        self.index_failures = 0
        self._locks: Dict[str, List] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _fingerprint_lock(self, fingerprint: str):
        with self._locks_guard:
            entry = self._locks.get(fingerprint)
            if entry is None:
                entry = self._locks[fingerprint] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[fingerprint]

    def register(self, image_bytes: bytes, owner: Optional[str] = None,
                 classifier_score: Optional[float] = None) -> RegistrationRecord:
        """
        Register an image on the ledger and add it to the similarity index.

        Raises:
            InputError: classifier_score is outside [0, 1].
            EmptyInputError, DecodeError: The upload is not a usable image.
            AlreadyRegisteredError: The ledger already holds this fingerprint.
            LedgerRejected: The ledger refused the write for another reason.
            LedgerUnavailable: The ledger write could not be completed.
        """
        if classifier_score is not None and not 0.0 <= classifier_score <= 1.0:
            raise InputError(f"classifier_score must be between 0.0 and 1.0, got {classifier_score}")

        fingerprint = content_fingerprint(image_bytes)
        phash = perceptual_hash(image_bytes, self.hash_algorithm)

        with self._fingerprint_lock(fingerprint):
            try:
                already = self.ledger.is_registered(fingerprint)
            except LedgerError as e:
                # The write below is still rejected atomically on a duplicate
                logger.warning("Ledger pre-check failed, attempting write",
                               content_fingerprint=fingerprint, error=str(e))
                already = False

            if already:
                logger.info("Registration rejected, already registered", content_fingerprint=fingerprint)
                raise AlreadyRegisteredError(fingerprint)

            metadata = {"perceptual_hash": phash, "classifier_score": classifier_score}
            try:
                receipt = self.ledger.write(fingerprint, owner, metadata)
            except LedgerRejected as e:
                if e.duplicate:
                    logger.info("Ledger rejected duplicate write", content_fingerprint=fingerprint)
                    raise AlreadyRegisteredError(fingerprint, e.reason) from e
                logger.error("Ledger rejected write", content_fingerprint=fingerprint, reason=e.reason)
                raise

            record = RegistrationRecord(
                content_fingerprint=fingerprint,
                perceptual_hash=phash,
                registration_id=receipt.registration_id,
                token_id=receipt.token_id,
                registered_at=receipt.timestamp,
                classifier_score=classifier_score,
                owner=owner,
            )
            self._index_record(record)

        logger.info("Image registered",
                    content_fingerprint=fingerprint,
                    registration_id=record.registration_id,
                    token_id=record.token_id)
        return record

    def _index_record(self, record: RegistrationRecord) -> bool:
        """Insert into the index; failures are recorded but never undo the ledger write."""
        try:
            self.index.insert(record)
            return True
        except DuplicateFingerprintError:
            logger.warning("Record already indexed", content_fingerprint=record.content_fingerprint)
            return False
        except Exception as e:
            self.index_failures += 1
            logger.error("Index update failed after ledger write, reconcile to repair",
                         content_fingerprint=record.content_fingerprint,
                         index_failures=self.index_failures,
                         error=str(e))
            return False

    def reconcile(self) -> int:
        """
        Replay confirmed ledger writes into the index.

        Idempotent: entries already indexed are skipped. Returns the number
        of records added.
        """
        added = 0
        skipped = 0
        for entry in self.ledger.confirmed_writes():
            fingerprint = entry.content_fingerprint
            if fingerprint in self.index:
                continue

            phash = entry.metadata.get("perceptual_hash")
            if not is_content_fingerprint(fingerprint) or not phash:
                skipped += 1
                logger.warning("Ledger entry cannot be indexed",
                               content_fingerprint=fingerprint, token_id=entry.receipt.token_id)
                continue

            try:
                record = RegistrationRecord(
                    content_fingerprint=fingerprint,
                    perceptual_hash=phash,
                    registration_id=entry.receipt.registration_id,
                    token_id=entry.receipt.token_id,
                    registered_at=entry.receipt.timestamp,
                    classifier_score=entry.metadata.get("classifier_score"),
                    owner=entry.owner,
                )
            except ValueError as e:
                skipped += 1
                logger.warning("Ledger entry has invalid metadata",
                               content_fingerprint=fingerprint, error=str(e))
                continue
            if self._index_record(record):
                added += 1

        logger.info("Index reconciliation completed", added=added, skipped=skipped, total=len(self.index))
        return added
