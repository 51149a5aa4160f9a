"""
In-memory similarity index over registered images.

The index is a derived cache of the ledger: it can always be rebuilt by
replaying confirmed ledger writes. Reads work on an immutable snapshot that
writers replace wholesale, so lookups never block and always see a
consistent view.
"""

import threading
import structlog
from typing import Dict, Iterable, NamedTuple, Optional, Tuple

from provenance.core.errors import DuplicateFingerprintError
from provenance.core.storage import MemoryRecordStore, RecordStore
from provenance.models.records import RegistrationRecord
from provenance.services.image_hash import similarity

logger = structlog.get_logger()

class _Snapshot(NamedTuple):
    records: Tuple[RegistrationRecord, ...]
    by_fingerprint: Dict[str, RegistrationRecord]

class SimilarityIndex:
    """Append-only index: content fingerprint -> record, scanned by perceptual hash."""

    def __init__(self, store: Optional[RecordStore] = None):
        self.store = store if store is not None else MemoryRecordStore()
        self._write_lock = threading.Lock()
        self._snapshot = _Snapshot((), {})

    @classmethod
    def load(cls, store: RecordStore) -> "SimilarityIndex":
        """Build an index from everything the store holds (load-at-startup)."""
        index = cls(store)
        index.rebuild(store.load_all())
        logger.info("Similarity index loaded", records=len(index))
        return index

    def rebuild(self, records: Iterable[RegistrationRecord]) -> int:
        """
        Replace the published snapshot with ``records`` without writing to the store.

        Later rows with an already-seen fingerprint are dropped. Returns the
        number of records kept.
        """
        kept = []
        by_fingerprint = {}
        for record in records:
            if record.content_fingerprint in by_fingerprint:
                logger.warning("Duplicate fingerprint while rebuilding index, keeping first",
                               content_fingerprint=record.content_fingerprint)
                continue
            by_fingerprint[record.content_fingerprint] = record
            kept.append(record)

        with self._write_lock:
            self._snapshot = _Snapshot(tuple(kept), by_fingerprint)
        return len(kept)

    def __len__(self) -> int:
        return len(self._snapshot.records)

    def __contains__(self, content_fingerprint: str) -> bool:
        return content_fingerprint in self._snapshot.by_fingerprint

    def records(self) -> Tuple[RegistrationRecord, ...]:
        """All records in insertion order."""
        return self._snapshot.records

    def insert(self, record: RegistrationRecord) -> None:
        """
        Persist and publish a new record.

        Raises:
            DuplicateFingerprintError: If the fingerprint is already indexed.
        """
        with self._write_lock:
            snapshot = self._snapshot
            if record.content_fingerprint in snapshot.by_fingerprint:
                raise DuplicateFingerprintError(record.content_fingerprint)

            # Flush before publishing so readers never see an unpersisted record
            self.store.append(record)

            by_fingerprint = dict(snapshot.by_fingerprint)
            by_fingerprint[record.content_fingerprint] = record
            self._snapshot = _Snapshot(snapshot.records + (record,), by_fingerprint)

        logger.info("Record indexed",
                    content_fingerprint=record.content_fingerprint,
                    perceptual_hash=record.perceptual_hash,
                    token_id=record.token_id)

    def lookup_exact(self, content_fingerprint: str) -> Optional[RegistrationRecord]:
        return self._snapshot.by_fingerprint.get(content_fingerprint)

    def lookup_nearest(self, perceptual_hash: str) -> Optional[Tuple[RegistrationRecord, float]]:
        """
        Find the record whose perceptual hash is most similar to ``perceptual_hash``.

        Ties are broken by earliest ``registered_at``. Returns None when the
        index is empty.
        """
        return nearest(self._snapshot.records, perceptual_hash)

def nearest(records: Iterable[RegistrationRecord], perceptual_hash: str) -> Optional[Tuple[RegistrationRecord, float]]:
    best_record = None
    best_score = -1.0
    for record in records:
        score = similarity(perceptual_hash, record.perceptual_hash)
        if score > best_score or (
            score == best_score and record.registered_at < best_record.registered_at
        ):
            best_record = record
            best_score = score

    if best_record is None:
        return None

    logger.debug("Nearest record found",
                 perceptual_hash=perceptual_hash,
                 token_id=best_record.token_id,
                 similarity=best_score)
    return best_record, best_score
