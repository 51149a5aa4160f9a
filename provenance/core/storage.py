import os
import threading
import structlog
from pathlib import Path
from typing import List, Dict, Any

from pydantic import ValidationError

from provenance.core.errors import StorageError
from provenance.core.utils import ensure_dir_exists, format_file_size
from provenance.models.records import RegistrationRecord

logger = structlog.get_logger()

class RecordStore:
    """Durable backing for the similarity index, keyed by content fingerprint."""

    def load_all(self) -> List[RegistrationRecord]:
        raise NotImplementedError

    def append(self, record: RegistrationRecord) -> None:
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__, "available": True}

class MemoryRecordStore(RecordStore):
    """Process-local store; records are lost on restart."""

    def __init__(self):
        self._records: List[RegistrationRecord] = []
        self._lock = threading.Lock()

    def load_all(self) -> List[RegistrationRecord]:
        with self._lock:
            return list(self._records)

    def append(self, record: RegistrationRecord) -> None:
        with self._lock:
            self._records.append(record)

class JsonRecordStore(RecordStore):
    """
    Append-only JSON-lines file, one registration record per line.

    Every append is flushed and fsynced before returning so a record the
    index has published is always on disk.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()
        ensure_dir_exists(str(self.path.parent))

    def load_all(self) -> List[RegistrationRecord]:
        if not self.path.exists():
            logger.info("Index file not found, starting empty", path=str(self.path))
            return []

        records = []
        skipped = 0
        with self._lock, open(self.path, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(RegistrationRecord.model_validate_json(line))
                except (ValidationError, ValueError) as e:
                    skipped += 1
                    logger.warning("Skipping corrupt index line",
                                   path=str(self.path), line_no=line_no, error=str(e))

        logger.info("Loaded index file",
                    path=str(self.path),
                    records=len(records),
                    skipped=skipped,
                    file_size_human=format_file_size(self.path.stat().st_size))
        return records

    def append(self, record: RegistrationRecord) -> None:
        line = record.model_dump_json() + "\n"
        try:
            with self._lock, open(self.path, 'a', encoding='utf-8') as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error("Failed to append index record",
                         path=str(self.path),
                         content_fingerprint=record.content_fingerprint,
                         error=str(e))
            raise StorageError(f"Failed to write index file {self.path}: {e}") from e

        logger.debug("Index record appended",
                     path=str(self.path), content_fingerprint=record.content_fingerprint)

    def health_check(self) -> Dict[str, Any]:
        writable = os.access(self.path if self.path.exists() else self.path.parent, os.W_OK)
        return {
            "backend": "json",
            "path": str(self.path),
            "available": writable,
        }
