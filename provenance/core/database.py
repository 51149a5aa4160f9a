import structlog
from typing import List, Dict, Any, Optional
from psycopg2 import errors as pg_errors
from psycopg2 import extras
from psycopg2.pool import SimpleConnectionPool
from contextlib import contextmanager

from provenance import config
from provenance.core.errors import DuplicateFingerprintError, StorageError
from provenance.core.storage import RecordStore
from provenance.models.records import RegistrationRecord

logger = structlog.get_logger()

# Connection pool configuration
MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 10

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS registration_records (
    content_fingerprint VARCHAR(71) PRIMARY KEY,
    perceptual_hash CHAR(16) NOT NULL,
    registration_id TEXT NOT NULL,
    token_id TEXT NOT NULL,
    registered_at TIMESTAMPTZ NOT NULL,
    classifier_score DOUBLE PRECISION,
    owner TEXT,
    inserted_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_registration_records_registered_at
    ON registration_records (registered_at);
"""

class PostgresRecordStore(RecordStore):
    """Registration records in a Postgres table, one row per content fingerprint."""

    def __init__(self, dsn: Optional[str] = None, pool=None):
        self.dsn = dsn or config.DATABASE_DSN
        self._pool = pool

    def _get_pool(self):
        if self._pool is None:
            try:
                self._pool = SimpleConnectionPool(MIN_CONNECTIONS, MAX_CONNECTIONS, self.dsn)
                logger.info("Postgres connection pool initialized",
                            min_connections=MIN_CONNECTIONS,
                            max_connections=MAX_CONNECTIONS)
            except Exception as e:
                logger.error("Failed to initialize Postgres connection pool", error=str(e))
                raise StorageError(f"Database unavailable: {e}") from e
        return self._pool

    @contextmanager
    def get_db_connection(self):
        """Context manager for database connections with automatic cleanup."""
        pool = self._get_pool()
        conn = None
        try:
            conn = pool.getconn()
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error("Database operation failed", error=str(e))
            raise
        finally:
            if conn:
                pool.putconn(conn)

    def ensure_schema(self) -> None:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
                conn.commit()
        logger.info("Registration records schema ensured")

    def load_all(self) -> List[RegistrationRecord]:
        sql = """
        SELECT content_fingerprint, perceptual_hash, registration_id, token_id,
               registered_at, classifier_score, owner
        FROM registration_records
        ORDER BY inserted_at, registered_at
        """
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql)
                rows = cur.fetchall()

        records = [RegistrationRecord(**dict(row)) for row in rows]
        logger.info("Loaded registration records from database", records=len(records))
        return records

    def append(self, record: RegistrationRecord) -> None:
        sql = """
        INSERT INTO registration_records (
            content_fingerprint, perceptual_hash, registration_id, token_id,
            registered_at, classifier_score, owner
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        try:
            with self.get_db_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, (
                        record.content_fingerprint, record.perceptual_hash,
                        record.registration_id, record.token_id,
                        record.registered_at, record.classifier_score, record.owner
                    ))
                    conn.commit()
        except pg_errors.UniqueViolation:
            raise DuplicateFingerprintError(record.content_fingerprint)

        logger.debug("Registration record inserted",
                     content_fingerprint=record.content_fingerprint)

    def health_check(self) -> Dict[str, Any]:
        """Check if the database connection is working."""
        try:
            with self.get_db_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT COUNT(*) FROM registration_records")
                    count = cur.fetchone()[0]
            return {"backend": "postgres", "available": True, "records": count}
        except Exception as e:
            logger.error("Database connection check failed", error=str(e))
            return {"backend": "postgres", "available": False, "error": str(e)}
