#!/usr/bin/env python3
"""
Database initialization script for Image Provenance
Creates the registration_records table used by the Postgres index backend
"""

import sys
from pathlib import Path

# Add the parent directory to Python path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

import structlog

# Configure basic logging for the script
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

def initialize_database(dsn=None) -> bool:
    """Create the schema and report the current row count."""
    from provenance.core.database import PostgresRecordStore

    store = PostgresRecordStore(dsn)
    try:
        store.ensure_schema()
        health = store.health_check()
        if not health.get("available"):
            logger.error("Database check failed after schema creation", error=health.get("error"))
            return False

        logger.info("Database initialization completed", records=health.get("records"))
        return True

    except Exception as e:
        logger.error("Database initialization failed", error=str(e))
        logger.info("Check your DATABASE_DSN, that the database exists and that the user may create tables")
        return False

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize Image Provenance database")
    parser.add_argument("--dsn", help="Postgres DSN (defaults to DATABASE_DSN)")
    args = parser.parse_args()

    sys.exit(0 if initialize_database(args.dsn) else 1)
