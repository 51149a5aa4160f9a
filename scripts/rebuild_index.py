#!/usr/bin/env python3
"""
Rebuild the similarity index from the ledger.

The index is a derived cache; this replays every confirmed ledger write and
adds whatever the index is missing, e.g. after a crash between a ledger
write and the index update. Safe to run repeatedly.
"""

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

import structlog

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

def main() -> int:
    from provenance import config
    from provenance.core.index import SimilarityIndex
    from provenance.main import build_record_store
    from provenance.services.ledger import HttpLedgerClient
    from provenance.services.registration import RegistrationGate

    if not config.LEDGER_ENDPOINT:
        logger.error("LEDGER_ENDPOINT is required to rebuild the index")
        return 1

    index = SimilarityIndex.load(build_record_store())
    gate = RegistrationGate(index, HttpLedgerClient())
    before = len(index)

    try:
        added = gate.reconcile()
    except Exception as e:
        logger.error("Reconciliation failed", error=str(e))
        return 1

    logger.info("Index rebuilt", records_before=before, added=added, records_after=len(index),
                index_failures=gate.index_failures)
    return 0 if gate.index_failures == 0 else 2

if __name__ == "__main__":
    sys.exit(main())
