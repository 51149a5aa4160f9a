"""
Ledger adapters.

The ledger is the source of truth for registrations: it must reject a second
write for the same content fingerprint atomically. Adapters raise
``LedgerUnavailable`` when they cannot get an answer and ``LedgerRejected``
when the ledger refuses a write.
"""

import itertools
import threading
import structlog
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from provenance import config
from provenance.core.errors import LedgerRejected, LedgerUnavailable
from provenance.core.utils import new_registration_id, utc_now
from provenance.models.records import LedgerEntry, LedgerReceipt

logger = structlog.get_logger()

class Ledger:
    """Collaborator contract for the registration ledger."""

    def is_registered(self, content_fingerprint: str) -> bool:
        raise NotImplementedError

    def write(self, content_fingerprint: str, owner: Optional[str] = None,
              metadata: Optional[Dict[str, Any]] = None) -> LedgerReceipt:
        raise NotImplementedError

    def confirmed_writes(self) -> Iterable[LedgerEntry]:
        """Every confirmed write, oldest first, for rebuilding the index."""
        raise NotImplementedError

class InMemoryLedger(Ledger):
    """Process-local ledger with an atomic duplicate check. Used for development and tests."""

    def __init__(self):
        self._entries: Dict[str, LedgerEntry] = {}
        self._lock = threading.Lock()
        self._token_counter = itertools.count(1)
        self.write_attempts = 0

    def is_registered(self, content_fingerprint: str) -> bool:
        with self._lock:
            return content_fingerprint in self._entries

    def write(self, content_fingerprint: str, owner: Optional[str] = None,
              metadata: Optional[Dict[str, Any]] = None) -> LedgerReceipt:
        with self._lock:
            self.write_attempts += 1
            if content_fingerprint in self._entries:
                raise LedgerRejected("fingerprint already registered", duplicate=True)

            receipt = LedgerReceipt(
                registration_id=new_registration_id(),
                token_id=f"token_{next(self._token_counter)}",
                timestamp=utc_now(),
            )
            self._entries[content_fingerprint] = LedgerEntry(
                content_fingerprint=content_fingerprint,
                owner=owner,
                receipt=receipt,
                metadata=dict(metadata or {}),
            )

        logger.info("Ledger write confirmed",
                    content_fingerprint=content_fingerprint, token_id=receipt.token_id)
        return receipt

    def confirmed_writes(self) -> List[LedgerEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.receipt.timestamp)

class HttpLedgerClient(Ledger):
    """
    Client for a ledger gateway exposing registrations over HTTP.

    Endpoints:
        GET  /registrations/{fingerprint}  -> {"registered": bool}
        POST /registrations                -> 201 {"registration_id", "token_id", "timestamp"}
                                              409 when the fingerprint is taken
        GET  /registrations                -> [{"content_fingerprint", "owner", "receipt", "metadata"}]
    """

    def __init__(self, endpoint: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.endpoint = (endpoint or config.LEDGER_ENDPOINT).rstrip('/')
        if not self.endpoint:
            raise ValueError("Ledger endpoint is not configured")
        self.timeout = timeout if timeout is not None else config.LEDGER_TIMEOUT_SECONDS
        self.session = session or self._build_session()
        api_key = api_key if api_key is not None else config.LEDGER_API_KEY
        if api_key:
            self.session.headers['Authorization'] = f"Bearer {api_key}"

        logger.info("Ledger HTTP client initialized", endpoint=self.endpoint)

    @staticmethod
    def _build_session() -> requests.Session:
        """HTTP session with retry logic for idempotent reads."""
        session = requests.Session()

        # POST is not retried: a duplicate write is rejected by the ledger anyway
        retry_strategy = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.endpoint}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error("Ledger request failed", method=method, url=url, error=str(e))
            raise LedgerUnavailable(f"Ledger request failed: {e}") from e

        if response.status_code >= 500:
            logger.error("Ledger server error", method=method, url=url, status_code=response.status_code)
            raise LedgerUnavailable(f"Ledger returned HTTP {response.status_code}")
        return response

    def is_registered(self, content_fingerprint: str) -> bool:
        response = self._request("GET", f"/registrations/{content_fingerprint}")
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise LedgerUnavailable(f"Unexpected ledger status {response.status_code}")
        return bool(response.json().get("registered", False))

    def write(self, content_fingerprint: str, owner: Optional[str] = None,
              metadata: Optional[Dict[str, Any]] = None) -> LedgerReceipt:
        payload = {
            "content_fingerprint": content_fingerprint,
            "owner": owner,
            "metadata": metadata or {},
        }
        response = self._request("POST", "/registrations", json=payload)

        if response.status_code == 409:
            raise LedgerRejected(self._reason(response) or "fingerprint already registered", duplicate=True)
        if response.status_code >= 400:
            raise LedgerRejected(self._reason(response) or f"HTTP {response.status_code}")

        receipt = LedgerReceipt(**response.json())
        logger.info("Ledger write confirmed",
                    content_fingerprint=content_fingerprint,
                    registration_id=receipt.registration_id,
                    token_id=receipt.token_id)
        return receipt

    def confirmed_writes(self) -> List[LedgerEntry]:
        response = self._request("GET", "/registrations")
        if response.status_code != 200:
            raise LedgerUnavailable(f"Unexpected ledger status {response.status_code}")
        return [LedgerEntry(**item) for item in response.json()]

    @staticmethod
    def _reason(response: requests.Response) -> Optional[str]:
        try:
            return response.json().get("reason")
        except ValueError:
            return response.text or None
