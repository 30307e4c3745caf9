"""DNS record stores.

`RecordStore` holds the create/delete algorithm shared by every backend:
fetch the current record set first, then submit at most one change and wait
for it to be applied. Backends only provide the list/submit/status primitives.
"""

from __future__ import annotations

import logging
import threading
import time
import zlib
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import google.auth
import google.auth.exceptions
import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gke_private_dns.models import RECORD_TYPE, DNSRecordSet

logger = logging.getLogger(__name__)

CLOUD_DNS_API = "https://dns.googleapis.com/dns/v1"
CLOUD_DNS_SCOPE = "https://www.googleapis.com/auth/ndev.clouddns.readwrite"
METADATA_PROJECT_URL = "http://metadata.google.internal/computeMetadata/v1/project/project-id"

CHANGE_DONE = "done"
LOCK_STRIPES = 64

# =============================================================================
# Errors
# =============================================================================


class RecordStoreError(Exception):
    """Base class for record store failures."""


class RetryableError(RecordStoreError):
    """Transient failure; the operation can be attempted again."""


class PermanentError(RecordStoreError):
    """Failure that will not go away by retrying (auth, validation)."""


class ChangeOutcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


# =============================================================================
# Record Store Interface
# =============================================================================


class RecordStore(ABC):
    """Abstract base class for DNS zones holding one A record set per name."""

    def __init__(
        self,
        *,
        change_poll_interval: float = 1.0,
        change_timeout: float = 120.0,
        stop_event: Optional[threading.Event] = None,
    ):
        self._change_poll_interval = change_poll_interval
        self._change_timeout = change_timeout
        self._stop = stop_event or threading.Event()
        # fetch-then-mutate for one name must not interleave across threads
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the store name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the zone."""
        pass

    @abstractmethod
    def list_records(
        self, name: Optional[str] = None, record_type: Optional[str] = RECORD_TYPE
    ) -> List[DNSRecordSet]:
        """List record sets, optionally filtered by exact name and type."""
        pass

    @abstractmethod
    def submit_change(
        self, additions: List[DNSRecordSet], deletions: List[DNSRecordSet]
    ) -> Tuple[str, str]:
        """Submit a single atomic change. Returns (change_id, status)."""
        pass

    @abstractmethod
    def get_change_status(self, change_id: str) -> str:
        pass

    def get_record(self, name: str) -> Optional[DNSRecordSet]:
        for record in self.list_records(name=name):
            if record.name == name:
                return record
        return None

    def create(self, name: str, ip: str) -> ChangeOutcome:
        """Make `name` resolve to `ip`, replacing a record with another address."""
        with self._lock_for(name):
            record = DNSRecordSet(name=name, ip=ip)
            existing = self.get_record(name)

            if existing is None:
                self._apply(additions=[record], deletions=[])
                logger.info(f"Created record {name} -> {ip}")
                return ChangeOutcome.CREATED

            if existing.ip == ip:
                logger.debug(f"Record exists: {name} -> {ip}")
                return ChangeOutcome.UNCHANGED

            logger.info(f"Stale record found: {name} -> {existing.ip}, replacing with {ip}")
            self._apply(additions=[record], deletions=[existing])
            return ChangeOutcome.UPDATED

    def delete(self, name: str, ip: str) -> ChangeOutcome:
        """Delete `name` only if it still points at `ip`."""
        with self._lock_for(name):
            existing = self.get_record(name)
            if existing is None:
                logger.debug(f"No DNS record found for {name}")
                return ChangeOutcome.UNCHANGED

            if existing.ip != ip:
                logger.debug(
                    f"Record {name} points at {existing.ip}, not {ip or '<none>'}; leaving it"
                )
                return ChangeOutcome.UNCHANGED

            self._apply(additions=[], deletions=[existing])
            logger.info(f"Deleted record {name} -> {ip}")
            return ChangeOutcome.DELETED

    def wait_for_change(self, change_id: str, status: str = "pending") -> None:
        """Block until the change is applied.

        Raises RetryableError on timeout or shutdown; the change may still
        apply later, which a repeated create/delete will observe.
        """
        deadline = time.monotonic() + self._change_timeout
        while status != CHANGE_DONE:
            if time.monotonic() >= deadline:
                raise RetryableError(
                    f"Change {change_id} still {status} after {self._change_timeout}s"
                )
            if self._stop.wait(self._change_poll_interval):
                raise RetryableError(f"Shutdown while waiting for change {change_id}")
            status = self.get_change_status(change_id)
        logger.debug(f"Change {change_id} applied")

    def _apply(self, additions: List[DNSRecordSet], deletions: List[DNSRecordSet]) -> None:
        change_id, status = self.submit_change(additions, deletions)
        self.wait_for_change(change_id, status)

    def _lock_for(self, name: str) -> threading.Lock:
        return self._locks[zlib.crc32(name.encode("utf-8")) % LOCK_STRIPES]


# =============================================================================
# Google Cloud DNS
# =============================================================================


def _classify(exc: requests.exceptions.RequestException) -> RecordStoreError:
    """Map a requests failure onto retryable/permanent."""
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return RetryableError(str(exc))
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        # 409/412: a concurrent change touched the same record set
        if status in (409, 412, 429) or status >= 500:
            return RetryableError(f"HTTP {status}: {exc}")
        return PermanentError(f"HTTP {status}: {exc}")
    return PermanentError(str(exc))


def load_credentials(credentials_file: str = ""):
    """Service account key file if given, Application Default Credentials otherwise."""
    if credentials_file:
        return service_account.Credentials.from_service_account_file(
            credentials_file, scopes=[CLOUD_DNS_SCOPE]
        )
    credentials, _ = google.auth.default(scopes=[CLOUD_DNS_SCOPE])
    return credentials


def detect_project(timeout: float = 5.0) -> str:
    """Read the project id from the GCE metadata server."""
    response = requests.get(
        METADATA_PROJECT_URL, headers={"Metadata-Flavor": "Google"}, timeout=timeout
    )
    response.raise_for_status()
    return response.text.strip()


class CloudDNSRecordStore(RecordStore):
    """Google Cloud DNS managed zone over the v1 REST API."""

    def __init__(
        self,
        session: requests.Session,
        project: str,
        zone: str,
        *,
        timeout_seconds: float = 10.0,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._session = session
        self._project = project
        self._zone = zone
        self._timeout = timeout_seconds
        self._base = f"{CLOUD_DNS_API}/projects/{project}/managedZones/{zone}"

    @classmethod
    def from_credentials(
        cls, project: str, zone: str, credentials_file: str = "", **kwargs: Any
    ) -> "CloudDNSRecordStore":
        session = AuthorizedSession(load_credentials(credentials_file))
        # Reads are retried at the transport; changes go through RecordWriter.
        retry = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        session.mount("https://", HTTPAdapter(max_retries=retry))
        return cls(session, project, zone, **kwargs)

    @property
    def name(self) -> str:
        return "Google Cloud DNS"

    def test_connection(self) -> bool:
        try:
            data = self._request("GET", self._base)
        except RecordStoreError as e:
            logger.error(f"Failed to connect to {self.name} zone {self._zone}: {e}")
            return False
        logger.info(f"{self.name} connection successful (zone {data.get('dnsName', self._zone)})")
        return True

    def list_records(
        self, name: Optional[str] = None, record_type: Optional[str] = RECORD_TYPE
    ) -> List[DNSRecordSet]:
        params: Dict[str, Any] = {}
        if name:
            params["name"] = name
            if record_type:
                params["type"] = record_type

        records: List[DNSRecordSet] = []
        while True:
            data = self._request("GET", f"{self._base}/rrsets", params=dict(params))
            for raw in data.get("rrsets", []):
                if not isinstance(raw, dict) or "name" not in raw:
                    logger.warning(f"Skipping malformed record set: {raw}")
                    continue
                if record_type and raw.get("type") != record_type:
                    continue
                records.append(DNSRecordSet.from_api(raw))

            page_token = data.get("nextPageToken")
            if not page_token:
                return records
            params["pageToken"] = page_token

    def submit_change(
        self, additions: List[DNSRecordSet], deletions: List[DNSRecordSet]
    ) -> Tuple[str, str]:
        body: Dict[str, Any] = {}
        if additions:
            body["additions"] = [r.to_api() for r in additions]
        if deletions:
            body["deletions"] = [r.to_api() for r in deletions]

        data = self._request("POST", f"{self._base}/changes", json=body)
        change_id = data.get("id")
        if not change_id:
            raise PermanentError(f"Change response without id: {data}")
        return str(change_id), str(data.get("status", "pending"))

    def get_change_status(self, change_id: str) -> str:
        data = self._request("GET", f"{self._base}/changes/{change_id}")
        return str(data.get("status", "pending"))

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise _classify(e) from e
        except google.auth.exceptions.TransportError as e:
            raise RetryableError(f"Credential transport failed: {e}") from e
        except google.auth.exceptions.RefreshError as e:
            if e.retryable:
                raise RetryableError(f"Credential refresh failed: {e}") from e
            raise PermanentError(f"Credential refresh failed: {e}") from e
        except ValueError as e:
            raise PermanentError(f"Invalid JSON from {self.name}: {e}") from e

        if not isinstance(data, dict):
            raise PermanentError(
                f"Unexpected response format from {self.name}: "
                f"expected object, got {type(data).__name__}"
            )
        return data
