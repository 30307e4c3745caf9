"""Unit tests for the record store create/delete contract and CloudDNSRecordStore."""

import threading
from unittest.mock import MagicMock, call, patch

import google.auth.exceptions
import pytest
import requests
from conftest import DOMAIN, FakeZoneStore, make_pod, make_record

from gke_private_dns.models import DNSRecordSet
from gke_private_dns.reconciler import RecordWriter
from gke_private_dns.record_store import (
    ChangeOutcome,
    CloudDNSRecordStore,
    PermanentError,
    RetryableError,
    detect_project,
)

NAME = "web-1.web.svc.internal."

# =============================================================================
# create()
# =============================================================================


def test_create_adds_record_when_missing(store: FakeZoneStore) -> None:
    """No existing record results in a single addition."""
    outcome = store.create(NAME, "10.0.0.5")

    assert outcome == ChangeOutcome.CREATED
    assert store.changes == [([DNSRecordSet(NAME, "10.0.0.5", 60, "A")], [])]
    assert store.records[NAME].ip == "10.0.0.5"


def test_create_twice_yields_one_record(store: FakeZoneStore) -> None:
    """Creating the same name and IP twice is a no-op the second time."""
    store.create(NAME, "10.0.0.5")
    outcome = store.create(NAME, "10.0.0.5")

    assert outcome == ChangeOutcome.UNCHANGED
    assert len(store.changes) == 1
    assert list(store.records) == [NAME]


def test_create_replaces_stale_record_in_one_change() -> None:
    """A different IP produces one change with one deletion and one addition."""
    old = make_record(NAME, "10.0.0.9")
    store = FakeZoneStore(records=[old])

    outcome = store.create(NAME, "10.0.0.5")

    assert outcome == ChangeOutcome.UPDATED
    assert len(store.changes) == 1
    additions, deletions = store.changes[0]
    assert deletions == [old]
    assert additions == [make_record(NAME, "10.0.0.5")]
    assert list(store.records.values()) == [make_record(NAME, "10.0.0.5")]


def test_create_deletes_existing_record_with_its_own_ttl() -> None:
    """The deletion carries the stored record set, not a rebuilt one."""
    old = DNSRecordSet(NAME, "10.0.0.9", ttl=300)
    store = FakeZoneStore(records=[old])

    store.create(NAME, "10.0.0.5")

    assert store.changes[0][1] == [old]
    assert store.records[NAME].ttl == 60


# =============================================================================
# delete()
# =============================================================================


def test_delete_removes_matching_record() -> None:
    """Record with the same IP is deleted."""
    store = FakeZoneStore(records=[make_record(NAME, "10.0.0.5")])

    outcome = store.delete(NAME, "10.0.0.5")

    assert outcome == ChangeOutcome.DELETED
    assert store.records == {}


def test_delete_leaves_record_with_other_ip() -> None:
    """Record now pointing elsewhere is never deleted."""
    store = FakeZoneStore(records=[make_record(NAME, "10.0.0.6")])

    outcome = store.delete(NAME, "10.0.0.5")

    assert outcome == ChangeOutcome.UNCHANGED
    assert store.changes == []
    assert store.records[NAME].ip == "10.0.0.6"


def test_delete_missing_record_is_noop(store: FakeZoneStore) -> None:
    """Deleting a name with no record does not submit a change."""
    assert store.delete(NAME, "10.0.0.5") == ChangeOutcome.UNCHANGED
    assert store.changes == []


def test_delete_with_empty_ip_keeps_record() -> None:
    """A pod deleted before it got an IP does not touch a live record."""
    store = FakeZoneStore(records=[make_record(NAME, "10.0.0.5")])

    assert store.delete(NAME, "") == ChangeOutcome.UNCHANGED
    assert NAME in store.records


# =============================================================================
# Change completion
# =============================================================================


def test_create_waits_until_change_done() -> None:
    """Mutations return only after the change reports done."""
    store = FakeZoneStore(pending_polls=3)

    store.create(NAME, "10.0.0.5")

    assert store.status_polls == 3


def test_wait_for_change_times_out_as_retryable() -> None:
    """A change that never completes raises a retryable error."""
    store = FakeZoneStore(pending_polls=1000, change_timeout=0)

    with pytest.raises(RetryableError):
        store.create(NAME, "10.0.0.5")


def test_wait_for_change_stops_on_shutdown() -> None:
    """A set stop event interrupts the poll."""
    stop = threading.Event()
    stop.set()
    store = FakeZoneStore(pending_polls=1000, stop_event=stop)

    with pytest.raises(RetryableError, match="Shutdown"):
        store.wait_for_change("1")


def test_concurrent_creates_leave_one_record(store: FakeZoneStore) -> None:
    """Two threads creating the same name never produce a duplicate."""
    errors = []

    def worker(ip: str) -> None:
        try:
            for _ in range(20):
                store.create(NAME, ip)
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(ip,)) for ip in ("10.0.0.5", "10.0.0.6")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert list(store.records) == [NAME]


# =============================================================================
# CloudDNSRecordStore
# =============================================================================

BASE = "https://dns.googleapis.com/dns/v1/projects/proj/managedZones/private"


def _response(data) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = data
    return response


def _rrset(name: str, ip: str, rtype: str = "A") -> dict:
    return {"name": name, "type": rtype, "ttl": 60, "rrdatas": [ip]}


def _http_error(status: int) -> MagicMock:
    response = MagicMock()
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(
        f"{status} error", response=MagicMock(status_code=status)
    )
    return response


def _cloud_store(session: MagicMock) -> CloudDNSRecordStore:
    return CloudDNSRecordStore(session, "proj", "private", change_poll_interval=0)


class TestCloudDNSList:
    """Tests for listing record sets."""

    def test_get_record_filters_by_name_and_type(self) -> None:
        session = MagicMock()
        session.request.return_value = _response({"rrsets": [_rrset(NAME, "10.0.0.5")]})
        store = _cloud_store(session)

        record = store.get_record(NAME)

        assert record == DNSRecordSet(NAME, "10.0.0.5")
        session.request.assert_called_once_with(
            "GET", f"{BASE}/rrsets", timeout=10.0, params={"name": NAME, "type": "A"}
        )

    def test_list_records_follows_pages_and_skips_other_types(self) -> None:
        session = MagicMock()
        session.request.side_effect = [
            _response(
                {
                    "rrsets": [
                        _rrset("svc.internal.", "ns1.", rtype="SOA"),
                        _rrset("a.web.svc.internal.", "10.0.0.1"),
                    ],
                    "nextPageToken": "page-2",
                }
            ),
            _response({"rrsets": [_rrset("b.web.svc.internal.", "10.0.0.2")]}),
        ]
        store = _cloud_store(session)

        records = store.list_records()

        assert [r.name for r in records] == ["a.web.svc.internal.", "b.web.svc.internal."]
        assert session.request.call_args_list == [
            call("GET", f"{BASE}/rrsets", timeout=10.0, params={}),
            call("GET", f"{BASE}/rrsets", timeout=10.0, params={"pageToken": "page-2"}),
        ]


class TestCloudDNSChanges:
    """Tests for submitting and polling changes."""

    def test_create_submits_replacement_and_polls_status(self) -> None:
        session = MagicMock()
        session.request.side_effect = [
            _response({"rrsets": [_rrset(NAME, "10.0.0.9")]}),
            _response({"id": "7", "status": "pending"}),
            _response({"id": "7", "status": "pending"}),
            _response({"id": "7", "status": "done"}),
        ]
        store = _cloud_store(session)

        outcome = store.create(NAME, "10.0.0.5")

        assert outcome == ChangeOutcome.UPDATED
        post = session.request.call_args_list[1]
        assert post == call(
            "POST",
            f"{BASE}/changes",
            timeout=10.0,
            json={
                "additions": [{"name": NAME, "type": "A", "ttl": 60, "rrdatas": ["10.0.0.5"]}],
                "deletions": [{"name": NAME, "type": "A", "ttl": 60, "rrdatas": ["10.0.0.9"]}],
            },
        )
        assert session.request.call_args_list[3] == call(
            "GET", f"{BASE}/changes/7", timeout=10.0
        )

    def test_change_without_id_is_permanent(self) -> None:
        session = MagicMock()
        session.request.return_value = _response({"status": "done"})
        store = _cloud_store(session)

        with pytest.raises(PermanentError):
            store.submit_change([DNSRecordSet(NAME, "10.0.0.5")], [])


class TestCloudDNSErrors:
    """Tests for error classification."""

    @pytest.mark.parametrize("status", [409, 412, 429, 500, 503])
    def test_retryable_statuses(self, status: int) -> None:
        session = MagicMock()
        session.request.return_value = _http_error(status)

        with pytest.raises(RetryableError):
            _cloud_store(session).get_record(NAME)

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_permanent_statuses(self, status: int) -> None:
        session = MagicMock()
        session.request.return_value = _http_error(status)

        with pytest.raises(PermanentError):
            _cloud_store(session).get_record(NAME)

    def test_timeout_is_retryable(self) -> None:
        session = MagicMock()
        session.request.side_effect = requests.exceptions.Timeout("timed out")

        with pytest.raises(RetryableError):
            _cloud_store(session).list_records()

    def test_non_object_response_is_permanent(self) -> None:
        session = MagicMock()
        session.request.return_value = _response(["not", "an", "object"])

        with pytest.raises(PermanentError):
            _cloud_store(session).list_records()

    def test_test_connection_reports_failure(self) -> None:
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        assert _cloud_store(session).test_connection() is False

    def test_credential_transport_error_is_retryable(self) -> None:
        session = MagicMock()
        session.request.side_effect = google.auth.exceptions.TransportError(
            "metadata server timed out"
        )

        with pytest.raises(RetryableError):
            _cloud_store(session).get_record(NAME)

    def test_retryable_refresh_error_is_retryable(self) -> None:
        session = MagicMock()
        session.request.side_effect = google.auth.exceptions.RefreshError(
            "token endpoint unavailable", retryable=True
        )

        with pytest.raises(RetryableError):
            _cloud_store(session).get_record(NAME)

    def test_rejected_refresh_is_permanent(self) -> None:
        session = MagicMock()
        session.request.side_effect = google.auth.exceptions.RefreshError("invalid_grant")

        with pytest.raises(PermanentError):
            _cloud_store(session).get_record(NAME)

    def test_writer_retries_credential_failures(self) -> None:
        """A flaky token refresh is retried and then reported as a failed upsert."""
        session = MagicMock()
        session.request.side_effect = google.auth.exceptions.TransportError(
            "metadata server timed out"
        )
        writer = RecordWriter(
            _cloud_store(session),
            DOMAIN,
            stop_event=threading.Event(),
            max_attempts=3,
            retry_base_delay=0,
        )

        assert writer.upsert(make_pod("web-1", "10.0.0.5")) is False
        assert session.request.call_count == 3


def test_detect_project_reads_metadata_server() -> None:
    """Project id comes from the metadata server with the Google flavor header."""
    with patch("gke_private_dns.record_store.requests.get") as mock_get:
        mock_get.return_value = MagicMock(text="my-project\n")

        assert detect_project() == "my-project"
        assert mock_get.call_args.kwargs["headers"] == {"Metadata-Flavor": "Google"}
