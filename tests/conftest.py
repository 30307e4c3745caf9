"""Shared fakes for the record store and pod source."""

import threading
from typing import Dict, Iterator, List, Optional, Tuple

import pytest

from gke_private_dns.instance_source import InstanceSource, InstanceSourceError
from gke_private_dns.models import DNSRecordSet, InstanceEvent, InstanceIdentity
from gke_private_dns.record_store import RecordStore, RetryableError

DOMAIN = "svc.internal"

# =============================================================================
# Fake Record Store
# =============================================================================


class FakeZoneStore(RecordStore):
    """In-memory zone that behaves like Cloud DNS for changes.

    Deletions must match the stored record set exactly and additions must not
    collide with an existing name, otherwise the change is rejected the way the
    real API rejects it (409/412).
    """

    def __init__(
        self,
        records: Optional[List[DNSRecordSet]] = None,
        pending_polls: int = 0,
        **kwargs,
    ):
        kwargs.setdefault("change_poll_interval", 0)
        super().__init__(**kwargs)
        self.records: Dict[str, DNSRecordSet] = {r.name: r for r in records or []}
        self.changes: List[Tuple[List[DNSRecordSet], List[DNSRecordSet]]] = []
        self.create_calls: List[Tuple[str, str]] = []
        self.delete_calls: List[Tuple[str, str]] = []
        self.submit_errors: List[Exception] = []
        self.list_error: Optional[Exception] = None
        self.status_polls = 0
        self._pending_polls = pending_polls

    @property
    def name(self) -> str:
        return "FakeZone"

    def test_connection(self) -> bool:
        return True

    def list_records(self, name=None, record_type="A") -> List[DNSRecordSet]:
        if self.list_error is not None:
            raise self.list_error
        return [
            r
            for r in self.records.values()
            if (name is None or r.name == name) and (record_type is None or r.type == record_type)
        ]

    def submit_change(self, additions, deletions):
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        for record in deletions:
            if self.records.get(record.name) != record:
                raise RetryableError(f"412 deletion does not match {record.name}")
        remaining = {n: r for n, r in self.records.items() if r not in deletions}
        for record in additions:
            if record.name in remaining:
                raise RetryableError(f"409 {record.name} already exists")
            remaining[record.name] = record
        self.records = remaining
        self.changes.append((list(additions), list(deletions)))
        status = "pending" if self._pending_polls else "done"
        return str(len(self.changes)), status

    def get_change_status(self, change_id: str) -> str:
        self.status_polls += 1
        return "done" if self.status_polls >= self._pending_polls else "pending"

    def create(self, name: str, ip: str):
        self.create_calls.append((name, ip))
        return super().create(name, ip)

    def delete(self, name: str, ip: str):
        self.delete_calls.append((name, ip))
        return super().delete(name, ip)


# =============================================================================
# Fake Instance Source
# =============================================================================


class FakeInstanceSource(InstanceSource):
    """Pod source with a fixed listing, scripted lookups and scripted events."""

    def __init__(
        self,
        instances: Optional[List[InstanceIdentity]] = None,
        lookups: Optional[Dict[str, List[Optional[InstanceIdentity]]]] = None,
        events: Optional[List[InstanceEvent]] = None,
    ):
        self.instances = list(instances or [])
        self.lookups = lookups or {}
        self.event_list = list(events or [])
        self.lookup_calls: List[str] = []
        self.list_error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "FakePods"

    def list_instances(self) -> List[InstanceIdentity]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.instances)

    def get_instance(self, name: str) -> Optional[InstanceIdentity]:
        self.lookup_calls.append(name)
        results = self.lookups.get(name)
        if not results:
            raise InstanceSourceError(f"no lookup scripted for {name}")
        # The last scripted answer repeats.
        return results.pop(0) if len(results) > 1 else results[0]

    def events(self, stop: threading.Event) -> Iterator[InstanceEvent]:
        for event in self.event_list:
            if stop.is_set():
                return
            yield event


# =============================================================================
# Helpers
# =============================================================================


def make_pod(name: str, ip: str = "", owner: Optional[str] = "web") -> InstanceIdentity:
    return InstanceIdentity(name=name, namespace="default", ip=ip, owner_name=owner)


def make_record(name: str, ip: str) -> DNSRecordSet:
    return DNSRecordSet(name=name, ip=ip)


@pytest.fixture
def store() -> FakeZoneStore:
    return FakeZoneStore()


@pytest.fixture
def stop() -> threading.Event:
    return threading.Event()
