"""Periodic full reconciliation.

Each cycle lists the live pods and the whole zone once, diffs the two and
repairs whatever the event path missed. Stale records are only reported unless
deletion is explicitly enabled.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from gke_private_dns.instance_source import InstanceSource, InstanceSourceError
from gke_private_dns.models import (
    RECORD_TYPE,
    DNSRecordSet,
    InstanceIdentity,
    NameFormat,
    normalize_domain,
    record_name,
    short_key,
)
from gke_private_dns.reconciler import RecordWriter
from gke_private_dns.record_store import ChangeOutcome, RecordStoreError

logger = logging.getLogger(__name__)

# =============================================================================
# Diff
# =============================================================================


@dataclass
class DiffResult:
    """What a scan has to do.

    to_upsert:  pods with an IP whose record is missing or wrong
    satisfied:  pods whose record already matches
    unresolved: pods without an IP yet
    skipped:    pods whose record name cannot be derived
    stale:      zone records with no live pod, keyed by short name
    """

    to_upsert: List[InstanceIdentity] = field(default_factory=list)
    satisfied: List[InstanceIdentity] = field(default_factory=list)
    unresolved: List[InstanceIdentity] = field(default_factory=list)
    skipped: List[InstanceIdentity] = field(default_factory=list)
    stale: Dict[str, DNSRecordSet] = field(default_factory=dict)


def build_snapshot(records: Iterable[DNSRecordSet], domain: str) -> Dict[str, DNSRecordSet]:
    """Index the A records under `domain` by the label before the first dot."""
    suffix = f".{normalize_domain(domain)}."
    snapshot: Dict[str, DNSRecordSet] = {}
    for record in records:
        if record.type != RECORD_TYPE or not record.name.endswith(suffix):
            continue
        key = short_key(record.name)
        if key in snapshot:
            logger.warning(
                f"Multiple records for '{key}': {snapshot[key].name} and {record.name}; "
                f"using {record.name}"
            )
        snapshot[key] = record
        logger.debug(f"Found DNS record for {key}: {record.name} -> {record.ip}")
    return snapshot


def diff(
    instances: Iterable[InstanceIdentity],
    snapshot: Dict[str, DNSRecordSet],
    domain: str,
    name_format: NameFormat,
) -> DiffResult:
    """Compare live pods against a zone snapshot. `snapshot` is not modified."""
    remaining = dict(snapshot)
    result = DiffResult()

    for instance in instances:
        if not instance.ip:
            result.unresolved.append(instance)
            continue

        name = record_name(instance, domain, name_format)
        if name is None:
            result.skipped.append(instance)
            continue

        existing = remaining.get(instance.name)
        if existing is not None and existing.name == name and existing.ip == instance.ip:
            del remaining[instance.name]
            result.satisfied.append(instance)
            continue

        # A record under this pod's own name is replaced by the upsert.
        if existing is not None and existing.name == name:
            del remaining[instance.name]
        result.to_upsert.append(instance)

    result.stale = remaining
    return result


# =============================================================================
# Scanner
# =============================================================================


@dataclass
class ScanResult:
    instances: int = 0
    satisfied: int = 0
    upserted: int = 0
    failed: int = 0
    unresolved: int = 0
    skipped: int = 0
    stale: int = 0
    stale_deleted: int = 0


class PeriodicScanner:
    def __init__(
        self,
        source: InstanceSource,
        writer: RecordWriter,
        *,
        interval: float = 1800.0,
        delete_stale: bool = False,
        stop_event: Optional[threading.Event] = None,
    ):
        self.source = source
        self.writer = writer
        self.interval = interval
        self.delete_stale = delete_stale
        self._stop = stop_event or threading.Event()

    def run(self) -> None:
        """Scan every `interval` seconds until the stop event is set."""
        logger.info(
            f"Periodic scan every {self.interval}s "
            f"(stale record deletion {'enabled' if self.delete_stale else 'disabled'})"
        )
        while not self._stop.wait(self.interval):
            try:
                self.scan_once()
            except Exception as e:
                logger.error(f"Periodic scan failed: {e}", exc_info=True)
        logger.info("Periodic scanner stopped")

    def scan_once(self) -> Optional[ScanResult]:
        """Run one cycle. Returns None if the cycle was skipped."""
        logger.debug("Periodic scan started")
        try:
            instances = self.source.list_instances()
        except InstanceSourceError as e:
            logger.error(f"Skipping scan, failed to list pods: {e}")
            return None

        try:
            records = self.writer.store.list_records()
        except RecordStoreError as e:
            logger.error(f"Skipping scan, failed to list records: {e}")
            return None

        domain = self.writer.domain
        snapshot = build_snapshot(records, domain)
        result = diff(instances, snapshot, domain, self.writer.name_format)

        stats = ScanResult(
            instances=len(instances),
            satisfied=len(result.satisfied),
            unresolved=len(result.unresolved),
            skipped=len(result.skipped),
            stale=len(result.stale),
        )

        for instance in result.skipped:
            logger.warning(f"Pod {instance.name} has no owner reference; no record managed")

        for instance in result.to_upsert:
            if self._stop.is_set():
                break
            if self.writer.upsert(instance):
                stats.upserted += 1
            else:
                stats.failed += 1

        for record in sorted(result.stale.values(), key=lambda r: r.name):
            logger.warning(f"Stale record with no matching pod: {record.name} -> {record.ip}")
            if not self.delete_stale or self._stop.is_set():
                continue
            try:
                outcome = self.writer.store.delete(record.name, record.ip)
                if outcome == ChangeOutcome.DELETED:
                    stats.stale_deleted += 1
            except RecordStoreError as e:
                logger.error(f"Failed to delete stale record {record.name}: {e}")

        logger.info(
            f"Scan complete: {stats.instances} pods, {stats.satisfied} in sync, "
            f"{stats.upserted} repaired, {stats.failed} failed, {stats.unresolved} without IP, "
            f"{stats.stale} stale"
        )
        return stats
