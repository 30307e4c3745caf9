"""Event-driven reconciliation.

`RecordWriter` turns pods into record names and drives the record store with
retries. It holds no per-pod state, so both the event path and the periodic
scanner share one instance.

`Reconciler` consumes the ordered event stream one event at a time and owns
the pending set: pods whose IP did not show up within the resolution timeout.
Nothing else reads or writes that set.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Dict, Optional

from gke_private_dns.instance_source import InstanceSource, InstanceSourceError
from gke_private_dns.models import (
    EventType,
    InstanceEvent,
    InstanceIdentity,
    NameFormat,
    record_name,
)
from gke_private_dns.record_store import (
    ChangeOutcome,
    PermanentError,
    RecordStore,
    RetryableError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Record Writer
# =============================================================================


class RecordWriter:
    def __init__(
        self,
        store: RecordStore,
        domain: str,
        name_format: NameFormat = NameFormat.FULL,
        *,
        stop_event: Optional[threading.Event] = None,
        max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        self.store = store
        self.domain = domain
        self.name_format = name_format
        self._stop = stop_event or threading.Event()
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

    def record_name(self, instance: InstanceIdentity) -> Optional[str]:
        return record_name(instance, self.domain, self.name_format)

    def upsert(self, instance: InstanceIdentity) -> bool:
        """Ensure the pod's record exists with its current IP."""
        name = self.record_name(instance)
        if name is None:
            logger.warning(
                f"Pod {instance.namespace}/{instance.name} has no owner reference; "
                f"not creating a record"
            )
            return False
        if not instance.ip:
            logger.warning(f"Pod {instance.name} has no IP; skipping {name}")
            return False
        return self._run(
            f"create {name} -> {instance.ip}", lambda: self.store.create(name, instance.ip)
        )

    def remove(self, instance: InstanceIdentity) -> bool:
        """Delete the pod's record if it still carries the pod's IP."""
        name = self.record_name(instance)
        if name is None:
            logger.debug(f"Pod {instance.name} has no record name; nothing to delete")
            return True
        return self._run(
            f"delete {name} -> {instance.ip}", lambda: self.store.delete(name, instance.ip)
        )

    def _run(self, description: str, operation: Callable[[], ChangeOutcome]) -> bool:
        delay = self._retry_base_delay
        for attempt in range(1, self._max_attempts + 1):
            try:
                outcome = operation()
                logger.debug(f"{description}: {outcome.value}")
                return True
            except PermanentError as e:
                logger.error(f"Failed to {description}: {e}")
                return False
            except RetryableError as e:
                if attempt == self._max_attempts:
                    logger.error(f"Failed to {description} after {attempt} attempts: {e}")
                    return False
                jittered = delay * (0.5 + random.random())  # noqa: S311
                logger.warning(
                    f"Failed to {description} (attempt {attempt}/{self._max_attempts}): {e}; "
                    f"retrying in {jittered:.1f}s"
                )
                if self._stop.wait(jittered):
                    logger.warning(f"Shutdown requested; giving up on {description}")
                    return False
                delay = min(delay * 2, self._retry_max_delay)
        return False


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    def __init__(
        self,
        source: InstanceSource,
        writer: RecordWriter,
        *,
        ip_timeout: float = 60.0,
        ip_poll_interval: float = 2.0,
        stop_event: Optional[threading.Event] = None,
    ):
        self.source = source
        self.writer = writer
        self.ip_timeout = ip_timeout
        self.ip_poll_interval = ip_poll_interval
        self._stop = stop_event or threading.Event()
        self._pending: Dict[str, InstanceIdentity] = {}

    @property
    def pending(self) -> Dict[str, InstanceIdentity]:
        """Copy of the pods waiting for an IP."""
        return dict(self._pending)

    def run(self) -> None:
        """Process events in order until the stop event is set."""
        for event in self.source.events(self._stop):
            if self._stop.is_set():
                break
            try:
                self.handle(event)
            except Exception as e:
                logger.error(
                    f"Failed to handle {event.type.value} event for pod {event.instance.name}: {e}",
                    exc_info=True,
                )
        logger.info("Event loop stopped")

    def handle(self, event: InstanceEvent) -> None:
        if event.type == EventType.ADDED:
            self.on_added(event.instance)
        elif event.type == EventType.UPDATED:
            self.on_updated(event.old, event.instance)
        elif event.type == EventType.DELETED:
            self.on_deleted(event.instance)

    def on_added(self, instance: InstanceIdentity) -> None:
        logger.info(f"Pod added: {instance.name}")

        if not instance.ip:
            logger.warning(f"Pod {instance.name} has no IP yet. Will try to resolve.")
            instance = self._wait_for_ip(instance)
            if not instance.ip:
                logger.info(
                    f"Failed to get IP for pod {instance.name} in {self.ip_timeout}s; "
                    f"waiting for an update"
                )
                self._pending[instance.name] = instance
                return

        if self.writer.upsert(instance):
            self._pending.pop(instance.name, None)

    def on_updated(self, old: Optional[InstanceIdentity], new: InstanceIdentity) -> None:
        # Updates are frequent and mostly irrelevant; only pending pods matter.
        logger.debug(f"Pod updated: {new.name}")
        if new.name not in self._pending or not new.ip:
            return

        logger.info(f"Pending pod {new.name} got IP {new.ip}")
        if self.writer.upsert(new):
            del self._pending[new.name]

    def on_deleted(self, instance: InstanceIdentity) -> None:
        logger.info(f"Pod deleted: {instance.name}")
        self._pending.pop(instance.name, None)
        self.writer.remove(instance)

    def _wait_for_ip(self, instance: InstanceIdentity) -> InstanceIdentity:
        """Poll the pod until it has an IP, the timeout passes or shutdown.

        Returns the latest known identity, with or without an IP.
        """
        deadline = time.monotonic() + self.ip_timeout
        latest = instance
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return latest
            if self._stop.wait(min(self.ip_poll_interval, remaining)):
                return latest

            try:
                current = self.source.get_instance(instance.name)
            except InstanceSourceError as e:
                logger.error(f"Failed to look up pod {instance.name}: {e}")
                continue

            if current is None:
                logger.info(f"Pod {instance.name} disappeared while waiting for its IP")
                return latest
            latest = current
            if latest.ip:
                logger.info(f"Pod IP resolved: {instance.name} -> {latest.ip}")
                return latest
