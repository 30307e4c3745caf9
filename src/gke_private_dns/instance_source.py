"""Pod sources: lifecycle event stream, filtered listing and point lookup."""

from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Generator, Iterator, List, Optional

import urllib3
from kubernetes import client, config, watch
from kubernetes.client import ApiException, CoreV1Api

from gke_private_dns.models import InstanceEvent, InstanceIdentity

logger = logging.getLogger(__name__)

MAX_WATCH_BACKOFF_SECONDS = 30


class InstanceSourceError(Exception):
    """Listing or looking up pods failed."""


class InstanceAccessDenied(InstanceSourceError):
    """The Kubernetes API rejected our credentials (401/403)."""


# =============================================================================
# Instance Source Interface
# =============================================================================


class InstanceSource(ABC):
    """Abstract base class for pod sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def list_instances(self) -> List[InstanceIdentity]:
        """List all pods currently matching the namespace and label filter."""
        pass

    @abstractmethod
    def get_instance(self, name: str) -> Optional[InstanceIdentity]:
        """Look up a single pod by name. Returns None if it no longer exists."""
        pass

    @abstractmethod
    def events(self, stop: threading.Event) -> Iterator[InstanceEvent]:
        """Yield lifecycle events in order until `stop` is set."""
        pass


def identity_from_pod(pod: Any) -> InstanceIdentity:
    metadata = pod.metadata
    owners = metadata.owner_references or []
    status = pod.status
    return InstanceIdentity(
        name=metadata.name,
        namespace=metadata.namespace,
        ip=(status.pod_ip if status is not None else None) or "",
        owner_name=owners[0].name if owners else None,
    )


def _access_denied(exc: ApiException) -> InstanceAccessDenied:
    return InstanceAccessDenied(
        f"Kubernetes API access denied (status={exc.status}). "
        "Check RBAC and service account permissions."
    )


def build_core_api() -> CoreV1Api:
    """In-cluster config when running in a pod, kubeconfig otherwise."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    return client.CoreV1Api()


# =============================================================================
# Kubernetes
# =============================================================================


class KubernetesInstanceSource(InstanceSource):
    """Pods in one namespace selected by a label selector.

    `events()` lists first (an ADDED for every pod), then watches from the
    list's resourceVersion. Each watch is opened with the resync period as its
    timeout; when it ends the pods are listed again and the difference is
    replayed as ADDED/UPDATED/DELETED. A 410 Gone also triggers a re-list.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        label_selector: str = "",
        *,
        resync_seconds: int = 600,
    ):
        self.core_api = core_api
        self.namespace = namespace
        self.label_selector = label_selector
        self.resync_seconds = resync_seconds
        # last seen identity per pod; touched only by the events() generator
        self._known: Dict[str, InstanceIdentity] = {}
        self._active_watcher: Optional[watch.Watch] = None
        self._watcher_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "Kubernetes"

    def list_instances(self) -> List[InstanceIdentity]:
        return [identity_from_pod(pod) for pod in self._list_pods().items]

    def get_instance(self, name: str) -> Optional[InstanceIdentity]:
        try:
            pod = self.core_api.read_namespaced_pod(name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise InstanceSourceError(f"Failed to read pod {self.namespace}/{name}: {e}") from e
        except urllib3.exceptions.HTTPError as e:
            raise InstanceSourceError(f"Failed to read pod {self.namespace}/{name}: {e}") from e
        return identity_from_pod(pod)

    def stop(self) -> None:
        """Interrupt the active watch stream, if any."""
        with self._watcher_lock:
            if self._active_watcher is not None:
                self._active_watcher.stop()

    def events(self, stop: threading.Event) -> Iterator[InstanceEvent]:
        resource_version: Optional[str] = None
        need_list = True
        backoff_seconds = 1

        while not stop.is_set():
            try:
                if need_list:
                    resource_version = yield from self._relist()
                    need_list = False
                    logger.info(
                        f"Watching pods in {self.namespace} "
                        f"(selector '{self.label_selector}', {len(self._known)} known)"
                    )

                resource_version = yield from self._watch(stop, resource_version)
                # A watch that ran out its timeout marks the resync period.
                need_list = True
                backoff_seconds = 1
                continue

            except ApiException as e:
                if e.status == 410:
                    logger.warning("Watch resource version expired, re-listing")
                    need_list = True
                    continue
                if e.status in (401, 403):
                    raise _access_denied(e) from e
                logger.error(f"Kubernetes API watch error: {e}")
            except InstanceAccessDenied:
                raise
            except (InstanceSourceError, urllib3.exceptions.HTTPError) as e:
                logger.error(f"Pod watch failed: {e}")

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            if stop.wait(timeout=jittered):
                break
            backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)

    def _list_pods(self) -> Any:
        try:
            return self.core_api.list_namespaced_pod(
                namespace=self.namespace, label_selector=self.label_selector
            )
        except ApiException as e:
            if e.status in (401, 403):
                raise _access_denied(e) from e
            raise InstanceSourceError(f"Failed to list pods in {self.namespace}: {e}") from e
        except urllib3.exceptions.HTTPError as e:
            raise InstanceSourceError(f"Failed to list pods in {self.namespace}: {e}") from e

    def _relist(self) -> Generator[InstanceEvent, None, Optional[str]]:
        pod_list = self._list_pods()
        seen: Dict[str, InstanceIdentity] = {}
        for pod in pod_list.items:
            identity = identity_from_pod(pod)
            seen[identity.name] = identity
            yield self._remember(identity)

        for name in [n for n in self._known if n not in seen]:
            yield InstanceEvent.deleted(self._known.pop(name))

        return pod_list.metadata.resource_version

    def _watch(
        self, stop: threading.Event, resource_version: Optional[str]
    ) -> Generator[InstanceEvent, None, Optional[str]]:
        """Stream one watch until it times out. Returns the last resourceVersion seen.

        With `timeout_seconds` set the client does not retry a 410 itself; it
        raises `ApiException(status=410)`, handled by `events()`.
        """
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        try:
            stream = watcher.stream(
                self.core_api.list_namespaced_pod,
                namespace=self.namespace,
                label_selector=self.label_selector,
                resource_version=resource_version,
                timeout_seconds=self.resync_seconds,
            )
            for raw in stream:
                if stop.is_set():
                    break
                event_type = str(raw.get("type", ""))
                obj = raw.get("object")
                if obj is None or event_type == "BOOKMARK":
                    continue

                metadata = getattr(obj, "metadata", None)
                if metadata is not None and metadata.resource_version:
                    resource_version = metadata.resource_version

                event = self._translate(event_type, identity_from_pod(obj))
                if event is not None:
                    yield event
            return resource_version
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def _translate(self, event_type: str, identity: InstanceIdentity) -> Optional[InstanceEvent]:
        if event_type in ("ADDED", "MODIFIED"):
            return self._remember(identity)
        if event_type == "DELETED":
            self._known.pop(identity.name, None)
            return InstanceEvent.deleted(identity)
        logger.debug(f"Ignoring watch event type {event_type}")
        return None

    def _remember(self, identity: InstanceIdentity) -> InstanceEvent:
        previous = self._known.get(identity.name)
        self._known[identity.name] = identity
        if previous is None:
            return InstanceEvent.added(identity)
        return InstanceEvent.updated(previous, identity)
