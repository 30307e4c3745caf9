#!/usr/bin/env python3
"""gke-private-dns - A records for Kubernetes pods in a private Cloud DNS zone

Watches a labeled set of pods in one namespace and keeps an A record per pod
in a Google Cloud DNS managed zone, so pods stay reachable under a stable name
while their IPs change. Two paths run side by side:

    - the event path reacts to pod add/update/delete events in order;
    - the periodic scan diffs all pods against the zone and repairs drift.

Record names:
    full  (default)   <pod>.<owner>.<domain>.
    short             <pod>.<domain>.

Environment variables (each may also be set in the YAML config file under the
lowercase key shown in brackets; environment variables win):

    Kubernetes:
        NAMESPACE              Namespace to watch [namespace] (default: default)
        LABEL_SELECTOR         Label selector for pods [label_selector] (default: all pods)
        WATCH_RESYNC_SECONDS   Re-list pods this often [watch_resync] (default: 600)

    Cloud DNS:
        DNS_DOMAIN             Domain for generated records [domain] (required)
        DNS_ZONE               Managed zone name [zone] (required)
        GCP_PROJECT            Project of the zone [project]
                               (default: read from the GCE metadata server)
        GCP_CREDENTIALS_FILE   Service account JSON key [credentials_file]
                               (default: Application Default Credentials)
        NAME_FORMAT            "full" or "short" [name_format] (default: full)

    Runtime:
        IP_TIMEOUT_SECONDS     How long to wait for a new pod's IP [ip_timeout] (default: 60)
        SYNC_INTERVAL_SECONDS  Periodic scan interval [sync_interval] (default: 1800)
        DELETE_STALE_RECORDS   Delete records with no matching pod during scans
                               [delete_stale] (default: false)
        SYNC_MODE              "watch" or "once" (single scan) [sync_mode] (default: watch)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR [log_level] (default: INFO)
        CONFIG_PATH            YAML config file (default: /config/gke-private-dns.yaml)

    Example config file:
        namespace: backend
        label_selector: "dns=private"
        domain: svc.internal
        zone: private-zone
        name_format: short
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import requests
import yaml

from gke_private_dns.instance_source import (
    InstanceSourceError,
    KubernetesInstanceSource,
    build_core_api,
)
from gke_private_dns.models import NameFormat, normalize_domain
from gke_private_dns.reconciler import Reconciler, RecordWriter
from gke_private_dns.record_store import CloudDNSRecordStore, detect_project
from gke_private_dns.scanner import PeriodicScanner

DEFAULT_CONFIG_PATH = "/config/gke-private-dns.yaml"
SHUTDOWN_GRACE_SECONDS = 10

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Settings:
    namespace: str = "default"
    label_selector: str = ""
    domain: str = ""
    zone: str = ""
    project: str = ""
    credentials_file: str = ""
    name_format: str = "full"
    ip_timeout: float = 60.0
    sync_interval: float = 1800.0
    watch_resync: int = 600
    delete_stale: bool = False
    sync_mode: str = "watch"
    log_level: str = "INFO"


# env var -> settings field
ENV_KEYS = {
    "NAMESPACE": "namespace",
    "LABEL_SELECTOR": "label_selector",
    "DNS_DOMAIN": "domain",
    "DNS_ZONE": "zone",
    "GCP_PROJECT": "project",
    "GCP_CREDENTIALS_FILE": "credentials_file",
    "NAME_FORMAT": "name_format",
    "IP_TIMEOUT_SECONDS": "ip_timeout",
    "SYNC_INTERVAL_SECONDS": "sync_interval",
    "WATCH_RESYNC_SECONDS": "watch_resync",
    "DELETE_STALE_RECORDS": "delete_stale",
    "SYNC_MODE": "sync_mode",
    "LOG_LEVEL": "log_level",
}


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load the YAML config file. Missing file means no overrides."""
    path = Path(config_path)
    if not path.is_file():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return data


def load_settings(
    environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None
) -> Settings:
    """Build settings from the config file overlaid with environment variables."""
    env = os.environ if environ is None else environ
    path = config_path or env.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)

    raw: Dict[str, Any] = {}
    for key, value in load_config_file(path).items():
        if key in Settings.__dataclass_fields__:
            raw[key] = value
        else:
            logger.warning(f"Ignoring unknown config key '{key}' in {path}")

    for env_name, key in ENV_KEYS.items():
        value = env.get(env_name)
        if value is not None and value.strip() != "":
            raw[key] = value

    return Settings(
        namespace=str(raw.get("namespace", Settings.namespace)).strip(),
        label_selector=str(raw.get("label_selector") or "").strip(),
        domain=normalize_domain(str(raw.get("domain") or "")),
        zone=str(raw.get("zone") or "").strip(),
        project=str(raw.get("project") or "").strip(),
        credentials_file=str(raw.get("credentials_file") or "").strip(),
        name_format=str(raw.get("name_format", Settings.name_format)).lower().strip(),
        ip_timeout=float(raw.get("ip_timeout", Settings.ip_timeout)),
        sync_interval=float(raw.get("sync_interval", Settings.sync_interval)),
        watch_resync=int(raw.get("watch_resync", Settings.watch_resync)),
        delete_stale=_parse_bool(raw.get("delete_stale"), default=False),
        sync_mode=str(raw.get("sync_mode", Settings.sync_mode)).lower().strip(),
        log_level=str(raw.get("log_level", Settings.log_level)).upper().strip(),
    )


def validate_config(settings: Settings) -> List[str]:
    """Return every configuration problem found."""
    errors = []
    if not settings.domain:
        errors.append("DNS_DOMAIN is required")
    if not settings.zone:
        errors.append("DNS_ZONE is required")
    if not settings.namespace:
        errors.append("NAMESPACE must not be empty")
    if settings.name_format not in {f.value for f in NameFormat}:
        errors.append(f"Invalid NAME_FORMAT: {settings.name_format}. Use 'full' or 'short'")
    if settings.sync_mode not in ("watch", "once"):
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")
    if settings.ip_timeout <= 0:
        errors.append("IP_TIMEOUT_SECONDS must be > 0")
    if settings.sync_interval <= 0:
        errors.append("SYNC_INTERVAL_SECONDS must be > 0")
    if settings.watch_resync <= 0:
        errors.append("WATCH_RESYNC_SECONDS must be > 0")
    if settings.credentials_file and not Path(settings.credentials_file).is_file():
        errors.append(f"GCP_CREDENTIALS_FILE not found: {settings.credentials_file}")
    return errors


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Main
# =============================================================================


def resolve_project(settings: Settings) -> str:
    if settings.project:
        return settings.project
    try:
        project = detect_project()
    except requests.exceptions.RequestException as e:
        raise ValueError(f"GCP_PROJECT not set and metadata server unavailable: {e}") from e
    logger.info(f"Using project from metadata server: {project}")
    return project


def _start_thread(target: Any, name: str) -> threading.Thread:
    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()
    return thread


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except (OSError, ValueError, yaml.YAMLError) as e:
        setup_logging("INFO")
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    setup_logging(settings.log_level)

    errors = validate_config(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    stop = threading.Event()

    def _shutdown(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        project = resolve_project(settings)
        store = CloudDNSRecordStore.from_credentials(
            project, settings.zone, settings.credentials_file, stop_event=stop
        )
        source = KubernetesInstanceSource(
            build_core_api(),
            settings.namespace,
            settings.label_selector,
            resync_seconds=settings.watch_resync,
        )
    except Exception as e:
        logger.error(f"Failed to initialize clients: {e}", exc_info=True)
        sys.exit(1)

    logger.info(f"gke-private-dns: {source.name} -> {store.name}")
    logger.info(
        f"Watching pods in '{settings.namespace}' with selector '{settings.label_selector}'"
    )
    logger.info(
        f"Zone: {project}/{settings.zone}, domain: {settings.domain}, "
        f"name format: {settings.name_format}"
    )
    logger.info(f"Sync mode: {settings.sync_mode}")

    if not store.test_connection():
        logger.error(f"Cannot connect to {store.name}. Exiting.")
        sys.exit(1)

    writer = RecordWriter(
        store, settings.domain, NameFormat(settings.name_format), stop_event=stop
    )
    scanner = PeriodicScanner(
        source,
        writer,
        interval=settings.sync_interval,
        delete_stale=settings.delete_stale,
        stop_event=stop,
    )

    if settings.sync_mode == "once":
        if scanner.scan_once() is None:
            sys.exit(1)
        return

    reconciler = Reconciler(source, writer, ip_timeout=settings.ip_timeout, stop_event=stop)
    failed = threading.Event()

    def _run_events():
        try:
            reconciler.run()
        except InstanceSourceError as e:
            logger.error(f"Fatal error: {e}")
            failed.set()
            stop.set()

    threads = [
        _start_thread(_run_events, "event-loop"),
        _start_thread(scanner.run, "periodic-scanner"),
    ]

    # Both loops block on network I/O; the main thread only waits for shutdown.
    while not stop.wait(1):
        pass

    source.stop()
    for thread in threads:
        thread.join(timeout=SHUTDOWN_GRACE_SECONDS)
        if thread.is_alive():
            logger.warning(f"Thread {thread.name} did not stop within {SHUTDOWN_GRACE_SECONDS}s")

    if failed.is_set():
        sys.exit(1)
    logger.info("Shut down")


if __name__ == "__main__":
    main()
