"""Shared data types: pod identities, lifecycle events and DNS record sets."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

RECORD_TYPE = "A"
RECORD_TTL = 60

# =============================================================================
# Enums
# =============================================================================


class NameFormat(Enum):
    """How record names are derived from a pod.

    SHORT: <pod>.<domain>.
    FULL:  <pod>.<owner>.<domain>.
    """

    SHORT = "short"
    FULL = "full"


class EventType(Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class InstanceIdentity:
    """The parts of a pod that matter for DNS."""

    name: str
    namespace: str
    ip: str = ""
    owner_name: Optional[str] = None

    @property
    def has_ip(self) -> bool:
        return bool(self.ip)


@dataclass(frozen=True)
class InstanceEvent:
    """A single pod lifecycle event.

    `old` is only set for UPDATED events.
    """

    type: EventType
    instance: InstanceIdentity
    old: Optional[InstanceIdentity] = None

    @classmethod
    def added(cls, instance: InstanceIdentity) -> "InstanceEvent":
        return cls(EventType.ADDED, instance)

    @classmethod
    def updated(cls, old: InstanceIdentity, new: InstanceIdentity) -> "InstanceEvent":
        return cls(EventType.UPDATED, new, old)

    @classmethod
    def deleted(cls, instance: InstanceIdentity) -> "InstanceEvent":
        return cls(EventType.DELETED, instance)


@dataclass(frozen=True)
class DNSRecordSet:
    """A single-address A record set as stored in the zone."""

    name: str
    ip: str
    ttl: int = RECORD_TTL
    type: str = RECORD_TYPE

    def to_api(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "ttl": self.ttl, "rrdatas": [self.ip]}

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "DNSRecordSet":
        rrdatas = data.get("rrdatas") or [""]
        return cls(
            name=str(data["name"]),
            ip=str(rrdatas[0]),
            ttl=int(data.get("ttl", RECORD_TTL)),
            type=str(data.get("type", RECORD_TYPE)),
        )


# =============================================================================
# Naming
# =============================================================================


def normalize_domain(domain: str) -> str:
    """Strip surrounding whitespace and dots from a configured domain."""
    return domain.strip().strip(".")


def record_name(instance: InstanceIdentity, domain: str, fmt: NameFormat) -> Optional[str]:
    """Return the FQDN for a pod, or None if it cannot be derived.

    FULL names need an owner; pods without an owner reference get no name.
    """
    domain = normalize_domain(domain)
    if fmt == NameFormat.SHORT:
        return f"{instance.name}.{domain}."
    if not instance.owner_name:
        return None
    return f"{instance.name}.{instance.owner_name}.{domain}."


def short_key(name: str) -> str:
    """Return the label before the first dot of a record name."""
    return name.split(".", 1)[0]
