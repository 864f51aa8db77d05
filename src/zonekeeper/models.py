from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

KIND_VOLUME = "volume"
KIND_INTERFACE = "interface"
KIND_ADDRESS = "address"

VALID_KINDS = frozenset({KIND_VOLUME, KIND_INTERFACE, KIND_ADDRESS})

# Local-state detail set to False until a created resource has been prepared.
INITIALIZED_KEY = "initialized"


def check_kind(kind: str) -> str:
    if kind not in VALID_KINDS:
        raise ValueError(f"Unknown resource kind '{kind}' (valid: {sorted(VALID_KINDS)})")
    return kind


@dataclass
class Attachment:
    node_id: str
    state: str
    device: str = ""
    attachment_id: str = ""


@dataclass
class ResourceDescriptor:
    id: str
    kind: str
    zone: str
    tags: Dict[str, str] = field(default_factory=dict)
    state: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def attachment_state(self) -> str:
        if len(self.attachments) == 1:
            return self.attachments[0].state
        return ""

    def attached_to(self, node_id: str) -> bool:
        return any(a.node_id == node_id for a in self.attachments)

    def matches_tags(self, selector: Dict[str, str]) -> bool:
        return all(self.tags.get(k) == v for k, v in selector.items())


@dataclass(frozen=True)
class LeaseRecord:
    """Ownership claim stored as a single tag value ``<holder>_<unix-seconds>``."""

    holder: str
    timestamp: int

    def encode(self) -> str:
        return f"{self.holder}_{self.timestamp}"

    @classmethod
    def parse(cls, value: str) -> "LeaseRecord":
        # Holder ids may contain underscores; the timestamp never does.
        holder, sep, ts = value.rpartition("_")
        if not sep or not holder or not ts.isdigit():
            raise ValueError(f"Malformed lease value '{value}'")
        return cls(holder=holder, timestamp=int(ts))

    def age(self, now: float) -> float:
        return now - self.timestamp


@dataclass
class LocalStateRecord:
    resource_id: str
    kind: str
    zone: str = ""
    claimed_at: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def initialized(self) -> bool:
        return self.details.get(INITIALIZED_KEY, True) is not False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind,
            "zone": self.zone,
            "claimed_at": self.claimed_at,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalStateRecord":
        return cls(
            resource_id=str(data["resource_id"]),
            kind=str(data["kind"]),
            zone=str(data.get("zone", "")),
            claimed_at=int(data.get("claimed_at", 0)),
            details=dict(data.get("details") or {}),
        )


@dataclass
class ConvergenceEvent:
    state: str = ""
    attachment_state: str = ""
    resource: Optional[ResourceDescriptor] = None
    error: Optional[Exception] = None
    converged: bool = False


@dataclass(frozen=True)
class NodeIdentity:
    """The local node: ``node_id`` is the lease holder, ``name`` is what the provider API takes."""

    node_id: str
    zone: str
    name: str = ""

    @property
    def api_name(self) -> str:
        return self.name or self.node_id

    @property
    def region(self) -> str:
        # us-east1-c -> us-east1, us-east-1a -> us-east-1
        if "-" in self.zone and self.zone.rsplit("-", 1)[-1].isalpha():
            return self.zone.rsplit("-", 1)[0]
        return self.zone[:-1] if self.zone and self.zone[-1].isalpha() else self.zone


SOURCE_ATTACHED = "attached"
SOURCE_CACHE = "cache"
SOURCE_CLAIMED = "claimed"
SOURCE_CREATED = "created"


@dataclass
class ProvisionResult:
    resource: ResourceDescriptor
    fresh: bool
    source: str
