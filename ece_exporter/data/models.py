"""Data models for ECE control-plane state and normalized metrics.

This module defines two groups of structures:

1. DECODED UPSTREAM RECORDS
   - AllocatorDocument -> Zone -> Allocator -> Instance -> PlanInfo
   - ProxyDocument -> Proxy
   Each record is a frozen dataclass built by a ``from_dict`` classmethod that
   reads fields one at a time, applies defaults for missing fields and ignores
   unknown ones. Records hold no back-references to their parents.

2. CYCLE AND METRIC STRUCTURES
   - FetchResult: a document XOR a CollectorError for one resource
   - RawSnapshot: both fetch results for one collection cycle
   - Sample / MetricFamily / MetricSet: immutable, render-ready gauge rows
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from ..collectors.base import CollectorError

Labels = Tuple[Tuple[str, str], ...]


def _as_str(value: Any, default: Optional[str] = None) -> Optional[str]:
    if value is None:
        return default
    return str(value)


def _as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_number(value: Any, default: float = 0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


# =============================================================================
# Allocator document
# =============================================================================


@dataclass(frozen=True)
class PlanInfo:
    """A pending or in-flight configuration change targeting an instance."""

    pending: bool
    version: Optional[str] = None
    zone_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanInfo":
        zone_count = data.get("zone_count")
        return cls(
            pending=_as_bool(data.get("pending")),
            version=_as_str(data.get("version")),
            zone_count=int(zone_count) if isinstance(zone_count, (int, float)) else None,
        )


@dataclass(frozen=True)
class Instance:
    """A single deployed container of a logical cluster."""

    instance_name: str
    cluster_id: str
    cluster_type: str
    cluster_name: Optional[str] = None
    deployment_id: Optional[str] = None
    instance_configuration_id: Optional[str] = None
    node_memory: float = 0  # MB
    healthy: bool = False
    moving: bool = False
    cluster_healthy: Optional[bool] = None  # As reported upstream; informational only
    plan: Optional[PlanInfo] = None

    @property
    def name(self) -> str:
        """Logical cluster name used for grouping and the ``name`` label."""
        return self.cluster_name if self.cluster_name is not None else self.cluster_id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Instance":
        plans_info = data.get("plans_info")
        cluster_healthy = data.get("cluster_healthy")
        return cls(
            instance_name=_as_str(data.get("instance_name"), ""),
            cluster_id=_as_str(data.get("cluster_id"), ""),
            cluster_type=_as_str(data.get("cluster_type"), "unknown"),
            cluster_name=_as_str(data.get("cluster_name")),
            deployment_id=_as_str(data.get("deployment_id")),
            instance_configuration_id=_as_str(data.get("instance_configuration_id")),
            node_memory=_as_number(data.get("node_memory")),
            healthy=_as_bool(data.get("healthy")),
            moving=_as_bool(data.get("moving")),
            cluster_healthy=None if cluster_healthy is None else _as_bool(cluster_healthy),
            plan=PlanInfo.from_dict(plans_info) if isinstance(plans_info, dict) else None,
        )


@dataclass(frozen=True)
class Allocator:
    """A host that runs instance containers."""

    allocator_id: str
    zone_id: str
    public_hostname: str = ""
    host_ip: Optional[str] = None
    connected: bool = False
    healthy: bool = False
    maintenance_mode: bool = False
    memory_total: float = 0  # MB
    memory_used: float = 0  # MB
    instances: Tuple[Instance, ...] = ()
    metadata: Tuple[Tuple[str, str], ...] = ()

    def tag(self, key: str) -> Optional[str]:
        """Return the value of a metadata tag, or None."""
        for tag_key, value in self.metadata:
            if tag_key == key:
                return value
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], zone_id: Optional[str] = None) -> "Allocator":
        status = _as_mapping(data.get("status"))
        memory = _as_mapping(_as_mapping(data.get("capacity")).get("memory"))
        metadata = []
        for item in _as_list(data.get("metadata")):
            if isinstance(item, dict) and item.get("key") is not None:
                metadata.append((str(item["key"]), _as_str(item.get("value"), "")))
        return cls(
            allocator_id=_as_str(data.get("allocator_id"), ""),
            zone_id=_as_str(data.get("zone_id"), zone_id or ""),
            public_hostname=_as_str(data.get("public_hostname"), ""),
            host_ip=_as_str(data.get("host_ip")),
            connected=_as_bool(status.get("connected")),
            healthy=_as_bool(status.get("healthy")),
            maintenance_mode=_as_bool(status.get("maintenance_mode")),
            memory_total=_as_number(memory.get("total")),
            memory_used=_as_number(memory.get("used")),
            instances=tuple(
                Instance.from_dict(item) for item in _as_list(data.get("instances")) if isinstance(item, dict)
            ),
            metadata=tuple(metadata),
        )


@dataclass(frozen=True)
class Zone:
    """An availability zone and the allocators it holds."""

    zone_id: str
    allocators: Tuple[Allocator, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Zone":
        zone_id = _as_str(data.get("zone_id"), "")
        return cls(
            zone_id=zone_id,
            allocators=tuple(
                Allocator.from_dict(item, zone_id=zone_id)
                for item in _as_list(data.get("allocators"))
                if isinstance(item, dict)
            ),
        )


@dataclass(frozen=True)
class AllocatorDocument:
    """Decoded ``/platform/infrastructure/allocators`` response."""

    zones: Tuple[Zone, ...] = ()

    @property
    def allocators(self) -> Iterator[Allocator]:
        for zone in self.zones:
            yield from zone.allocators

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocatorDocument":
        if not isinstance(data, dict) or not isinstance(data.get("zones"), list):
            raise ValueError("allocator document must be an object with a 'zones' list")
        return cls(zones=tuple(Zone.from_dict(z) for z in data["zones"] if isinstance(z, dict)))


# =============================================================================
# Proxy document
# =============================================================================


@dataclass(frozen=True)
class Proxy:
    """A request-routing node."""

    proxy_id: str
    zone: str
    healthy: bool = False
    public_hostname: str = ""
    proxy_ip: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proxy":
        return cls(
            proxy_id=_as_str(data.get("proxy_id"), ""),
            zone=_as_str(data.get("zone"), ""),
            healthy=_as_bool(data.get("healthy")),
            public_hostname=_as_str(data.get("public_hostname"), ""),
            proxy_ip=_as_str(data.get("proxy_ip")),
        )


@dataclass(frozen=True)
class ProxyDocument:
    """Decoded ``/platform/infrastructure/proxies`` response."""

    proxies: Tuple[Proxy, ...] = ()
    proxies_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyDocument":
        if not isinstance(data, dict) or not isinstance(data.get("proxies"), list):
            raise ValueError("proxy document must be an object with a 'proxies' list")
        proxies = tuple(Proxy.from_dict(p) for p in data["proxies"] if isinstance(p, dict))
        return cls(proxies=proxies, proxies_count=int(_as_number(data.get("proxies_count"), len(proxies))))


# =============================================================================
# Cycle results
# =============================================================================


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one resource fetch: a document XOR an error."""

    document: Any = None
    error: Optional[CollectorError] = None

    def __post_init__(self):
        if (self.document is None) == (self.error is None):
            raise ValueError("FetchResult needs exactly one of document or error")

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, document: Any) -> "FetchResult":
        return cls(document=document)

    @classmethod
    def failure(cls, error: CollectorError) -> "FetchResult":
        return cls(error=error)


@dataclass(frozen=True)
class RawSnapshot:
    """Decoded-but-unflattened upstream results for one cycle."""

    sequence: int
    allocators: FetchResult
    proxies: FetchResult
    fetched_at: float  # epoch seconds

    def results(self) -> Dict[str, FetchResult]:
        return {"allocators": self.allocators, "proxies": self.proxies}

    @property
    def complete(self) -> bool:
        """True when every resource fetch succeeded."""
        return self.allocators.ok and self.proxies.ok


# =============================================================================
# Metrics
# =============================================================================


@dataclass(frozen=True)
class Sample:
    """One labeled gauge row."""

    labels: Labels
    value: float

    @property
    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)


@dataclass(frozen=True)
class MetricFamily:
    """A named gauge family and its rows."""

    name: str
    documentation: str
    samples: Tuple[Sample, ...] = ()
    type: str = "gauge"

    def __len__(self) -> int:
        return len(self.samples)


@dataclass(frozen=True)
class MetricSet:
    """Normalized, render-ready metric families for one cycle."""

    families: Tuple[MetricFamily, ...] = field(default_factory=tuple)

    def get(self, name: str) -> Optional[MetricFamily]:
        for family in self.families:
            if family.name == name:
                return family
        return None

    def names(self) -> List[str]:
        return [family.name for family in self.families]

    def __iter__(self) -> Iterator[MetricFamily]:
        return iter(self.families)

    def __bool__(self) -> bool:
        return bool(self.families)

    @classmethod
    def merge(cls, sets: Iterable["MetricSet"]) -> "MetricSet":
        """Concatenate families from several sets, in order.

        Sets are expected to cover disjoint family names; a repeated name keeps
        the first occurrence.
        """
        seen = set()
        families = []
        for metric_set in sets:
            for family in metric_set:
                if family.name in seen:
                    continue
                seen.add(family.name)
                families.append(family)
        return cls(families=tuple(families))
