"""Data layer - decoded ECE records, normalization into metrics, snapshot cache."""

from .cache import CacheView, SnapshotCache, StaleFamilyOmitted
from .models import (
    Allocator,
    AllocatorDocument,
    FetchResult,
    Instance,
    MetricFamily,
    MetricSet,
    PlanInfo,
    Proxy,
    ProxyDocument,
    RawSnapshot,
    Sample,
    Zone,
)
from .normalization import (
    ALLOCATORS,
    PROXIES,
    RESOURCES,
    cluster_health_index,
    normalize_allocators,
    normalize_proxies,
    normalize_snapshot,
)

__all__ = [
    "ALLOCATORS",
    "PROXIES",
    "RESOURCES",
    "Allocator",
    "AllocatorDocument",
    "CacheView",
    "FetchResult",
    "Instance",
    "MetricFamily",
    "MetricSet",
    "PlanInfo",
    "Proxy",
    "ProxyDocument",
    "RawSnapshot",
    "Sample",
    "SnapshotCache",
    "StaleFamilyOmitted",
    "Zone",
    "cluster_health_index",
    "normalize_allocators",
    "normalize_proxies",
    "normalize_snapshot",
]
