"""Flatten decoded ECE documents into gauge families.

Pure functions over decoded documents; the cost calculation takes ``now``
from the caller. Each resource maps to its own MetricSet so the families of
a resource that failed this cycle can be filled from cache independently.

Key derivations:
1. Allocator/instance/proxy state -> label values ("true"/"false")
2. Instance health -> per-cluster AND roll-up (``cluster_healthy``)
3. Instances -> counts per (zone, common_cluster_name)
4. Node memory -> month-to-date cost, when an ERU price is configured
"""

from __future__ import annotations

import datetime as dt
import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    Allocator,
    AllocatorDocument,
    Instance,
    MetricFamily,
    MetricSet,
    ProxyDocument,
    RawSnapshot,
    Sample,
)

ALLOCATORS = "allocators"
PROXIES = "proxies"
RESOURCES = (ALLOCATORS, PROXIES)

NULL = "null"
COMMON_CLUSTER_NAME_TAG = "common_cluster_name"

SECONDS_PER_YEAR = 31536000
ERU_MEMORY_GB = 64

# Family name -> help text. Order here is the render order.
ALLOCATOR_FAMILIES = OrderedDict([
    ("ece_allocator_info", "Allocator presence with health and connection state as labels"),
    ("ece_allocator_memory_total", "Allocator memory capacity in MB"),
    ("ece_allocator_memory_used", "Allocator memory in use in MB"),
    ("ece_allocator_instance_info", "Instance presence with health, movement and cluster health as labels"),
    ("ece_allocator_instance_node_memory", "Instance node memory in MB"),
    ("ece_allocator_instance_plan", "Instance with an associated plan"),
    ("ece_allocator_instances_total", "Number of instances per zone and cluster"),
    ("ece_allocator_instance_monthly_cost", "Month-to-date instance cost in cents"),
])

PROXY_FAMILIES = OrderedDict([
    ("ece_proxy_info", "Proxy presence with health as a label"),
])

_LABEL_NAME_INVALID = re.compile(r"[^a-zA-Z0-9_]")


def bool_label(value: Optional[bool]) -> str:
    """Render a boolean as a label value."""
    if value is None:
        return NULL
    return "true" if value else "false"


def sanitize_label_name(key: str) -> str:
    """Turn an arbitrary metadata key into a valid label name.

    >>> sanitize_label_name("instance-type")
    'instance_type'
    """
    name = _LABEL_NAME_INVALID.sub("_", key or "")
    if not name or name[0].isdigit():
        name = f"_{name}"
    return name


def _labels(fixed: List[Tuple[str, str]], extra: Iterable[Tuple[str, str]] = ()) -> Tuple[Tuple[str, str], ...]:
    """Build a label tuple; extra pairs never override fixed names."""
    seen = {name for name, _ in fixed}
    merged = list(fixed)
    for name, value in extra:
        if name in seen:
            continue
        seen.add(name)
        merged.append((name, value))
    return tuple(merged)


def allocator_cluster_name(allocator: Allocator, default: str = "") -> str:
    """Resolve an allocator's common cluster name dimension."""
    tagged = allocator.tag(COMMON_CLUSTER_NAME_TAG)
    return tagged if tagged is not None else default


def metadata_labels(allocator: Allocator) -> List[Tuple[str, str]]:
    return [(sanitize_label_name(key), value) for key, value in allocator.metadata]


def cluster_health_index(instances: Iterable[Instance]) -> Dict[str, bool]:
    """Group instances by logical cluster name and AND their health.

    A name with a single instance is healthy iff that instance is healthy.
    Names that do not appear have no entry; callers treat a missing entry as
    vacuously healthy.
    """
    index: Dict[str, bool] = {}
    for instance in instances:
        index[instance.name] = index.get(instance.name, True) and instance.healthy
    return index


def cents_per_eru_month_to_date(eru_cost: float, now: dt.datetime) -> float:
    """Cost of one ERU from the start of ``now``'s month until ``now``, in cents.

    Args:
        eru_cost: Yearly price of one ERU (64 GB of memory)
        now: UTC timestamp (aware or naive)
    """
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    seconds = (now - month_start).total_seconds()
    return (eru_cost * 100.0 / SECONDS_PER_YEAR) * seconds


def instance_monthly_cost(node_memory_mb: float, cents_per_eru: float) -> float:
    size_gb = node_memory_mb / 1024.0
    return (size_gb / ERU_MEMORY_GB) * cents_per_eru


def normalize_allocators(
    doc: AllocatorDocument,
    *,
    common_cluster_name: str = "",
    eru_cost: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> MetricSet:
    """Flatten an allocator document into allocator-derived families.

    Args:
        doc: Decoded allocator collection
        common_cluster_name: Default cluster dimension for allocators without
            a ``common_cluster_name`` metadata tag
        eru_cost: Yearly ERU price; enables ``ece_allocator_instance_monthly_cost``
        now: Reference time for the cost calculation (UTC)

    Returns:
        MetricSet with one family per entry in ALLOCATOR_FAMILIES that has rows
        or is always emitted.
    """
    allocators = list(doc.allocators)
    health = cluster_health_index(i for a in allocators for i in a.instances)

    rows: Dict[str, List[Sample]] = {name: [] for name in ALLOCATOR_FAMILIES}
    instance_counts: "OrderedDict[Tuple[str, str], int]" = OrderedDict()

    cents_per_eru = None
    if eru_cost is not None:
        cents_per_eru = cents_per_eru_month_to_date(eru_cost, now or dt.datetime.now(dt.timezone.utc))

    for allocator in allocators:
        zone = allocator.zone_id
        cluster = allocator_cluster_name(allocator, common_cluster_name)
        tags = metadata_labels(allocator)

        rows["ece_allocator_info"].append(Sample(
            labels=_labels([
                ("zone", zone),
                ("allocator_id", allocator.allocator_id),
                ("ip", allocator.public_hostname),
                ("connected", bool_label(allocator.connected)),
                ("healthy", bool_label(allocator.healthy)),
                ("maintenance", bool_label(allocator.maintenance_mode)),
                ("common_cluster_name", cluster),
            ], tags),
            value=1,
        ))

        capacity_labels = _labels([
            ("zone", zone),
            ("allocator_id", allocator.allocator_id),
            ("ip", allocator.public_hostname),
            ("common_cluster_name", cluster),
        ], tags)
        rows["ece_allocator_memory_total"].append(Sample(capacity_labels, allocator.memory_total))
        rows["ece_allocator_memory_used"].append(Sample(capacity_labels, allocator.memory_used))

        for instance in allocator.instances:
            name = instance.name
            key = (zone, name)
            instance_counts[key] = instance_counts.get(key, 0) + 1

            rows["ece_allocator_instance_info"].append(Sample(
                labels=_labels([
                    ("zone", zone),
                    ("allocator_id", allocator.allocator_id),
                    ("ip", allocator.public_hostname),
                    ("name", name),
                    ("cluster_id", instance.cluster_id),
                    ("cluster_type", instance.cluster_type),
                    ("deployment_id", instance.deployment_id or NULL),
                    ("configuration_id", instance.instance_configuration_id or NULL),
                    ("healthy", bool_label(instance.healthy)),
                    ("moving", bool_label(instance.moving)),
                    ("cluster_healthy", bool_label(health.get(name, True))),
                ], tags),
                value=1,
            ))

            memory_labels = _labels([
                ("zone", zone),
                ("allocator_id", allocator.allocator_id),
                ("ip", allocator.public_hostname),
                ("name", name),
                ("cluster_id", instance.cluster_id),
                ("cluster_type", instance.cluster_type),
            ], tags)
            rows["ece_allocator_instance_node_memory"].append(Sample(memory_labels, instance.node_memory))

            if cents_per_eru is not None:
                rows["ece_allocator_instance_monthly_cost"].append(
                    Sample(memory_labels, instance_monthly_cost(instance.node_memory, cents_per_eru))
                )

            if instance.plan is not None:
                plan = instance.plan
                rows["ece_allocator_instance_plan"].append(Sample(
                    labels=_labels([
                        ("zone", zone),
                        ("allocator_id", allocator.allocator_id),
                        ("allocator", allocator.public_hostname),
                        ("name", name),
                        ("cluster_type", instance.cluster_type),
                        ("pending", bool_label(plan.pending)),
                        ("version", plan.version or "0"),
                        ("zone_count", str(plan.zone_count or 0)),
                        ("common_cluster_name", name),
                    ], tags),
                    value=1,
                ))

    for (zone, name), count in instance_counts.items():
        rows["ece_allocator_instances_total"].append(Sample(
            labels=(("zone", zone), ("common_cluster_name", name)),
            value=count,
        ))

    families = []
    for family_name, documentation in ALLOCATOR_FAMILIES.items():
        if family_name == "ece_allocator_instance_monthly_cost" and cents_per_eru is None:
            continue
        families.append(MetricFamily(family_name, documentation, tuple(rows[family_name])))
    return MetricSet(families=tuple(families))


def normalize_proxies(doc: ProxyDocument, *, common_cluster_name: str = "") -> MetricSet:
    """Flatten a proxy document into the ``ece_proxy_info`` family."""
    samples = tuple(
        Sample(
            labels=(
                ("zone", proxy.zone),
                ("proxy_id", proxy.proxy_id),
                ("proxy_ip", proxy.proxy_ip or NULL),
                ("hostname", proxy.public_hostname),
                ("healthy", bool_label(proxy.healthy)),
                ("common_cluster_name", common_cluster_name),
            ),
            value=1,
        )
        for proxy in doc.proxies
    )
    return MetricSet(families=(MetricFamily("ece_proxy_info", PROXY_FAMILIES["ece_proxy_info"], samples),))


def normalize_snapshot(
    snapshot: RawSnapshot,
    *,
    common_cluster_name: str = "",
    eru_cost: Optional[float] = None,
) -> Dict[str, MetricSet]:
    """Normalize every successfully fetched resource of a cycle.

    Failed resources are absent from the result.
    """
    sets: Dict[str, MetricSet] = {}
    if snapshot.allocators.ok:
        sets[ALLOCATORS] = normalize_allocators(
            snapshot.allocators.document,
            common_cluster_name=common_cluster_name,
            eru_cost=eru_cost,
            now=dt.datetime.fromtimestamp(snapshot.fetched_at, tz=dt.timezone.utc),
        )
    if snapshot.proxies.ok:
        sets[PROXIES] = normalize_proxies(
            snapshot.proxies.document,
            common_cluster_name=common_cluster_name,
        )
    return sets
