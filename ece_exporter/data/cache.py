"""Latest-snapshot cache with per-resource staleness bookkeeping.

Holds the most recent successfully normalized MetricSet for each resource
(``allocators``, ``proxies``). Entries are only ever replaced wholesale, and
only by a cycle with a higher sequence number than the one that wrote them.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import MetricSet


@dataclass(frozen=True)
class CacheEntry:
    """A stored MetricSet and the cycle that produced it."""

    metric_set: MetricSet
    fetched_at: float
    sequence: int


@dataclass(frozen=True)
class StaleFamilyOmitted:
    """A resource whose families were left out of a served snapshot.

    ``age`` is None when the resource has never been cached.
    """

    resource: str
    age: Optional[float]
    ceiling: float

    @property
    def reason(self) -> str:
        return "never_cached" if self.age is None else "stale"

    def __str__(self) -> str:
        if self.age is None:
            return f"{self.resource}: no data cached yet"
        return f"{self.resource}: data is {self.age:.1f}s old (ceiling {self.ceiling:.1f}s)"


@dataclass
class CacheView:
    """What the cache can serve right now, per resource."""

    served: Dict[str, MetricSet] = field(default_factory=dict)
    ages: Dict[str, float] = field(default_factory=dict)
    omitted: List[StaleFamilyOmitted] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.served


class SnapshotCache:
    """Thread-safe store of the latest MetricSet per resource.

    Args:
        staleness_ceiling: Maximum age in seconds at which an entry is still
            served. An entry whose age equals the ceiling is served.
        clock: Wall-clock source, ``time.time`` by default
    """

    def __init__(self, staleness_ceiling: float, *, clock: Callable[[], float] = time.time):
        if staleness_ceiling <= 0:
            raise ValueError("staleness_ceiling must be positive")
        self.staleness_ceiling = float(staleness_ceiling)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def update(self, resource: str, metric_set: MetricSet, fetched_at: float, sequence: int) -> bool:
        """Replace the entry for ``resource`` if ``sequence`` is newer.

        Returns:
            True if the entry was replaced, False if a newer cycle already
            wrote this resource.
        """
        entry = CacheEntry(metric_set=metric_set, fetched_at=fetched_at, sequence=sequence)
        with self._lock:
            current = self._entries.get(resource)
            if current is not None and current.sequence >= sequence:
                return False
            self._entries[resource] = entry
            return True

    def get(self, resource: str) -> Optional[Tuple[MetricSet, float]]:
        """Return ``(metric_set, age)`` for ``resource``, or None if never cached."""
        with self._lock:
            entry = self._entries.get(resource)
        if entry is None:
            return None
        return entry.metric_set, self._clock() - entry.fetched_at

    def entry(self, resource: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(resource)

    def is_fresh(self, age: float) -> bool:
        return age <= self.staleness_ceiling

    def serve(self, resources: Iterable[str]) -> CacheView:
        """Collect every requested resource that is within the ceiling."""
        with self._lock:
            entries = {resource: self._entries.get(resource) for resource in resources}
        now = self._clock()

        view = CacheView()
        for resource, entry in entries.items():
            if entry is None:
                view.omitted.append(StaleFamilyOmitted(resource, None, self.staleness_ceiling))
                continue
            age = now - entry.fetched_at
            if self.is_fresh(age):
                view.served[resource] = entry.metric_set
                view.ages[resource] = age
            else:
                view.omitted.append(StaleFamilyOmitted(resource, age, self.staleness_ceiling))
        return view

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
