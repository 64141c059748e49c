"""Collection cycles, exporter state and the optional background refresher.

A collection cycle fetches allocators and proxies in parallel under one
deadline. Concurrent callers share a single in-flight cycle.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..collectors.base import CollectorError, FetchTimeoutError, TransportError
from ..data.cache import SnapshotCache, StaleFamilyOmitted
from ..data.models import FetchResult, MetricFamily, MetricSet, RawSnapshot, Sample
from ..data.normalization import ALLOCATORS, PROXIES, RESOURCES, normalize_snapshot


def _log(msg: str) -> None:
    """Print with flush for reliable output in daemon threads."""
    print(msg, flush=True)


class Flight:
    """One in-flight collection cycle that any number of callers can wait on."""

    def __init__(self, sequence: int):
        self.sequence = sequence
        self._done = threading.Event()
        self._snapshot: Optional[RawSnapshot] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[RawSnapshot]:
        """Block until the cycle settles.

        Returns:
            The cycle's snapshot, or None if ``timeout`` elapsed first.
        """
        if self._done.wait(timeout):
            return self._snapshot
        return None

    def _resolve(self, snapshot: RawSnapshot) -> None:
        self._snapshot = snapshot
        self._done.set()


class SnapshotAggregator:
    """Runs single-flight collection cycles against the ECE client.

    Args:
        client: Object with ``fetch_allocators(deadline)`` and
            ``fetch_proxies(deadline)``; normally an ECEClient
        timeout: Global cycle timeout in seconds
        executor: Pool for the two fetches; a 2-worker pool is created if omitted
        on_complete: Called with each RawSnapshot before waiters are released
        clock: Wall-clock source used for ``fetched_at``
    """

    def __init__(
        self,
        client,
        timeout: float,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
        on_complete: Optional[Callable[[RawSnapshot], None]] = None,
        clock: Callable[[], float] = time.time,
        verbose: bool = False,
    ):
        self.client = client
        self.timeout = float(timeout)
        self.on_complete = on_complete
        self.verbose = verbose
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="ece-fetch")
        self._lock = threading.Lock()
        self._flight: Optional[Flight] = None
        # Last submitted fetch per resource; only the cycle thread touches it
        self._outstanding: Dict[str, Future] = {}
        self._sequence = 0
        self.failures: Counter = Counter()
        self.last_snapshot: Optional[RawSnapshot] = None

    @property
    def collector_name(self) -> str:
        return getattr(self.client, "name", "ece")

    def start(self) -> Flight:
        """Start a cycle, or join the one already in flight."""
        with self._lock:
            if self._flight is not None:
                return self._flight
            self._sequence += 1
            flight = Flight(self._sequence)
            self._flight = flight

        runner = threading.Thread(
            target=self._run_cycle,
            args=(flight,),
            name=f"ece-cycle-{flight.sequence}",
            daemon=True,
        )
        runner.start()
        return flight

    def collect(self) -> RawSnapshot:
        """Run (or join) one collection cycle and return its snapshot."""
        return self.start().wait()

    def in_flight(self) -> bool:
        with self._lock:
            return self._flight is not None

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # --- Cycle internals ---

    def _run_cycle(self, flight: Flight) -> None:
        started = time.monotonic()
        try:
            snapshot = self._fetch_all(flight.sequence)
        except Exception as exc:
            # Executor already shut down or similar: report both resources as failed
            error = TransportError(self.collector_name, f"Collection cycle failed: {exc}", exc)
            snapshot = RawSnapshot(
                sequence=flight.sequence,
                allocators=FetchResult.failure(error),
                proxies=FetchResult.failure(error),
                fetched_at=self._clock(),
            )

        for resource, result in snapshot.results().items():
            if not result.ok:
                self.failures[(resource, result.error.kind)] += 1
                _log(f"[aggregator] cycle {flight.sequence}: {resource} fetch failed ({result.error.kind}): {result.error}")

        if self.verbose:
            _log(
                f"[aggregator] cycle {flight.sequence} settled in {time.monotonic() - started:.2f}s "
                f"(allocators={'ok' if snapshot.allocators.ok else 'error'}, "
                f"proxies={'ok' if snapshot.proxies.ok else 'error'})"
            )

        try:
            if self.on_complete is not None:
                self.on_complete(snapshot)
        except Exception as exc:
            _log(f"[aggregator] cycle {flight.sequence}: completion callback failed: {exc}")
        finally:
            with self._lock:
                self.last_snapshot = snapshot
                if self._flight is flight:
                    self._flight = None
            flight._resolve(snapshot)

    def _fetch_all(self, sequence: int) -> RawSnapshot:
        deadline = time.monotonic() + self.timeout
        fetchers = {ALLOCATORS: self.client.fetch_allocators, PROXIES: self.client.fetch_proxies}
        results: Dict[str, FetchResult] = {}
        futures: Dict[str, Future] = {}
        for resource, fetch in fetchers.items():
            previous = self._outstanding.get(resource)
            if previous is not None and not previous.done():
                # A fetch from an earlier cycle outlived its deadline and is still running
                results[resource] = FetchResult.failure(FetchTimeoutError(
                    self.collector_name,
                    f"previous {resource} fetch is still outstanding",
                ))
                continue
            futures[resource] = self._outstanding[resource] = self._executor.submit(fetch, deadline)

        if futures:
            wait(list(futures.values()), timeout=max(0.0, deadline - time.monotonic()))
        for resource, future in futures.items():
            results[resource] = self._settle(resource, future)
        return RawSnapshot(
            sequence=sequence,
            allocators=results[ALLOCATORS],
            proxies=results[PROXIES],
            fetched_at=self._clock(),
        )

    def _settle(self, resource: str, future: Future) -> FetchResult:
        if not future.done():
            future.cancel()
            return FetchResult.failure(FetchTimeoutError(
                self.collector_name,
                f"{resource} fetch did not finish within {self.timeout:g}s",
            ))
        exc = future.exception()
        if exc is None:
            return FetchResult.success(future.result())
        if isinstance(exc, CollectorError):
            return FetchResult.failure(exc)
        return FetchResult.failure(TransportError(
            self.collector_name,
            f"Unexpected error fetching {resource}: {exc}",
            exc,
        ))


@dataclass
class ScrapeResult:
    """What one scrape gets to render."""

    metric_set: MetricSet
    served: List[str] = field(default_factory=list)
    omitted: List[StaleFamilyOmitted] = field(default_factory=list)
    snapshot: Optional[RawSnapshot] = None

    @property
    def ok(self) -> bool:
        """False when no resource had usable data."""
        return bool(self.served)


class ExporterState:
    """Ties the aggregator, normalizer and cache together for scrapes.

    The aggregator's completion callback normalizes each successful resource
    and writes it to the cache; scrapes read only from the cache.
    """

    def __init__(
        self,
        client,
        cache: SnapshotCache,
        *,
        timeout: float,
        common_cluster_name: str = "",
        eru_cost: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], float] = time.time,
        verbose: bool = False,
    ):
        self.cache = cache
        self.common_cluster_name = common_cluster_name
        self.eru_cost = eru_cost
        self.verbose = verbose
        self.aggregator = SnapshotAggregator(
            client,
            timeout,
            executor=executor,
            on_complete=self.apply_snapshot,
            clock=clock,
            verbose=verbose,
        )

    def apply_snapshot(self, snapshot: RawSnapshot) -> None:
        """Normalize a finished cycle and store each resource's families."""
        sets = normalize_snapshot(
            snapshot,
            common_cluster_name=self.common_cluster_name,
            eru_cost=self.eru_cost,
        )
        for resource, metric_set in sets.items():
            applied = self.cache.update(resource, metric_set, snapshot.fetched_at, snapshot.sequence)
            if not applied:
                _log(f"[cache] cycle {snapshot.sequence}: {resource} superseded by a newer cycle, not stored")

    def refresh(self) -> RawSnapshot:
        """Run or join a cycle and wait for it."""
        return self.aggregator.collect()

    def scrape(self, timeout: Optional[float] = None) -> ScrapeResult:
        """Trigger or join a cycle and return everything servable.

        Args:
            timeout: Caller's own deadline in seconds. When it elapses before
                the cycle settles, whatever the cache holds is served.
        """
        flight = self.aggregator.start()
        snapshot = flight.wait(timeout)
        if snapshot is None:
            _log(f"[exporter] scrape deadline of {timeout:g}s elapsed during cycle {flight.sequence}; serving cache")

        view = self.cache.serve(RESOURCES)
        for omission in view.omitted:
            _log(f"[cache] omitting {omission}")

        families = [view.served[resource] for resource in RESOURCES if resource in view.served]
        families.append(self._exporter_metrics(view.ages, view.omitted))
        return ScrapeResult(
            metric_set=MetricSet.merge(families),
            served=list(view.served),
            omitted=list(view.omitted),
            snapshot=snapshot,
        )

    def shutdown(self) -> None:
        self.aggregator.shutdown()

    def _exporter_metrics(self, ages: Dict[str, float], omitted: List[StaleFamilyOmitted]) -> MetricSet:
        last = self.aggregator.last_snapshot
        up = MetricFamily(
            "ece_cluster_up",
            "Whether every ECE fetch in the last completed cycle succeeded",
            (Sample((), 1 if last is not None and last.complete else 0),),
        )
        failures = MetricFamily(
            "ece_exporter_fetch_failures_total",
            "Upstream fetch failures by resource and error kind",
            tuple(
                Sample((("resource", resource), ("error", kind)), count)
                for (resource, kind), count in sorted(self.aggregator.failures.items())
            ),
            type="counter",
        )
        age = MetricFamily(
            "ece_exporter_family_age_seconds",
            "Age of the served data per resource",
            tuple(Sample((("resource", resource),), ages[resource]) for resource in RESOURCES if resource in ages),
        )
        omitted_resources = {o.resource for o in omitted}
        omitted_family = MetricFamily(
            "ece_exporter_family_omitted",
            "Whether a resource's families were omitted as stale or never collected",
            tuple(Sample((("resource", resource),), 1 if resource in omitted_resources else 0) for resource in RESOURCES),
        )
        return MetricSet(families=(up, failures, age, omitted_family))


class RefreshWorker(threading.Thread):
    """Background worker that keeps the cache warm between scrapes."""

    daemon = True

    def __init__(self, state: ExporterState, interval_seconds: float, run_immediately: bool = True):
        super().__init__(name="ece-refresh-worker")
        self.state = state
        self.interval = max(1.0, float(interval_seconds))
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()

    def run(self) -> None:
        _log(f"[refresh] Starting (interval={self.interval:g}s)")
        if self._run_immediately:
            self.state.refresh()
        while not self._stop_event.wait(self.interval):
            self.state.refresh()
        _log("[refresh] Stopped")

    def stop(self) -> None:
        self._stop_event.set()
