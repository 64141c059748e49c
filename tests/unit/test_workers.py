"""Tests for collection cycles and exporter state."""

import threading
import time

from ece_exporter.collectors.base import AuthError, FetchTimeoutError, TransportError
from ece_exporter.data.cache import SnapshotCache
from ece_exporter.data.models import FetchResult, ProxyDocument, RawSnapshot
from ece_exporter.server.workers import ExporterState, RefreshWorker, SnapshotAggregator


def make_state(client, ceiling=60, timeout=2, **kwargs):
    return ExporterState(client, SnapshotCache(ceiling), timeout=timeout, **kwargs)


def wait_for(predicate, timeout=5.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestSnapshotAggregator:
    def test_collect_both_resources(self, fake_client_factory, allocator_document, proxy_document):
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        aggregator = SnapshotAggregator(client, timeout=2)

        snapshot = aggregator.collect()

        assert snapshot.allocators.document is allocator_document
        assert snapshot.proxies.document is proxy_document
        assert snapshot.complete is True
        assert snapshot.sequence == 1
        assert aggregator.last_snapshot is snapshot
        aggregator.shutdown()

    def test_single_flight(self, fake_client_factory, allocator_document, proxy_document):
        gate = threading.Event()
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document, gate=gate)
        aggregator = SnapshotAggregator(client, timeout=5)

        callers = 8
        barrier = threading.Barrier(callers + 1)
        snapshots = []
        lock = threading.Lock()

        def scrape():
            flight = aggregator.start()
            barrier.wait()
            snapshot = flight.wait(5)
            with lock:
                snapshots.append(snapshot)

        threads = [threading.Thread(target=scrape) for _ in range(callers)]
        for t in threads:
            t.start()
        barrier.wait()
        gate.set()
        for t in threads:
            t.join(5)

        assert len(snapshots) == callers
        assert all(s is snapshots[0] for s in snapshots)
        assert client.calls == {"allocators": 1, "proxies": 1}
        aggregator.shutdown()

    def test_new_cycle_after_completion(self, fake_client_factory, allocator_document, proxy_document):
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        aggregator = SnapshotAggregator(client, timeout=2)

        first = aggregator.collect()
        second = aggregator.collect()

        assert (first.sequence, second.sequence) == (1, 2)
        assert client.calls == {"allocators": 2, "proxies": 2}
        assert aggregator.in_flight() is False
        aggregator.shutdown()

    def test_partial_failure_isolated(self, fake_client_factory, allocator_document):
        client = fake_client_factory(
            allocators=allocator_document,
            proxies=FetchTimeoutError("ece", "proxies timed out"),
        )
        aggregator = SnapshotAggregator(client, timeout=2)

        snapshot = aggregator.collect()

        assert snapshot.allocators.ok is True
        assert isinstance(snapshot.proxies.error, FetchTimeoutError)
        assert snapshot.complete is False
        assert aggregator.failures[("proxies", "timeout")] == 1
        aggregator.shutdown()

    def test_deadline_marks_unsettled_fetch_as_timeout(self, fake_client_factory, allocator_document):
        release = threading.Event()

        def slow_proxies(deadline):
            release.wait(5)
            return ProxyDocument()

        client = fake_client_factory(allocators=allocator_document, proxies=slow_proxies)
        aggregator = SnapshotAggregator(client, timeout=0.2)

        started = time.monotonic()
        snapshot = aggregator.collect()
        elapsed = time.monotonic() - started
        release.set()

        assert elapsed < 2
        assert snapshot.allocators.ok is True
        assert isinstance(snapshot.proxies.error, FetchTimeoutError)
        aggregator.shutdown()

    def test_overrunning_fetch_not_duplicated_by_next_cycle(self, fake_client_factory, allocator_document):
        release = threading.Event()
        lock = threading.Lock()
        running = {"now": 0, "max": 0}

        def slow_proxies(deadline):
            with lock:
                running["now"] += 1
                running["max"] = max(running["max"], running["now"])
            try:
                release.wait(5)
                return ProxyDocument()
            finally:
                with lock:
                    running["now"] -= 1

        client = fake_client_factory(allocators=allocator_document, proxies=slow_proxies)
        aggregator = SnapshotAggregator(client, timeout=0.2)

        first = aggregator.collect()
        second = aggregator.collect()

        assert isinstance(first.proxies.error, FetchTimeoutError)
        assert isinstance(second.proxies.error, FetchTimeoutError)
        assert "still outstanding" in str(second.proxies.error)
        assert second.allocators.ok is True
        assert client.calls == {"allocators": 2, "proxies": 1}
        assert running["max"] == 1

        release.set()
        assert wait_for(lambda: aggregator._outstanding["proxies"].done())
        client.proxies = ProxyDocument()
        third = aggregator.collect()

        assert third.proxies.ok is True
        assert client.calls["proxies"] == 2
        aggregator.shutdown()

    def test_unexpected_exception_wrapped(self, fake_client_factory, proxy_document):
        def broken(deadline):
            raise RuntimeError("boom")

        client = fake_client_factory(allocators=broken, proxies=proxy_document)
        aggregator = SnapshotAggregator(client, timeout=2)

        snapshot = aggregator.collect()

        assert isinstance(snapshot.allocators.error, TransportError)
        assert "boom" in str(snapshot.allocators.error)
        assert snapshot.proxies.ok is True
        aggregator.shutdown()

    def test_callback_failure_still_releases_waiters(self, fake_client_factory, allocator_document, proxy_document):
        def failing_callback(snapshot):
            raise RuntimeError("cache exploded")

        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        aggregator = SnapshotAggregator(client, timeout=2, on_complete=failing_callback)

        snapshot = aggregator.start().wait(5)

        assert snapshot is not None
        assert aggregator.in_flight() is False
        aggregator.shutdown()

    def test_callback_runs_before_waiters_release(self, fake_client_factory, allocator_document, proxy_document):
        seen = []
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        aggregator = SnapshotAggregator(client, timeout=2, on_complete=seen.append)

        snapshot = aggregator.collect()

        assert seen == [snapshot]
        aggregator.shutdown()


class TestExporterState:
    def test_scrape_serves_both_resources(self, fake_client_factory, allocator_document, proxy_document):
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        state = make_state(client)

        result = state.scrape()

        assert result.ok is True
        assert sorted(result.served) == ["allocators", "proxies"]
        names = result.metric_set.names()
        assert "ece_allocator_info" in names
        assert "ece_proxy_info" in names
        assert result.metric_set.get("ece_cluster_up").samples[0].value == 1
        state.shutdown()

    def test_partial_failure_serves_allocators_only(self, fake_client_factory, allocator_document):
        client = fake_client_factory(
            allocators=allocator_document,
            proxies=FetchTimeoutError("ece", "proxies timed out"),
        )
        state = make_state(client)

        result = state.scrape()

        assert result.ok is True
        assert result.served == ["allocators"]
        assert result.metric_set.get("ece_allocator_instance_info") is not None
        assert result.metric_set.get("ece_proxy_info") is None
        assert [o.resource for o in result.omitted] == ["proxies"]

        omitted = {
            s.label_dict["resource"]: s.value
            for s in result.metric_set.get("ece_exporter_family_omitted").samples
        }
        assert omitted == {"allocators": 0, "proxies": 1}
        assert result.metric_set.get("ece_cluster_up").samples[0].value == 0
        state.shutdown()

    def test_failed_resource_filled_from_cache(self, fake_client_factory, allocator_document, proxy_document):
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        state = make_state(client)
        state.scrape()

        client.proxies = TransportError("ece", "connection refused")
        result = state.scrape()

        assert sorted(result.served) == ["allocators", "proxies"]
        assert result.metric_set.get("ece_proxy_info") is not None
        failures = result.metric_set.get("ece_exporter_fetch_failures_total").samples
        assert [(s.label_dict, s.value) for s in failures] == [
            ({"resource": "proxies", "error": "transport"}, 1),
        ]
        state.shutdown()

    def test_no_usable_data(self, fake_client_factory):
        client = fake_client_factory(
            allocators=AuthError("ece", "rejected"),
            proxies=AuthError("ece", "rejected"),
        )
        state = make_state(client)

        result = state.scrape()

        assert result.ok is False
        assert {o.resource for o in result.omitted} == {"allocators", "proxies"}
        state.shutdown()

    def test_short_scrape_deadline_serves_cache(self, fake_client_factory, allocator_document, proxy_document):
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        state = make_state(client, timeout=5)
        state.refresh()

        gate = threading.Event()
        client.gate = gate
        started = time.monotonic()
        result = state.scrape(timeout=0.1)
        elapsed = time.monotonic() - started

        assert elapsed < 2
        assert result.snapshot is None
        assert sorted(result.served) == ["allocators", "proxies"]

        gate.set()
        assert wait_for(lambda: not state.aggregator.in_flight())
        state.shutdown()

    def test_stale_cycle_does_not_overwrite_newer(self, fake_client_factory, allocator_document, proxy_document):
        state = make_state(fake_client_factory())
        newer = RawSnapshot(
            sequence=6,
            allocators=FetchResult.success(allocator_document),
            proxies=FetchResult.success(proxy_document),
            fetched_at=time.time(),
        )
        older = RawSnapshot(
            sequence=5,
            allocators=FetchResult.success(allocator_document),
            proxies=FetchResult.success(ProxyDocument()),
            fetched_at=time.time(),
        )

        state.apply_snapshot(newer)
        state.apply_snapshot(older)

        metric_set, _ = state.cache.get("proxies")
        assert len(metric_set.get("ece_proxy_info")) == 2
        assert state.cache.entry("proxies").sequence == 6
        state.shutdown()

    def test_common_cluster_name_passed_to_normalizer(self, fake_client_factory, allocator_document, proxy_document):
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        state = make_state(client, common_cluster_name="platform")

        result = state.scrape()

        proxy = result.metric_set.get("ece_proxy_info").samples[0]
        assert proxy.label_dict["common_cluster_name"] == "platform"
        state.shutdown()


class TestRefreshWorker:
    def test_runs_immediately_and_stops(self, fake_client_factory, allocator_document, proxy_document):
        client = fake_client_factory(allocators=allocator_document, proxies=proxy_document)
        state = make_state(client)
        worker = RefreshWorker(state, interval_seconds=60)

        worker.start()
        assert wait_for(lambda: state.cache.get("allocators") is not None)
        worker.stop()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert client.calls["allocators"] == 1
        state.shutdown()

    def test_interval_floor(self, fake_client_factory):
        worker = RefreshWorker(make_state(fake_client_factory()), interval_seconds=0)
        assert worker.interval == 1.0
