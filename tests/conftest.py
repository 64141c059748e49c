"""Pytest configuration and shared fixtures."""

import threading

import pytest

from ece_exporter.collectors.base import CollectorError
from ece_exporter.data.models import AllocatorDocument, ProxyDocument


def make_instance(name, healthy=True, plan=None, **extra):
    instance = {
        "cluster_type": "elasticsearch",
        "cluster_id": f"{name}-id",
        "cluster_name": name,
        "instance_name": f"instance-{name}",
        "node_memory": 4096,
        "healthy": healthy,
        "moving": False,
        "instance_configuration_id": "data.default",
        "deployment_id": f"{name}-deployment",
    }
    if plan is not None:
        instance["plans_info"] = plan
    instance.update(extra)
    return instance


def make_allocator(allocator_id, zone, instances=(), healthy=True, connected=True, metadata=None):
    return {
        "allocator_id": allocator_id,
        "zone_id": zone,
        "host_ip": "10.0.0.1",
        "public_hostname": f"{allocator_id}.example.com",
        "status": {"connected": connected, "healthy": healthy, "maintenance_mode": False},
        "capacity": {"memory": {"total": 65536, "used": 8192}},
        "settings": {},
        "instances": list(instances),
        "metadata": metadata or [],
        "build_info": {"commit_hash": "abc123", "version": "3.6.0"},
        "features": [],
        "external_links": [],
    }


@pytest.fixture
def sample_allocators_json():
    """Allocator collection with two zones, three allocators and a replicated cluster."""
    return {
        "zones": [
            {
                "zone_id": "us-east-1a",
                "allocators": [
                    make_allocator(
                        "alloc-1",
                        "us-east-1a",
                        instances=[
                            make_instance("cluster-A", healthy=True, plan={"pending": True, "version": "7", "zone_count": 2}),
                            make_instance("cluster-B", healthy=True),
                        ],
                        metadata=[{"key": "rack", "value": "r1"}],
                    ),
                    make_allocator("alloc-2", "us-east-1a", instances=[]),
                ],
            },
            {
                "zone_id": "us-east-1b",
                "allocators": [
                    make_allocator(
                        "alloc-3",
                        "us-east-1b",
                        instances=[
                            make_instance("cluster-A", healthy=False, plan={"pending": False, "version": "7"}),
                        ],
                        healthy=False,
                    ),
                ],
            },
        ]
    }


@pytest.fixture
def sample_proxies_json():
    return {
        "proxies_count": 2,
        "proxies": [
            {
                "proxy_id": "proxy-1",
                "proxy_ip": "10.0.1.1",
                "public_hostname": "proxy-1.example.com",
                "healthy": True,
                "zone": "us-east-1a",
            },
            {
                "proxy_id": "proxy-2",
                "proxy_ip": None,
                "public_hostname": "proxy-2.example.com",
                "healthy": False,
                "zone": "us-east-1b",
            },
        ],
    }


@pytest.fixture
def allocator_document(sample_allocators_json):
    return AllocatorDocument.from_dict(sample_allocators_json)


@pytest.fixture
def proxy_document(sample_proxies_json):
    return ProxyDocument.from_dict(sample_proxies_json)


class FakeClient:
    """Stand-in for ECEClient with per-resource outcomes and call counting.

    Each outcome is a document, a CollectorError to raise, or a callable
    taking the deadline. ``gate`` (a threading.Event) holds every fetch
    until it is set.
    """

    name = "ece"

    def __init__(self, allocators=None, proxies=None, gate=None):
        self.allocators = allocators
        self.proxies = proxies
        self.gate = gate
        self.calls = {"allocators": 0, "proxies": 0}
        self._lock = threading.Lock()

    def _resolve(self, resource, outcome, deadline):
        with self._lock:
            self.calls[resource] += 1
        if self.gate is not None:
            self.gate.wait(5)
        if callable(outcome):
            return outcome(deadline)
        if isinstance(outcome, CollectorError):
            raise outcome
        return outcome

    def fetch_allocators(self, deadline):
        return self._resolve("allocators", self.allocators, deadline)

    def fetch_proxies(self, deadline):
        return self._resolve("proxies", self.proxies, deadline)

    def get_status(self):
        return {"name": self.name, "display_name": "Fake ECE", "available": True}

    def close(self):
        pass


@pytest.fixture
def fake_client_factory():
    return FakeClient
