"""Render MetricSets in the Prometheus text format via prometheus_client."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import Metric
from prometheus_client.exposition import CONTENT_TYPE_LATEST

from ..data.models import MetricSet

__all__ = ["CONTENT_TYPE_LATEST", "MetricSetCollector", "render_metric_set"]


class MetricSetCollector:
    """Custom collector yielding one prometheus Metric per MetricFamily.

    Label sets may differ between rows of a family (allocator metadata tags),
    so samples are added directly instead of through a fixed label list.
    """

    def __init__(self, metric_set: MetricSet):
        self.metric_set = metric_set

    def collect(self):
        for family in self.metric_set:
            name = family.name
            sample_name = name
            if family.type == "counter":
                # prometheus_client appends the suffix to counter families itself
                name = name[: -len("_total")] if name.endswith("_total") else name
                sample_name = f"{name}_total"
            metric = Metric(name, family.documentation, family.type)
            for sample in family.samples:
                metric.add_sample(sample_name, sample.label_dict, float(sample.value))
            yield metric


def render_metric_set(metric_set: MetricSet) -> bytes:
    """Render a MetricSet as exposition text using a per-request registry."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(MetricSetCollector(metric_set))
    return generate_latest(registry)
