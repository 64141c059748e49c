"""Prometheus exporter for Elastic Cloud Enterprise allocators and proxies."""

__title__ = "ece-exporter"
__version__ = "1.0.0"
__description__ = "Republishes ECE allocator, instance, plan and proxy state as Prometheus gauges"
