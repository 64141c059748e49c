#!/usr/bin/env python3
"""
ECE Exporter - Main entry point.

Serves Prometheus metrics for an Elastic Cloud Enterprise installation,
collecting from the ECE admin API on demand.
"""

from __future__ import annotations

import argparse
import sys
from http.server import ThreadingHTTPServer
from typing import Optional

from ..collectors.base import AuthError
from ..collectors.ece import ECEClient
from ..data.cache import SnapshotCache
from .config import Config, ConfigError
from .routes import ExporterRequestHandler
from .workers import ExporterState, RefreshWorker


def apply_args(config: Config, args) -> Config:
    """Override config with CLI args."""
    if args.url:
        config.ece.url = args.url
    if args.apikey:
        config.ece.api_key = args.apikey
    if args.username:
        config.ece.username = args.username
    if args.password:
        config.ece.password = args.password
    if args.insecure:
        config.ece.insecure = True
    if args.ca_bundle:
        config.ece.ca_bundle = args.ca_bundle
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.url_prefix:
        config.server.url_prefix = args.url_prefix
    if args.timeout:
        config.collection.timeout = args.timeout
    if args.interval:
        config.collection.interval = args.interval
    if args.background_refresh:
        config.collection.background_refresh = True
    if args.eru_cost is not None:
        config.collection.eru_cost = args.eru_cost
    if args.verbose:
        config.verbose = True
    return config


def build_state(config: Config) -> ExporterState:
    """Wire the ECE client, cache and aggregator from config."""
    client = ECEClient(
        config.ece.url,
        api_key=config.ece.api_key,
        username=config.ece.username,
        password=config.ece.password,
        verify=not config.ece.insecure,
        ca_bundle=config.ece.ca_bundle,
    )
    cache = SnapshotCache(config.collection.effective_staleness_ceiling)
    return ExporterState(
        client,
        cache,
        timeout=config.collection.timeout,
        common_cluster_name=config.collection.common_cluster_name,
        eru_cost=config.collection.eru_cost,
        verbose=config.verbose,
    )


def run_server(args) -> int:
    """Run the exporter server."""
    config = apply_args(Config.load(args.config), args)
    try:
        config.validate()
    except ConfigError as e:
        print(f"[config] {e}", file=sys.stderr)
        return 2
    print(
        f"[config] Loaded: url={config.ece.url!r}, timeout={config.collection.timeout:g}s, "
        f"staleness_ceiling={config.collection.effective_staleness_ceiling:g}s"
    )

    try:
        state = build_state(config)
    except AuthError as e:
        print(f"[config] {e}", file=sys.stderr)
        return 2

    worker: Optional[RefreshWorker] = None
    if config.collection.background_refresh:
        worker = RefreshWorker(state, interval_seconds=config.collection.interval)
        worker.start()

    # Configure the request handler
    ExporterRequestHandler.server_state = state
    ExporterRequestHandler.collector_status = state.aggregator.client.get_status()
    ExporterRequestHandler.url_prefix = config.server.url_prefix
    ExporterRequestHandler.scrape_timeout_offset = config.collection.scrape_timeout_offset
    ExporterRequestHandler.verbose = config.verbose

    server = ThreadingHTTPServer((config.server.host, config.server.port), ExporterRequestHandler)

    print(f"[exporter] Serving on http://{config.server.host}:{config.server.port}")
    if config.server.url_prefix:
        print(f"[exporter] URL prefix: {config.server.url_prefix}")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\n[exporter] Shutting down...")
    finally:
        if worker:
            worker.stop()
            worker.join(timeout=5)
        state.shutdown()
        state.aggregator.client.close()
        server.server_close()
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Prometheus exporter for Elastic Cloud Enterprise",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Server options
    parser.add_argument("--host", default=None, help="Bind address (default 0.0.0.0)")
    parser.add_argument("-P", "--port", type=int, default=None, help="Port to listen on (default 8080, env ECE_PORT)")
    parser.add_argument("--config", type=str, help="Path to config YAML file")
    parser.add_argument(
        "--url-prefix",
        default="",
        help="Path prefix for reverse proxy setup",
    )

    # Upstream options
    parser.add_argument("-U", "--url", default=None, help="ECE base URL (env ECE_URL)")
    parser.add_argument("-a", "--apikey", default=None, help="ECE API key (env ECE_APIKEY)")
    parser.add_argument("-u", "--username", default=None, help="ECE username (env ECE_USERNAME)")
    parser.add_argument("-p", "--password", default=None, help="ECE password (env ECE_PASSWORD)")

    # TLS options
    parser.add_argument(
        "--insecure",
        action="store_true",
        default=False,
        help="Skip TLS verification",
    )
    parser.add_argument(
        "--ca-bundle",
        type=str,
        help="Path to a custom CA bundle",
    )

    # Collection options
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=None,
        help="Global collection timeout in seconds (default 60, env ECE_TIMEOUT)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Expected scrape interval in seconds; sets the staleness ceiling",
    )
    parser.add_argument(
        "--eru-cost",
        type=float,
        default=None,
        help="Yearly price of one ERU; enables the instance monthly cost metric",
    )
    parser.add_argument(
        "--background-refresh",
        action="store_true",
        default=False,
        help="Also collect every interval in the background",
    )
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="Log every cycle and request")

    return parser.parse_args(argv)


def main():
    """Entry point for the ece-exporter command."""
    args = parse_args()
    sys.exit(run_server(args))


if __name__ == "__main__":
    main()
