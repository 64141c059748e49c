"""Configuration management for the ECE exporter.

Supports YAML-based configuration with environment and CLI overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


class ConfigError(ValueError):
    """Raised when the loaded configuration cannot run the exporter."""


@dataclass
class ECEConfig:
    """Upstream ECE connection settings."""

    url: Optional[str] = None
    api_key: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    insecure: bool = False
    ca_bundle: Optional[str] = None


@dataclass
class CollectionConfig:
    """Collection cycle and staleness settings."""

    timeout: float = 60  # seconds, bounds one whole cycle
    interval: float = 60  # seconds, expected scrape/refresh period
    staleness_multiplier: float = 3
    staleness_ceiling: Optional[float] = None  # seconds; overrides interval * multiplier
    scrape_timeout_offset: float = 0.5  # seconds shaved off the scraper's own timeout
    background_refresh: bool = False
    common_cluster_name: str = ""
    eru_cost: Optional[float] = None

    @property
    def effective_staleness_ceiling(self) -> float:
        if self.staleness_ceiling is not None:
            return float(self.staleness_ceiling)
        return float(self.interval) * float(self.staleness_multiplier)


@dataclass
class ServerConfig:
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    url_prefix: str = ""


@dataclass
class Config:
    """Main configuration container."""

    ece: ECEConfig = field(default_factory=ECEConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    verbose: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        ece_data = data.get("ece", {}) or {}
        ece = ECEConfig(
            url=ece_data.get("url"),
            api_key=ece_data.get("api_key"),
            username=ece_data.get("username"),
            password=ece_data.get("password"),
            insecure=bool(ece_data.get("insecure", False)),
            ca_bundle=ece_data.get("ca_bundle"),
        )

        server_data = data.get("server", {}) or {}
        server = ServerConfig(
            host=server_data.get("host", "0.0.0.0"),
            port=int(server_data.get("port", 8080)),
            url_prefix=server_data.get("url_prefix", ""),
        )

        coll_data = data.get("collection", {}) or {}
        ceiling = coll_data.get("staleness_ceiling")
        eru_cost = coll_data.get("eru_cost")
        collection = CollectionConfig(
            timeout=float(coll_data.get("timeout", 60)),
            interval=float(coll_data.get("interval", 60)),
            staleness_multiplier=float(coll_data.get("staleness_multiplier", 3)),
            staleness_ceiling=float(ceiling) if ceiling is not None else None,
            scrape_timeout_offset=float(coll_data.get("scrape_timeout_offset", 0.5)),
            background_refresh=bool(coll_data.get("background_refresh", False)),
            common_cluster_name=str(coll_data.get("common_cluster_name", "") or ""),
            eru_cost=float(eru_cost) if eru_cost is not None else None,
        )

        return cls(
            ece=ece,
            server=server,
            collection=collection,
            verbose=bool(data.get("verbose", False)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load config from YAML file."""
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Load config from path or defaults, then apply environment overrides.

        Checks in order:
        1. Provided path
        2. ECE_EXPORTER_CONFIG env var
        3. ./configs/config.yaml
        4. ./config.yaml
        5. ~/.ece_exporter/config.yaml
        6. Default config
        """
        environ = os.environ if environ is None else environ
        paths_to_try = []

        if config_path:
            paths_to_try.append(Path(config_path))

        if env_path := environ.get("ECE_EXPORTER_CONFIG"):
            paths_to_try.append(Path(env_path))

        paths_to_try.extend([
            Path("./configs/config.yaml"),
            Path("./config.yaml"),
            Path.home() / ".ece_exporter" / "config.yaml",
        ])

        config = cls()
        for path in paths_to_try:
            if path.exists():
                config = cls.from_yaml(path)
                break

        config.apply_env(environ)
        return config

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """Apply ECE_* environment variable overrides."""
        if url := environ.get("ECE_URL"):
            self.ece.url = url
        if api_key := environ.get("ECE_APIKEY"):
            self.ece.api_key = api_key
        if username := environ.get("ECE_USERNAME"):
            self.ece.username = username
        if password := environ.get("ECE_PASSWORD"):
            self.ece.password = password

        if port := environ.get("ECE_PORT"):
            try:
                self.server.port = int(port)
            except ValueError:
                print(f"[config] ECE_PORT={port!r} isn't a valid port, keeping {self.server.port}")
        if timeout := environ.get("ECE_TIMEOUT"):
            try:
                self.collection.timeout = float(timeout)
            except ValueError:
                print(f"[config] ECE_TIMEOUT={timeout!r} isn't a number, keeping {self.collection.timeout}")

    def validate(self) -> None:
        """Check the settings needed to talk to ECE.

        Raises:
            ConfigError: If the URL or credentials are missing or conflicting.
        """
        if not self.ece.url:
            raise ConfigError("ECE base URL is required (ece.url, ECE_URL or --url)")
        if self.ece.api_key and self.ece.username:
            raise ConfigError("Use either an API key or a username/password, not both")
        if not self.ece.api_key and not (self.ece.username and self.ece.password):
            raise ConfigError("ECE credentials are required: an API key or a username and password")
        if not 0 < self.server.port < 65536:
            raise ConfigError(f"Port {self.server.port} is out of range")
        if self.collection.timeout <= 0:
            raise ConfigError("collection.timeout must be positive")
        if self.collection.effective_staleness_ceiling <= 0:
            raise ConfigError("Staleness ceiling must be positive")

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary, without credentials."""
        return {
            "ece": {
                "url": self.ece.url,
                "auth": "apikey" if self.ece.api_key else "basic",
                "insecure": self.ece.insecure,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "url_prefix": self.server.url_prefix,
            },
            "collection": {
                "timeout": self.collection.timeout,
                "interval": self.collection.interval,
                "staleness_ceiling": self.collection.effective_staleness_ceiling,
                "background_refresh": self.collection.background_refresh,
                "common_cluster_name": self.collection.common_cluster_name,
                "eru_cost": self.collection.eru_cost,
            },
            "verbose": self.verbose,
        }
