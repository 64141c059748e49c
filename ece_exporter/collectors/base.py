"""Base collector interface and upstream error taxonomy."""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional


class BaseCollector(ABC):
    """Abstract base class for upstream collectors.

    A collector wraps one upstream API and exposes fetch methods that either
    return a decoded document or raise a CollectorError subclass.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this collector.

        Returns:
            A short, lowercase identifier (e.g., 'ece')
        """
        pass

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for status output."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this collector can run (credentials and URL configured).

        Returns:
            True if the collector can operate, False otherwise.
        """
        pass

    def get_status(self) -> Dict[str, Any]:
        """Get collector status information.

        Returns:
            Dictionary with status details including availability.
        """
        return {
            "name": self.name,
            "display_name": self.display_name,
            "available": self.is_available(),
        }


class CollectorError(Exception):
    """Exception raised when a collector fails to collect data."""

    kind = "collector"

    def __init__(self, collector_name: str, message: str, cause: Optional[Exception] = None):
        self.collector_name = collector_name
        self.cause = cause
        super().__init__(f"[{collector_name}] {message}")


class AuthError(CollectorError):
    """Credentials were missing or rejected by the upstream."""

    kind = "auth"


class TransportError(CollectorError):
    """Connection, DNS or TLS failure, or an unusable HTTP response."""

    kind = "transport"


class UpstreamStatusError(TransportError):
    """The upstream answered with an unexpected HTTP status code."""

    kind = "status"

    def __init__(self, collector_name: str, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(collector_name, message or f"Unexpected HTTP status {status_code}")


class FetchTimeoutError(CollectorError):
    """The fetch did not complete before its deadline."""

    kind = "timeout"


class DecodeError(CollectorError):
    """The response body was not a well-formed document."""

    kind = "decode"
