"""Upstream collectors - the ECE admin API client and its error taxonomy."""

from .base import (
    AuthError,
    BaseCollector,
    CollectorError,
    DecodeError,
    FetchTimeoutError,
    TransportError,
    UpstreamStatusError,
)
from .ece import ECEClient

__all__ = [
    "AuthError",
    "BaseCollector",
    "CollectorError",
    "DecodeError",
    "ECEClient",
    "FetchTimeoutError",
    "TransportError",
    "UpstreamStatusError",
]
