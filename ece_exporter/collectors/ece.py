"""Elastic Cloud Enterprise admin API collector.

Fetches the allocator and proxy collections from the ECE platform API and
decodes them into immutable records. No business logic and no retries live
here: every call is exactly one authenticated GET.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional

import certifi
import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import (
    AuthError,
    BaseCollector,
    DecodeError,
    FetchTimeoutError,
    TransportError,
    UpstreamStatusError,
)
from ..data.models import AllocatorDocument, ProxyDocument

ALLOCATORS_PATH = "api/v1/platform/infrastructure/allocators"
PROXIES_PATH = "api/v1/platform/infrastructure/proxies"

USER_AGENT = "ece-exporter/1.0"


class ECEClient(BaseCollector):
    """Authenticated accessor for the ECE allocators and proxies resources.

    Holds a single ``requests.Session`` for connection reuse. Safe to share
    between the two fetch threads of a collection cycle.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        verify: bool = True,
        ca_bundle: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        if not api_key and not (username and password):
            raise AuthError("ece", "Either an API key or a username/password pair is required")
        self.base_url = (base_url or "").rstrip("/")
        self._api_key = api_key
        self._username = username
        self._password = password
        self._verify = self._determine_verify(not verify, ca_bundle)
        self._session_lock = threading.Lock()
        self._session = self._configure_session(session) if session is not None else None

        if self._verify is False:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            print(f"[ece] TLS verification disabled for {self.base_url}", flush=True)

    @property
    def name(self) -> str:
        return "ece"

    @property
    def display_name(self) -> str:
        return "Elastic Cloud Enterprise"

    def is_available(self) -> bool:
        return bool(self.base_url) and bool(self._api_key or (self._username and self._password))

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["url"] = self.base_url
        status["auth"] = "apikey" if self._api_key else "basic"
        return status

    # --- Fetch operations ---

    def fetch_allocators(self, deadline: float) -> AllocatorDocument:
        """Fetch and decode the allocator collection.

        Args:
            deadline: Absolute ``time.monotonic()`` value the call must finish by.

        Raises:
            AuthError, TransportError, FetchTimeoutError, DecodeError
        """
        data = self._get_json(ALLOCATORS_PATH, deadline)
        try:
            return AllocatorDocument.from_dict(data)
        except (ValueError, TypeError) as e:
            raise DecodeError(self.name, f"Malformed allocators document: {e}", e)

    def fetch_proxies(self, deadline: float) -> ProxyDocument:
        """Fetch and decode the proxy collection.

        Args:
            deadline: Absolute ``time.monotonic()`` value the call must finish by.

        Raises:
            AuthError, TransportError, FetchTimeoutError, DecodeError
        """
        data = self._get_json(PROXIES_PATH, deadline)
        try:
            return ProxyDocument.from_dict(data)
        except (ValueError, TypeError) as e:
            raise DecodeError(self.name, f"Malformed proxies document: {e}", e)

    def close(self) -> None:
        """Close the session and release resources."""
        with self._session_lock:
            if self._session is not None:
                self._session.close()
                self._session = None

    # --- HTTP helpers ---

    def _determine_verify(self, insecure: bool, ca_bundle: Optional[str]):
        """Determine SSL verification setting."""
        if insecure:
            return False
        if ca_bundle:
            return ca_bundle
        return certifi.where()

    def _get_session(self) -> requests.Session:
        """Get or create the shared session.

        Reuses the session for connection pooling. Retries are disabled;
        retry policy belongs to the caller. Creation is guarded by a lock.
        """
        with self._session_lock:
            if self._session is None:
                session = requests.Session()
                adapter = HTTPAdapter(
                    max_retries=Retry(total=0, read=False, raise_on_status=False),
                    pool_connections=2,
                    pool_maxsize=4,
                )
                session.mount("https://", adapter)
                session.mount("http://", adapter)
                self._session = self._configure_session(session)
            return self._session

    def _configure_session(self, session: requests.Session) -> requests.Session:
        session.verify = self._verify
        session.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
        if self._api_key:
            session.headers["Authorization"] = f"ApiKey {self._api_key}"
        else:
            session.auth = (self._username, self._password)
        return session

    def _get_json(self, path: str, deadline: float) -> Any:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FetchTimeoutError(self.name, f"Deadline exceeded before requesting {path}")

        url = f"{self.base_url}/{path}"
        try:
            resp = self._get_session().get(url, timeout=remaining)
        except requests.exceptions.Timeout as e:
            raise FetchTimeoutError(self.name, f"Timed out requesting {path}", e)
        except requests.exceptions.SSLError as e:
            raise TransportError(
                self.name,
                "TLS/SSL error: certificate verify failed. Consider using --insecure or --ca-bundle.",
                e,
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(self.name, f"Error requesting {path}: {e}", e)

        if resp.status_code in (401, 403):
            raise AuthError(self.name, f"Credentials rejected for {path} (HTTP {resp.status_code})")
        if resp.status_code != 200:
            raise UpstreamStatusError(
                self.name,
                resp.status_code,
                f"Unexpected HTTP status {resp.status_code} for {path}: {resp.text[:200]}",
            )

        try:
            return resp.json()
        except ValueError as e:
            raise DecodeError(self.name, f"Response for {path} is not valid JSON", e)
