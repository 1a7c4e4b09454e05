"""HTTP status source.

Reads a JSON snapshot document from a status service (for example a sidecar
that aggregates ``beegfs-ctl`` output for several nodes) and validates it
with Pydantic.
"""

import time

import httpx
import pydantic
import structlog

from .base import SourceProtocolError, SourceUnavailable
from .types import ClusterSnapshot

logger = structlog.get_logger(__name__)

DEFAULT_PATH = "/status"

DEFAULT_TIMEOUT = 10.0


class HttpStatusSource:
    """Cluster status source reading a JSON document over HTTP.

    The document has the shape of :class:`ClusterSnapshot`::

        {"entities": [{"entity_kind": "node", "entity_id": "node1",
                       "counters": {"busy_pct": 42}, "labels": {}}]}

    Can be used as a context manager for automatic cleanup.
    """

    def __init__(
        self,
        base_url: str,
        path: str = DEFAULT_PATH,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the source.

        Args:
            base_url: Base URL of the status service (e.g., "http://mgmt:8080").
            path: Path of the snapshot document.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, mainly for tests.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self.path = path
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and cleanup resources."""
        self.close()

    def close(self):
        """Close the HTTP client if open."""
        if not self._client.is_closed:
            self._client.close()

    def fetch(self) -> ClusterSnapshot:
        """Fetch and validate the snapshot document.

        Returns:
            Validated cluster snapshot.

        Raises:
            SourceUnavailable: If the request fails or returns an error status.
            SourceProtocolError: If the body is not a valid snapshot document.
        """
        start_time = time.time()
        try:
            response = self._client.get(self.path)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"Status request to {self.base_url}{self.path} failed: {exc}"
            raise SourceUnavailable(msg) from exc

        logger.debug(
            "Status request completed",
            duration_seconds=round(time.time() - start_time, 3),
        )

        try:
            snapshot = ClusterSnapshot.model_validate_json(response.content)
        except pydantic.ValidationError as exc:
            msg = f"Malformed status document from {self.base_url}{self.path}: {exc}"
            raise SourceProtocolError(msg) from exc

        if not snapshot.source:
            snapshot.source = f"{self.base_url}{self.path}"
        return snapshot
