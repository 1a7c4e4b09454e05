"""Status source interface and its error types."""

from typing import Protocol

from .types import ClusterSnapshot


class SourceError(Exception):
    """Base class for recoverable status source failures."""


class SourceUnavailable(SourceError):
    """Raised when the source cannot be reached (connection, timeout, exit code)."""


class SourceProtocolError(SourceError):
    """Raised when the source answered with malformed or unexpected data."""


class ClusterStatusSource(Protocol):
    """Anything that can produce a cluster snapshot on demand."""

    def fetch(self) -> ClusterSnapshot:
        """Read the current cluster status.

        Raises:
            SourceUnavailable: If the source could not be reached in time.
            SourceProtocolError: If the response could not be understood.
        """
        ...
