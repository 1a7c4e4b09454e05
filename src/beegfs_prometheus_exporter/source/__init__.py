"""Cluster status sources.

A status source produces a :class:`ClusterSnapshot` on each ``fetch()`` call
and reports recoverable failures with :class:`SourceUnavailable` or
:class:`SourceProtocolError`. Concrete bindings live in their own modules.

Exports:
    ClusterStatusSource: Protocol implemented by all sources.
    BeegfsCtlSource: Source running ``beegfs-ctl --serverstats``.
    HttpStatusSource: Source reading a JSON snapshot over HTTP.
    types: Module containing the snapshot models.
"""

from . import types
from .base import (
    ClusterStatusSource,
    SourceError,
    SourceProtocolError,
    SourceUnavailable,
)
from .ctl import BeegfsCtlSource
from .rest import HttpStatusSource
from .types import ClusterSnapshot, EntityKind, EntityRecord

__all__ = [
    "BeegfsCtlSource",
    "ClusterSnapshot",
    "ClusterStatusSource",
    "EntityKind",
    "EntityRecord",
    "HttpStatusSource",
    "SourceError",
    "SourceProtocolError",
    "SourceUnavailable",
    "types",
]
