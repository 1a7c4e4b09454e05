"""Thread-safe store of the current metric samples.

The collector loop installs a complete generation of samples per successful
cycle, scrape handlers read consistent copies of it concurrently.
"""

import time
from collections.abc import Iterable
from dataclasses import dataclass
from threading import Lock

import structlog

from .translator import MetricSample, SampleKey

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UpdateResult:
    """Series counts affected by one registry update."""

    added: int = 0
    updated: int = 0
    evicted: int = 0
    retained: int = 0


class MetricRegistry:
    """Latest sample per ``(name, label-set)`` with eviction of vanished series.

    Each ``update`` replaces the whole generation atomically: readers see
    either the previous or the new set of samples, never a mix. Series that
    are missing from an update are removed immediately by default, or kept
    until they have been absent for ``stale_series_ttl`` seconds.
    """

    def __init__(self, stale_series_ttl: float = 0.0):
        """Initialize the registry.

        Args:
            stale_series_ttl: Seconds a series absent from updates is still
                exported. 0 removes it on the first update without it.
        """
        if stale_series_ttl < 0:
            msg = "stale_series_ttl cannot be negative"
            raise ValueError(msg)

        self._lock = Lock()
        self._ttl = stale_series_ttl
        self._samples: dict[SampleKey, MetricSample] = {}
        self._last_seen: dict[SampleKey, float] = {}
        self._export: tuple[MetricSample, ...] = ()

    def __len__(self) -> int:
        return len(self._export)

    def update(self, samples: Iterable[MetricSample]) -> UpdateResult:
        """Install the samples of one successful collection cycle.

        Args:
            samples: Samples of the cycle, at most one per series.

        Returns:
            Counts of added, updated, evicted and retained stale series.

        Raises:
            ValueError: If two samples share name and labels. The registry
                is left unchanged.
        """
        incoming: dict[SampleKey, MetricSample] = {}
        for sample in samples:
            if sample.key in incoming:
                msg = f"Duplicate series in update: {sample.name} {dict(sample.labels)}"
                raise ValueError(msg)
            incoming[sample.key] = sample

        now = time.monotonic()
        with self._lock:
            added = sum(1 for key in incoming if key not in self._samples)
            new_samples = dict(incoming)
            new_last_seen = dict.fromkeys(incoming, now)

            evicted = 0
            retained = 0
            for key, sample in self._samples.items():
                if key in incoming:
                    continue
                last_seen = self._last_seen.get(key, now)
                if self._ttl > 0 and now - last_seen < self._ttl:
                    new_samples[key] = sample
                    new_last_seen[key] = last_seen
                    retained += 1
                else:
                    evicted += 1

            export = tuple(sorted(new_samples.values(), key=lambda s: s.key))

            self._samples = new_samples
            self._last_seen = new_last_seen
            self._export = export

        result = UpdateResult(
            added=added,
            updated=len(incoming) - added,
            evicted=evicted,
            retained=retained,
        )
        logger.debug(
            "Registry updated",
            series=len(export),
            added=result.added,
            evicted=result.evicted,
            retained=result.retained,
        )
        return result

    def snapshot_for_export(self) -> tuple[MetricSample, ...]:
        """Return the current samples sorted by name and labels.

        The returned tuple is immutable and belongs to one generation, so it
        stays consistent while later updates are applied.
        """
        with self._lock:
            return self._export
