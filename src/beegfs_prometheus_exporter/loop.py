"""Periodic poll, translate and publish loop.

One :class:`CollectorLoop` instance drives cycles at a fixed cadence. Source
hiccups are absorbed per cycle; anything else is an internal fault and is
escalated to the supervisor as :class:`CollectorFault`.
"""

import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

import structlog

from .registry import MetricRegistry
from .source import ClusterStatusSource, SourceError
from .translator import DEFAULT_PREFIX, MONOTONIC_COUNTERS, translate

logger = structlog.get_logger(__name__)


class LoopState(str, Enum):
    """Phase of the collector loop."""

    IDLE = "idle"
    POLLING = "polling"
    TRANSLATING = "translating"
    PUBLISHING = "publishing"


class CollectorFault(Exception):
    """Raised when a cycle failed for a reason other than the status source."""


@dataclass
class ExporterStats:
    """Process-lifetime counters describing the exporter itself.

    Written by the collector loop and the supervisor, read by scrapes.
    """

    cycles: int = 0
    successful_cycles: int = 0
    source_errors: int = 0
    skipped_counters: int = 0
    restarts: int = 0
    last_cycle_duration: float = 0.0
    last_success_timestamp: float = 0.0
    up: bool = False


class CollectorLoop:
    """Fixed-interval collection loop over one status source.

    Cycles are strictly serialized: if a cycle overruns the interval, the next
    one starts right after it, no ticks are queued.
    """

    def __init__(
        self,
        source: ClusterStatusSource,
        registry: MetricRegistry,
        interval: float,
        stats: ExporterStats | None = None,
        prefix: str = DEFAULT_PREFIX,
        counter_names: Iterable[str] = MONOTONIC_COUNTERS,
    ):
        """Initialize the loop.

        Args:
            source: Status source to poll.
            registry: Registry receiving the samples of each cycle.
            interval: Seconds between the starts of two cycles.
            stats: Shared exporter statistics, a private instance if omitted.
            prefix: Metric name prefix passed to the translator.
            counter_names: Counter names exported with Counter type.
        """
        if interval <= 0:
            msg = "interval must be positive"
            raise ValueError(msg)

        self._source = source
        self._registry = registry
        self._interval = interval
        self._prefix = prefix
        self._counter_names = frozenset(counter_names)
        self.stats = stats if stats is not None else ExporterStats()
        self.state = LoopState.IDLE

    def run_cycle(self) -> bool:
        """Run one poll, translate and publish cycle.

        Returns:
            True if the registry was updated, False if the cycle was skipped
            because the status source failed.

        Raises:
            CollectorFault: If translation or publishing failed.
        """
        start = time.monotonic()
        self.stats.cycles += 1
        try:
            self.state = LoopState.POLLING
            try:
                snapshot = self._source.fetch()
            except SourceError as exc:
                self.stats.source_errors += 1
                self.stats.up = False
                logger.warning(
                    "Status source failed, skipping cycle",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return False

            self.state = LoopState.TRANSLATING
            translation = translate(
                snapshot,
                prefix=self._prefix,
                counter_names=self._counter_names,
            )
            self.stats.skipped_counters += len(translation.skipped)

            self.state = LoopState.PUBLISHING
            self._registry.update(translation.samples)
        except Exception as exc:
            self.stats.up = False
            msg = f"Collection cycle failed in {self.state.value} phase: {exc}"
            raise CollectorFault(msg) from exc
        finally:
            self.state = LoopState.IDLE
            self.stats.last_cycle_duration = time.monotonic() - start

        self.stats.successful_cycles += 1
        self.stats.last_success_timestamp = time.time()
        self.stats.up = True
        logger.debug(
            "Cycle completed",
            entities=len(snapshot.entities),
            samples=len(translation.samples),
            skipped=len(translation.skipped),
            duration_seconds=round(self.stats.last_cycle_duration, 3),
        )
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Run cycles until ``stop_event`` is set.

        Raises:
            CollectorFault: If a cycle failed with an internal fault.
        """
        logger.info("Collector loop started", interval_seconds=self._interval)
        while not stop_event.is_set():
            started = time.monotonic()
            self.run_cycle()
            remaining = self._interval - (time.monotonic() - started)
            if remaining > 0:
                stop_event.wait(remaining)
        logger.info("Collector loop stopped")
