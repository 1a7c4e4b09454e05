"""Crash-restart supervision of the collector loop."""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeAlias

import structlog

from .loop import CollectorFault, CollectorLoop, ExporterStats

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RESTART_ATTEMPTS = 10

LoopFactory: TypeAlias = Callable[[], CollectorLoop]


class RestartBudgetExhausted(Exception):
    """Raised when the collector loop crashed more often than allowed."""


@dataclass
class RestartBudget:
    """Number of loop restarts allowed for the lifetime of the process.

    ``consumed`` only ever grows and never exceeds ``max_attempts``.
    """

    max_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS
    consumed: int = 0

    def __post_init__(self):
        if self.max_attempts < 0:
            msg = "max_attempts cannot be negative"
            raise ValueError(msg)

    @property
    def exhausted(self) -> bool:
        """True once no restarts are left."""
        return self.consumed >= self.max_attempts

    def consume(self) -> None:
        """Use up one restart.

        Raises:
            RestartBudgetExhausted: If no restart is left.
        """
        if self.exhausted:
            msg = f"Collector loop crashed {self.consumed + 1} times, giving up"
            raise RestartBudgetExhausted(msg)
        self.consumed += 1


class Supervisor:
    """Runs the collector loop and restarts it after internal faults.

    Every restart builds a fresh loop from ``loop_factory``; whatever the
    factory captures (registry, source) survives the restart. Restarts are
    immediate and synchronous, the crashed loop has fully unwound before its
    replacement starts.
    """

    def __init__(
        self,
        loop_factory: LoopFactory,
        budget: RestartBudget,
        stats: ExporterStats | None = None,
    ):
        self._loop_factory = loop_factory
        self.budget = budget
        self._stats = stats

    def run(self, stop_event: threading.Event) -> None:
        """Supervise collection until ``stop_event`` is set.

        Raises:
            RestartBudgetExhausted: If the loop crashed once more after all
                restarts were used. The last fault is chained as the cause.
        """
        while not stop_event.is_set():
            loop = self._loop_factory()
            try:
                loop.run(stop_event)
            except CollectorFault as fault:
                logger.exception(
                    "Collector loop crashed",
                    restarts_used=self.budget.consumed,
                    max_restarts=self.budget.max_attempts,
                )
                try:
                    self.budget.consume()
                except RestartBudgetExhausted as exhausted:
                    raise exhausted from fault
                if self._stats is not None:
                    self._stats.restarts += 1
                logger.warning(
                    "Restarting collector loop",
                    attempt=self.budget.consumed,
                    max_restarts=self.budget.max_attempts,
                )
            else:
                return
