"""Tests for the restart budget and the supervisor."""

import threading
from unittest.mock import MagicMock

import pytest

from beegfs_prometheus_exporter import loop, registry, supervisor
from beegfs_prometheus_exporter.source.types import (
    ClusterSnapshot,
    EntityKind,
    EntityRecord,
)


class CrashingLoop:
    """Loop stand-in that crashes a fixed number of times across instances."""

    def __init__(self, plan: list[bool], stop: threading.Event):
        self._plan = plan
        self._stop = stop
        self.runs = 0

    def __call__(self):
        return self

    def run(self, stop_event: threading.Event) -> None:
        self.runs += 1
        crash = self._plan.pop(0) if self._plan else False
        if crash:
            msg = "invariant broken"
            raise loop.CollectorFault(msg)
        self._stop.set()


# ---------------------------------------------------------------------------
# RestartBudget
# ---------------------------------------------------------------------------


def test_budget_allows_max_attempts():
    """consume() succeeds exactly max_attempts times."""
    budget = supervisor.RestartBudget(max_attempts=3)

    for _ in range(3):
        budget.consume()

    assert budget.consumed == 3
    assert budget.exhausted


def test_budget_raises_once_exhausted():
    """One more consume() than allowed raises and keeps consumed bounded."""
    budget = supervisor.RestartBudget(max_attempts=1)
    budget.consume()

    with pytest.raises(supervisor.RestartBudgetExhausted):
        budget.consume()

    assert budget.consumed == 1


def test_zero_budget_raises_on_first_crash():
    """With no restarts allowed, the first crash is final."""
    budget = supervisor.RestartBudget(max_attempts=0)

    with pytest.raises(supervisor.RestartBudgetExhausted):
        budget.consume()


def test_default_budget_is_ten():
    """The default restart budget matches the documented CLI default."""
    assert supervisor.RestartBudget().max_attempts == 10


def test_negative_budget_rejected():
    """A negative budget is a configuration error."""
    with pytest.raises(ValueError, match="negative"):
        supervisor.RestartBudget(max_attempts=-1)


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("max_attempts", [0, 1, 2, 5])
def test_gives_up_after_max_attempts_plus_one_faults(max_attempts: int):
    """max_attempts + 1 consecutive faults exhaust the budget."""
    stop = threading.Event()
    crashing = CrashingLoop([True] * (max_attempts + 1), stop)
    sup = supervisor.Supervisor(
        loop_factory=crashing,
        budget=supervisor.RestartBudget(max_attempts=max_attempts),
    )

    with pytest.raises(supervisor.RestartBudgetExhausted) as exc_info:
        sup.run(stop)

    assert crashing.runs == max_attempts + 1
    assert isinstance(exc_info.value.__cause__, loop.CollectorFault)


@pytest.mark.parametrize("max_attempts", [1, 2, 5])
def test_keeps_running_after_max_attempts_faults(max_attempts: int):
    """Up to max_attempts faults are absorbed by restarts."""
    stop = threading.Event()
    crashing = CrashingLoop([True] * max_attempts, stop)
    stats = loop.ExporterStats()
    sup = supervisor.Supervisor(
        loop_factory=crashing,
        budget=supervisor.RestartBudget(max_attempts=max_attempts),
        stats=stats,
    )

    sup.run(stop)

    assert crashing.runs == max_attempts + 1
    assert sup.budget.consumed == max_attempts
    assert stats.restarts == max_attempts


def test_each_restart_builds_a_fresh_loop():
    """The factory is called once per (re)start."""
    stop = threading.Event()
    first = MagicMock()
    first.run.side_effect = loop.CollectorFault("boom")
    second = MagicMock()
    second.run.side_effect = lambda event: stop.set()
    factory = MagicMock(side_effect=[first, second])
    sup = supervisor.Supervisor(
        loop_factory=factory,
        budget=supervisor.RestartBudget(max_attempts=1),
    )

    sup.run(stop)

    assert factory.call_count == 2
    first.run.assert_called_once_with(stop)
    second.run.assert_called_once_with(stop)


def test_stop_before_start_runs_nothing():
    """A set stop event ends supervision without building a loop."""
    stop = threading.Event()
    stop.set()
    factory = MagicMock()
    sup = supervisor.Supervisor(
        loop_factory=factory,
        budget=supervisor.RestartBudget(),
    )

    sup.run(stop)

    factory.assert_not_called()


def test_budget_is_never_reset_between_faults():
    """Faults separated by healthy periods still count against the budget."""
    stop = threading.Event()
    budget = supervisor.RestartBudget(max_attempts=2)
    for _ in range(2):
        stop.clear()
        crashing = CrashingLoop([True], stop)
        supervisor.Supervisor(loop_factory=crashing, budget=budget).run(stop)

    stop.clear()
    crashing = CrashingLoop([True], stop)
    with pytest.raises(supervisor.RestartBudgetExhausted):
        supervisor.Supervisor(loop_factory=crashing, budget=budget).run(stop)


def test_real_loop_scenario_two_attempts_three_faults():
    """max_attempts=2 with a source tripping an invariant gives up on fault three."""
    record = EntityRecord(
        entity_kind=EntityKind.NODE,
        entity_id="dup",
        counters={"busy_pct": 1},
    )
    source = MagicMock()
    source.fetch.return_value = ClusterSnapshot.model_construct(
        entities=[record, record],
    )
    reg = registry.MetricRegistry()
    sup = supervisor.Supervisor(
        loop_factory=lambda: loop.CollectorLoop(source, reg, interval=0.01),
        budget=supervisor.RestartBudget(max_attempts=2),
    )

    with pytest.raises(supervisor.RestartBudgetExhausted):
        sup.run(threading.Event())

    assert source.fetch.call_count == 3
