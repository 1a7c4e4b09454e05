"""Tests for MetricRegistry update, eviction and concurrent reads."""

import threading
from unittest.mock import patch

import pytest

from beegfs_prometheus_exporter import registry
from beegfs_prometheus_exporter.translator import MetricSample, make_labels


def _sample(entity_id: str, value: float, name: str = "beegfs_node_busy_pct"):
    return MetricSample(
        name=name,
        labels=make_labels({"entity_id": entity_id}),
        value=value,
    )


# ---------------------------------------------------------------------------
# Update semantics
# ---------------------------------------------------------------------------


def test_empty_registry_exports_nothing():
    """A registry that never saw an update exports an empty snapshot."""
    reg = registry.MetricRegistry()

    assert reg.snapshot_for_export() == ()
    assert len(reg) == 0


def test_update_overwrites_existing_series():
    """A new value for the same series replaces the old one."""
    reg = registry.MetricRegistry()
    reg.update([_sample("n1", 1)])

    result = reg.update([_sample("n1", 2)])

    assert [s.value for s in reg.snapshot_for_export()] == [2]
    assert result.updated == 1
    assert result.added == 0


def test_update_is_idempotent():
    """Applying the same samples twice yields the same export."""
    reg = registry.MetricRegistry()
    samples = [_sample("n2", 5), _sample("n1", 3)]

    reg.update(samples)
    first = reg.snapshot_for_export()
    reg.update(samples)
    second = reg.snapshot_for_export()

    assert first == second


def test_export_is_sorted_by_name_and_labels():
    """Export order is stable regardless of update order."""
    reg = registry.MetricRegistry()
    reg.update(
        [
            _sample("n2", 1, name="beegfs_node_b"),
            _sample("n1", 1, name="beegfs_node_b"),
            _sample("n1", 1, name="beegfs_node_a"),
        ],
    )

    keys = [(s.name, s.label_dict["entity_id"]) for s in reg.snapshot_for_export()]

    assert keys == [
        ("beegfs_node_a", "n1"),
        ("beegfs_node_b", "n1"),
        ("beegfs_node_b", "n2"),
    ]


def test_duplicate_series_rejected_without_changing_state():
    """An update with two samples for one series raises and is not applied."""
    reg = registry.MetricRegistry()
    reg.update([_sample("n1", 1)])

    with pytest.raises(ValueError, match="Duplicate series"):
        reg.update([_sample("n2", 1), _sample("n2", 2)])

    assert [s.label_dict["entity_id"] for s in reg.snapshot_for_export()] == ["n1"]


# ---------------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------------


def test_vanished_entity_is_evicted_by_default():
    """A series missing from the next update disappears from the export."""
    reg = registry.MetricRegistry()
    reg.update([_sample("n1", 1), _sample("n2", 1)])

    result = reg.update([_sample("n1", 1)])

    ids = [s.label_dict["entity_id"] for s in reg.snapshot_for_export()]
    assert ids == ["n1"]
    assert result.evicted == 1


def test_empty_update_evicts_everything():
    """A successful cycle with no entities clears the registry."""
    reg = registry.MetricRegistry()
    reg.update([_sample("n1", 1)])

    reg.update([])

    assert reg.snapshot_for_export() == ()


@patch("beegfs_prometheus_exporter.registry.time")
def test_stale_series_retained_within_ttl(mock_time):
    """With a TTL, an absent series keeps its last value until the TTL expires."""
    mock_time.monotonic.side_effect = [100.0, 105.0, 200.0]
    reg = registry.MetricRegistry(stale_series_ttl=30.0)

    reg.update([_sample("n1", 1), _sample("n2", 7)])
    within = reg.update([_sample("n1", 2)])
    ids_within = [s.label_dict["entity_id"] for s in reg.snapshot_for_export()]
    expired = reg.update([_sample("n1", 3)])
    ids_expired = [s.label_dict["entity_id"] for s in reg.snapshot_for_export()]

    assert ids_within == ["n1", "n2"]
    assert within.retained == 1
    assert ids_expired == ["n1"]
    assert expired.evicted == 1


def test_negative_ttl_rejected():
    """A negative TTL is a configuration error."""
    with pytest.raises(ValueError, match="negative"):
        registry.MetricRegistry(stale_series_ttl=-1)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_reads_see_whole_generations():
    """Readers racing a writer only ever see one complete generation."""
    reg = registry.MetricRegistry()
    entity_ids = [f"n{i}" for i in range(50)]
    generations = 200
    stop = threading.Event()
    errors: list[str] = []

    def writer():
        for generation in range(generations):
            reg.update([_sample(eid, generation) for eid in entity_ids])
        stop.set()

    def reader():
        while not stop.is_set():
            snapshot = reg.snapshot_for_export()
            if not snapshot:
                continue
            values = {s.value for s in snapshot}
            if len(snapshot) != len(entity_ids) or len(values) != 1:
                errors.append(f"torn snapshot: {len(snapshot)} series, {values}")

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for t in readers:
        t.start()
    writer()
    for t in readers:
        t.join()

    assert errors == []
