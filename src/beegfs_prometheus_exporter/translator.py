"""Translation of cluster snapshots into metric samples.

Maps every numeric counter of every entity in a snapshot to one
:class:`MetricSample`. Translation is a pure function: identical snapshots
always produce identical, identically ordered samples.
"""

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

import structlog

from .source.types import ClusterSnapshot, EntityRecord

logger = structlog.get_logger(__name__)

DEFAULT_PREFIX = "beegfs"

# Counters that only grow over the lifetime of the source.
MONOTONIC_COUNTERS = frozenset({"written_kib", "read_kib", "requests"})

ENTITY_ID_LABEL = "entity_id"

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")

Labels = tuple[tuple[str, str], ...]
SampleKey = tuple[str, Labels]


class MetricType(str, Enum):
    """Prometheus metric type of a sample."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricSample:
    """One exported observation.

    Labels are stored as sorted ``(key, value)`` pairs so that samples are
    hashable and compare equal regardless of label insertion order.
    """

    name: str
    labels: Labels
    value: float
    metric_type: MetricType = MetricType.GAUGE
    documentation: str = ""

    @property
    def key(self) -> SampleKey:
        """Registry key identifying the series of this sample."""
        return (self.name, self.labels)

    @property
    def label_dict(self) -> dict[str, str]:
        """Labels of this sample as a plain dict."""
        return dict(self.labels)


@dataclass(frozen=True)
class SkippedCounter:
    """Diagnostic for a counter value that could not be exported."""

    entity_kind: str
    entity_id: str
    counter: str
    reason: str


@dataclass(frozen=True)
class SkippedLabel:
    """Diagnostic for an entity label dropped because its key collided."""

    entity_kind: str
    entity_id: str
    label: str
    reason: str


@dataclass(frozen=True)
class Translation:
    """Result of translating one snapshot."""

    samples: tuple[MetricSample, ...]
    skipped: tuple[SkippedCounter, ...] = ()
    skipped_labels: tuple[SkippedLabel, ...] = ()


class TranslationInvariantError(Exception):
    """Raised when a snapshot translates into conflicting samples."""


def sanitize_name(name: str) -> str:
    """Turn an arbitrary string into a valid Prometheus name component.

    Invalid characters are replaced by underscores and a leading digit is
    prefixed with an underscore.
    """
    cleaned = _INVALID_NAME_CHARS.sub("_", name)
    if cleaned and cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


def make_labels(labels: Mapping[str, str]) -> Labels:
    """Build a sorted, hashable label tuple from a mapping."""
    return tuple(sorted(labels.items()))


def metric_type_for(counter: str, counter_names: Iterable[str]) -> MetricType:
    """Classify a counter as monotonic (Counter) or free-moving (Gauge)."""
    if counter in counter_names or counter.endswith("_total"):
        return MetricType.COUNTER
    return MetricType.GAUGE


def _numeric_value(value: object) -> float | None:
    """Return value as float if it is an exportable number, else None."""
    # bool is an int subclass but not a measurement
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    result = float(value)
    if not math.isfinite(result):
        return None
    return result


def _entity_labels(
    record: EntityRecord,
    skipped_labels: list[SkippedLabel],
) -> Labels:
    """Sanitize label keys.

    When two keys sanitize to the same name, a key that was already valid wins,
    otherwise the first in sorted order. The losers are reported in
    ``skipped_labels``.
    """
    labels: dict[str, str] = {}
    origins: dict[str, str] = {}
    for key in sorted(record.labels, key=lambda k: (sanitize_name(k) != k, k)):
        name = sanitize_name(key)
        if name in origins:
            skipped_labels.append(
                SkippedLabel(
                    entity_kind=record.entity_kind.value,
                    entity_id=record.entity_id,
                    label=key,
                    reason=f"key collides with {origins[name]!r} as {name!r}",
                ),
            )
            continue
        origins[name] = key
        labels[name] = str(record.labels[key])
    labels[ENTITY_ID_LABEL] = record.entity_id
    return make_labels(labels)


def translate(
    snapshot: ClusterSnapshot,
    prefix: str = DEFAULT_PREFIX,
    counter_names: Iterable[str] = MONOTONIC_COUNTERS,
) -> Translation:
    """Translate a cluster snapshot into metric samples.

    Each numeric counter becomes a sample named ``<prefix>_<kind>_<counter>``
    labelled with the entity labels plus ``entity_id``. Non-numeric and
    non-finite values are skipped and reported in ``Translation.skipped``.

    Args:
        snapshot: Cluster snapshot to translate.
        prefix: Metric name prefix.
        counter_names: Counter names documented as monotonically increasing.

    Returns:
        Samples ordered by entity kind, entity id and counter name, together
        with the skipped-counter and dropped-label diagnostics.

    Raises:
        TranslationInvariantError: If two samples share name and labels,
            which happens when a snapshot repeats an entity.
    """
    counter_names = frozenset(counter_names)
    samples: list[MetricSample] = []
    skipped: list[SkippedCounter] = []
    skipped_labels: list[SkippedLabel] = []
    seen: set[SampleKey] = set()

    records = sorted(
        snapshot.entities,
        key=lambda record: (record.entity_kind.value, record.entity_id),
    )
    for record in records:
        kind = record.entity_kind.value
        labels = _entity_labels(record, skipped_labels)

        for counter in sorted(record.counters):
            raw_value = record.counters[counter]
            value = _numeric_value(raw_value)
            if value is None:
                skipped.append(
                    SkippedCounter(
                        entity_kind=kind,
                        entity_id=record.entity_id,
                        counter=counter,
                        reason=f"unsupported value {raw_value!r}",
                    ),
                )
                continue

            name = f"{sanitize_name(prefix)}_{kind}_{sanitize_name(counter)}"
            sample = MetricSample(
                name=name,
                labels=labels,
                value=value,
                metric_type=metric_type_for(counter, counter_names),
                documentation=f"BeeGFS {kind} counter {counter}",
            )
            if sample.key in seen:
                msg = (
                    f"Duplicate series {name} for {kind} {record.entity_id!r} "
                    f"in snapshot from {snapshot.source or 'unknown source'}"
                )
                raise TranslationInvariantError(msg)
            seen.add(sample.key)
            samples.append(sample)

    for diagnostic in skipped:
        logger.debug(
            "Skipped counter",
            entity_kind=diagnostic.entity_kind,
            entity_id=diagnostic.entity_id,
            counter=diagnostic.counter,
            reason=diagnostic.reason,
        )
    for label in skipped_labels:
        logger.warning(
            "Dropped entity label",
            entity_kind=label.entity_kind,
            entity_id=label.entity_id,
            label=label.label,
            reason=label.reason,
        )

    return Translation(
        samples=tuple(samples),
        skipped=tuple(skipped),
        skipped_labels=tuple(skipped_labels),
    )
