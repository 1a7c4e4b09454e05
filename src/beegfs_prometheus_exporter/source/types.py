"""Cluster status types shared by all status sources.

Pydantic models describing one point-in-time read of the cluster. Counter
values are accepted as-is; deciding which of them are exportable is left to
the translator.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class EntityKind(str, Enum):
    """Kind of addressable cluster entity."""

    NODE = "node"
    TARGET = "target"
    CLIENT = "client"
    POOL = "pool"


class EntityRecord(BaseModel):
    """Status of one cluster entity (storage node, target, client, pool).

    ``entity_id`` is unique within ``entity_kind``. Counters may hold values
    of any type, non-numeric values are skipped during translation.
    """

    entity_kind: EntityKind
    entity_id: str
    counters: dict[str, Any] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)


class ClusterSnapshot(BaseModel):
    """Point-in-time read of cluster status, discarded after translation.

    Each ``(entity_kind, entity_id)`` pair appears at most once.
    """

    entities: list[EntityRecord] = Field(default_factory=list)
    source: str = ""

    @model_validator(mode="after")
    def _check_unique_entities(self) -> "ClusterSnapshot":
        seen = set()
        for record in self.entities:
            key = (record.entity_kind, record.entity_id)
            if key in seen:
                kind = record.entity_kind.value
                msg = f"Duplicate {kind} entity {record.entity_id!r}"
                raise ValueError(msg)
            seen.add(key)
        return self
