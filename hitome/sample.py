"""Raw sample data model shared by readers and the delta engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Union

EntityId = Union[str, int]
Number = Union[int, float]

_EMPTY: Mapping[str, str] = MappingProxyType({})


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Which fields of a reader are cumulative counters.

    Every field not listed in ``cumulative`` is an instantaneous value.
    When an ``identity`` field changes between two samples the entity is
    considered a different instance (e.g. a recycled PID).
    """

    cumulative: frozenset[str] = frozenset()
    identity: tuple[str, ...] = ()

    def is_cumulative(self, name: str) -> bool:
        return name in self.cumulative


@dataclass(frozen=True, slots=True)
class RawSample:
    """One reader's readings at one instant."""

    reader: str
    timestamp: float  # time.monotonic() seconds
    entities: Mapping[EntityId, Mapping[str, Number]]
    labels: Mapping[EntityId, Mapping[str, str]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def build(
        cls,
        reader: str,
        timestamp: float,
        entities: dict[EntityId, dict[str, Number]],
        labels: dict[EntityId, dict[str, str]] | None = None,
    ) -> RawSample:
        """Freeze freshly parsed dicts into a read-only sample."""
        return cls(
            reader=reader,
            timestamp=timestamp,
            entities=MappingProxyType(
                {k: MappingProxyType(dict(v)) for k, v in entities.items()}
            ),
            labels=MappingProxyType(
                {k: MappingProxyType(dict(v)) for k, v in (labels or {}).items()}
            ),
        )

    def label(self, entity: EntityId, name: str, default: str = "") -> str:
        return self.labels.get(entity, _EMPTY).get(name, default)

    def __len__(self) -> int:
        return len(self.entities)
