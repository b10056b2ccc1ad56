"""Delta engine and snapshot store.

Raw counters only mean something relative to a previous reading, so every
reader keeps exactly two generations: the sample from the previous tick and
the one from this tick. ``compute_deltas`` turns such a pair into rates.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from hitome.sample import EntityId, FieldSpec, Number, RawSample


class DeltaKind(Enum):
    RATE = "rate"
    INSTANT = "instant"


@dataclass(frozen=True, slots=True)
class DeltaRecord:
    """One derived value for one entity/field."""

    entity: EntityId
    field: str
    value: float
    kind: DeltaKind


# ── Delta engine ───────────────────────────────────────────────────────────


def compute_deltas(
    previous: RawSample | None,
    current: RawSample,
    fields: FieldSpec,
) -> list[DeltaRecord]:
    """Derive per-second rates and pass-through values from two samples.

    Cumulative fields need the entity in both samples; a counter that went
    backwards is treated as restarted from zero. The denominator is the
    measured time between the two samples, not the nominal interval.
    """
    elapsed = current.timestamp - previous.timestamp if previous is not None else 0.0
    has_history = previous is not None and elapsed > 0

    records: list[DeltaRecord] = []
    for entity, values in current.entities.items():
        before = previous.entities.get(entity) if has_history else None
        if before is not None and _identity_changed(before, values, fields):
            before = None

        for name in sorted(values):
            value = values[name]
            if not fields.is_cumulative(name):
                records.append(DeltaRecord(entity, name, value, DeltaKind.INSTANT))
                continue
            if before is None or name not in before:
                continue
            if value >= before[name]:
                rate = (value - before[name]) / elapsed
            else:
                # Wrapped or reset
                rate = value / elapsed
            records.append(DeltaRecord(entity, name, rate, DeltaKind.RATE))

    return records


def _identity_changed(
    before: Mapping[str, Number],
    after: Mapping[str, Number],
    fields: FieldSpec,
) -> bool:
    return any(before.get(k) != after.get(k) for k in fields.identity)


def index_deltas(records: Iterable[DeltaRecord]) -> dict[EntityId, dict[str, float]]:
    """Group records as ``{entity: {field: value}}``, keeping entity order."""
    out: dict[EntityId, dict[str, float]] = {}
    for rec in records:
        out.setdefault(rec.entity, {})[rec.field] = rec.value
    return out


# ── Snapshot store ─────────────────────────────────────────────────────────


class SnapshotStore:
    """Previous and current sample per reader, nothing older."""

    def __init__(self) -> None:
        self._generations: dict[str, tuple[RawSample | None, RawSample]] = {}

    def rotate(self, sample: RawSample) -> None:
        """Make ``sample`` current; the old current becomes previous."""
        pair = self._generations.get(sample.reader)
        previous = pair[1] if pair is not None else None
        self._generations[sample.reader] = (previous, sample)

    def discard(self, reader: str) -> None:
        self._generations.pop(reader, None)

    def previous(self, reader: str) -> RawSample | None:
        pair = self._generations.get(reader)
        return pair[0] if pair is not None else None

    def current(self, reader: str) -> RawSample | None:
        pair = self._generations.get(reader)
        return pair[1] if pair is not None else None

    def __contains__(self, reader: object) -> bool:
        return reader in self._generations

    def __len__(self) -> int:
        return len(self._generations)
