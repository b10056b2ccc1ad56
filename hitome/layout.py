"""Layout engine: fit panels into the terminal grid.

Panels are packed greedily, in priority order, into horizontal bands. Each
panel starts on a column boundary (a multiple of the column width) and
nothing is ever drawn outside the terminal: panels that are too wide lose
trailing cells, panels that are too tall lose trailing rows, and panels
that cannot keep their minimum are dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from hitome.panels import Cell, PanelModel, row_width

logger = logging.getLogger(__name__)

TOO_SMALL = "terminal too small"

# ── Data types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Placement:
    """Where a panel goes and what is left of it."""

    panel: PanelModel
    column: int  # grid column; x = column * column_width
    top: int
    rows: int  # data rows shown, heading excluded
    width: int
    truncated: bool
    header: tuple[Cell, ...] | None
    body: tuple[tuple[Cell, ...], ...]


@dataclass(frozen=True, slots=True)
class LayoutPlan:
    width: int
    height: int
    column_width: int
    placements: tuple[Placement, ...] = ()
    message: str | None = None

    @property
    def feasible(self) -> bool:
        return self.message is None


# ── Width fitting ──────────────────────────────────────────────────────────


def _fit_row(cells: Sequence[Cell], max_width: int) -> tuple[Cell, ...]:
    """Keep the leading cells that fit; a flex cell shrinks instead."""
    kept: list[Cell] = []
    used = 0
    for i, cell in enumerate(cells):
        gap = cell.gap if i else 0
        if used + gap + cell.width <= max_width:
            kept.append(cell)
            used += gap + cell.width
            continue
        if cell.flex and used + gap < max_width:
            kept.append(cell.fit(max_width - used - gap))
        break
    return tuple(kept)


def _fit_width(
    panel: PanelModel, max_width: int
) -> tuple[tuple[Cell, ...] | None, tuple[tuple[Cell, ...], ...], int] | None:
    """Cut a panel down to ``max_width``, or *None* if not even a first cell fits."""
    if max_width <= 0:
        return None
    header = _fit_row(panel.header, max_width) if panel.header else None
    if panel.header and not header:
        return None
    body = tuple(_fit_row(row, max_width) for row in panel.rows)
    if any(not row for row in body):
        return None
    rows = list(body) + ([header] if header else [])
    return header, body, max(row_width(r) for r in rows)


# ── Packing ────────────────────────────────────────────────────────────────


class _Packer:
    """Band-by-band placement state for one planning pass."""

    def __init__(self, width: int, height: int, column_width: int) -> None:
        self.width = width
        self.height = height
        self.column_width = column_width
        self.placements: list[Placement] = []
        self.band_top = 0
        self.band_height = 0
        self.next_x = 0  # first free x in the current band

    def _next_column(self) -> int:
        if not self.next_x:
            return 0
        return -(-self.next_x // self.column_width)

    def _new_band(self) -> None:
        if self.band_height:
            # One blank separator line between bands
            self.band_top += self.band_height + 1
        self.band_height = 0
        self.next_x = 0

    def _try(self, panel: PanelModel, column: int, top: int) -> Placement | None:
        x = column * self.column_width
        fitted = _fit_width(panel, self.width - x)
        if fitted is None:
            return None
        header, body, width = fitted

        avail = self.height - top - panel.header_rows
        if avail < 0:
            return None
        rows = min(len(body), avail)
        if rows < min(panel.min_rows, len(body)):
            return None
        return Placement(
            panel=panel,
            column=column,
            top=top,
            rows=rows,
            width=width,
            truncated=rows < len(body) or width < panel.width,
            header=header,
            body=body[:rows],
        )

    def place(self, panel: PanelModel) -> bool:
        placement = None
        column = self._next_column()
        if column and column * self.column_width + panel.width <= self.width:
            placement = self._try(panel, column, self.band_top)
        if placement is None:
            saved = (self.band_top, self.band_height, self.next_x)
            self._new_band()
            placement = self._try(panel, 0, self.band_top)
            if placement is None:
                self.band_top, self.band_height, self.next_x = saved
                return False

        self.placements.append(placement)
        self.band_height = max(self.band_height, panel.header_rows + placement.rows)
        self.next_x = placement.column * self.column_width + placement.width + 1
        return True


def _pack(
    panels: Iterable[PanelModel],
    width: int,
    height: int,
    column_width: int,
    strict: bool,
) -> list[Placement] | None:
    """Place panels; returns *None* in strict mode when a mandatory one fails."""
    ordered = sorted(panels, key=lambda p: (p.fill, p.priority))
    packer = _Packer(width, height, column_width)
    for panel in ordered:
        if packer.place(panel):
            continue
        if strict and panel.mandatory:
            logger.debug("layout: mandatory panel %s does not fit", panel.key)
            return None
        logger.debug("layout: dropped panel %s", panel.key)
    return packer.placements


def plan(
    panels: Sequence[PanelModel],
    width: int,
    height: int,
    column_width: int,
) -> LayoutPlan:
    """Lay out panels for a ``width`` x ``height`` terminal.

    Fill panels are placed after all others and take the rows that remain.
    If a mandatory panel cannot be placed, only mandatory panels are laid
    out. When nothing fits, the plan only carries a short message.
    """
    columns = width // column_width if column_width > 0 else 0
    if columns <= 0 or height <= 0:
        return LayoutPlan(width, height, column_width, message=TOO_SMALL[: max(width, 0)])

    placements = _pack(panels, width, height, column_width, strict=True)
    if placements is None:
        mandatory = [p for p in panels if p.mandatory]
        placements = _pack(mandatory, width, height, column_width, strict=False) or []

    if not placements and panels:
        return LayoutPlan(width, height, column_width, message=TOO_SMALL[:width])
    return LayoutPlan(width, height, column_width, tuple(placements))
