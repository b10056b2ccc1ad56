"""Turn a layout plan into the text of one frame.

``render`` is pure: the same plan, mode and previous height always produce
byte-identical output. Writing the frame is the caller's job.
"""

from __future__ import annotations

from dataclasses import dataclass

from hitome.layout import LayoutPlan
from hitome.panels import Cell

# ── ANSI sequences ─────────────────────────────────────────────────────────

CURSOR_HOME = "\x1b[H"
CLEAR_SCREEN = "\x1b[2J"
CLEAR_EOL = "\x1b[K"
CLEAR_EOS = "\x1b[J"
RESET = "\x1b[0m"
BOLD = "\x1b[1m"
SEVERITY_SGR = {1: "\x1b[1;93m", 2: "\x1b[1;91m", 3: "\x1b[1;95m"}

SEPARATOR = "----------"


@dataclass(frozen=True, slots=True)
class Frame:
    text: str
    height: int  # lines drawn


def _style(cell: Cell) -> str:
    if cell.severity:
        return SEVERITY_SGR.get(cell.severity, SEVERITY_SGR[3])
    if cell.heading:
        return BOLD
    return ""


def _draw_row(
    segments: list[tuple[int, str, str]], x: int, cells: tuple[Cell, ...]
) -> None:
    for i, cell in enumerate(cells):
        if i:
            x += cell.gap
        segments.append((x, format(cell.text, f"{cell.align}{cell.width}"), _style(cell)))
        x += cell.width


def _join(segments: list[tuple[int, str, str]], smart: bool) -> str:
    out: list[str] = []
    pos = 0
    for x, text, sgr in sorted(segments):
        if x > pos:
            out.append(" " * (x - pos))
        if smart and sgr and text.strip():
            out.append(f"{sgr}{text}{RESET}")
        else:
            out.append(text)
        pos = x + len(text)
    return "".join(out)


def frame_lines(plan: LayoutPlan, smart: bool = False) -> list[str]:
    """The frame's lines, styled when ``smart``, without terminators."""
    if plan.message is not None:
        return [plan.message] if plan.height > 0 else []

    height = max(
        (p.top + p.panel.header_rows + p.rows for p in plan.placements), default=0
    )
    lines: list[list[tuple[int, str, str]]] = [[] for _ in range(height)]
    for p in plan.placements:
        x = p.column * plan.column_width
        y = p.top
        if p.header:
            _draw_row(lines[y], x, p.header)
            y += 1
        for row in p.body:
            _draw_row(lines[y], x, row)
            y += 1
    return [_join(segments, smart) for segments in lines]


def render(plan: LayoutPlan, smart: bool = False, previous_height: int = 0) -> Frame:
    """Render a plan.

    Plain mode prints a separator and lets the output scroll. Smart mode
    redraws in place: cursor home, every line cleared to its end, no final
    newline, and the rest of the screen cleared when the frame shrank.
    """
    lines = frame_lines(plan, smart)
    if not smart:
        return Frame("\n".join([SEPARATOR, *lines]) + "\n", len(lines))

    prefix = CURSOR_HOME + CLEAR_SCREEN if previous_height == 0 else CURSOR_HOME
    text = prefix + (CLEAR_EOL + "\n").join(lines) + CLEAR_EOL
    if previous_height > len(lines):
        text += CLEAR_EOS
    return Frame(text, len(lines))
