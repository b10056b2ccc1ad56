"""Panel models and the builders that fill them from delta records.

A panel is a small table: an optional heading row plus data rows made of
fixed-width ``Cell``s. Builders only decide content and ordering; where a
panel goes and how much of it survives is the layout engine's business.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Sequence

from hitome.config import DEFAULT_CONFIG, threshold
from hitome.readers import CLK_TCK, PRESSURE_RESOURCES, PRESSURE_WINDOWS
from hitome.sample import EntityId, RawSample

Deltas = Mapping[EntityId, Mapping[str, float]]

# ── Data types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Cell:
    text: str
    width: int
    align: str = ">"  # str.format alignment: "<" or ">"
    gap: int = 1  # spaces before the cell
    severity: int = 0  # 0 normal, 1 med, 2 high, 3 crit
    heading: bool = False
    flex: bool = False  # may be shortened by the layout

    def fit(self, width: int) -> Cell:
        return replace(self, text=self.text[:width], width=width)


def row_width(cells: Sequence[Cell]) -> int:
    """Width of a row; the first cell's gap is not drawn."""
    if not cells:
        return 0
    return sum(c.gap + c.width for c in cells) - cells[0].gap


@dataclass
class PanelModel:
    """One block of related values, ready for layout."""

    key: str
    priority: int
    rows: list[list[Cell]]
    header: list[Cell] | None = None
    mandatory: bool = False
    fill: bool = False
    min_rows: int = 1

    @property
    def header_rows(self) -> int:
        return 1 if self.header else 0

    @property
    def width(self) -> int:
        rows = self.rows + ([self.header] if self.header else [])
        return max((row_width(r) for r in rows), default=0)

    @property
    def height(self) -> int:
        return self.header_rows + len(self.rows)

    @property
    def min_width(self) -> int:
        rows = self.rows + ([self.header] if self.header else [])
        return max((1 if r[0].flex else r[0].width for r in rows if r), default=0)

    @property
    def min_height(self) -> int:
        return self.header_rows + min(self.min_rows, len(self.rows))


@dataclass
class PanelContext:
    """Everything a builder needs besides the readings themselves."""

    column_width: int = 8
    config: dict[str, Any] = field(default_factory=lambda: DEFAULT_CONFIG)
    clk_tck: int = CLK_TCK
    max_rows: int = 50
    cmdline: Callable[[int], list[str]] = lambda pid: []

    @property
    def cell_width(self) -> int:
        return self.column_width - 1

    def levels(self, metric: str) -> tuple[float, float, float]:
        return threshold(self.config, metric)


# ── Formatting helpers ─────────────────────────────────────────────────────

_BYTE_UNITS = (("T", 1024**4), ("G", 1024**3), ("M", 1024**2))


def fmt_bytes(value: float, width: int) -> str:
    """Byte count in at most ``width`` characters, "." for nothing.

    Uses the largest binary unit that still leaves four significant digits
    (fewer on narrow columns), falling back to kibibytes.
    """
    if value <= 0:
        return "."
    precision = 2 if width >= 8 else 1 if width >= 7 else 0
    room = width - 1 - (precision + 1 if precision else 0)
    limit = 10 ** max(1, min(room, 4))
    for suffix, scale in _BYTE_UNITS:
        if value >= limit * scale / 1024:
            return f"{value / scale:.{precision}f}{suffix}"
    return f"{value / 1024:.{precision}f}K"


def fmt_count(value: float, width: int) -> str:
    """Plain number with a decimal suffix once it no longer fits."""
    if value <= 0:
        return "."
    text = ""
    for suffix, scale in (("", 1.0), ("k", 1e3), ("M", 1e6), ("G", 1e9)):
        text = f"{value / scale:.0f}{suffix}"
        if len(text) <= width:
            break
    return text


def fmt_percent(value: float, width: int) -> str:
    text = f"{value:.1f}"
    if len(text) > width:
        text = f"{value:.0f}"
    return text


def severity(value: float, levels: tuple[float, float, float]) -> int:
    """Map a value onto 0-3 using (med, high, crit) levels."""
    med, high, crit = levels
    if value >= crit:
        return 3
    if value >= high:
        return 2
    if value >= med:
        return 1
    return 0


CPU_GLYPHS = ((0.01, " "), (0.1, "."), (0.2, "o"), (0.6, "O"))


def cpu_glyph(share: float) -> str:
    """One character summarising a fraction of a core's time."""
    for limit, glyph in CPU_GLYPHS:
        if share < limit:
            return glyph
    return "X"


def cpu_shares(rates: Mapping[str, float]) -> dict[str, float]:
    """Fraction of elapsed core time per jiffy category, plus ``busy``."""
    total = sum(rates.values())
    if total <= 0:
        return {}
    shares = {name: value / total for name, value in rates.items()}
    shares["busy"] = 1.0 - shares.get("idle", 0.0)
    return shares


def format_command(comm: str, args: Sequence[str]) -> str:
    """Command line for the process table.

    Kernel threads have no arguments and are shown as ``[comm]``. When the
    program name does not start with ``comm`` (the process renamed itself),
    ``comm`` is shown in parentheses first. Arguments are shell-quoted.
    """
    if not args:
        return f"[{comm}]"
    prog = os.path.basename(args[0])
    rest = " ".join(shlex.quote(arg) for arg in args[1:])
    text = f"{prog} {rest}" if rest else prog
    if comm and not prog.startswith(comm):
        text = f"({comm}) {text}"
    return text


# ── Cell helpers ───────────────────────────────────────────────────────────


def _label(text: str, ctx: PanelContext, heading: bool = False) -> Cell:
    w = ctx.cell_width
    return Cell(text[:w], w, "<", 0, heading=heading)


def _value(text: str, ctx: PanelContext, sev: int = 0, heading: bool = False) -> Cell:
    w = ctx.cell_width
    return Cell(text[:w], w, ">", 1, sev, heading)


def _header(ctx: PanelContext, title: str, *columns: str) -> list[Cell]:
    return [_label(title, ctx, heading=True)] + [
        _value(c, ctx, heading=True) for c in columns
    ]


def _sort_key(entity: EntityId) -> tuple[int, Any]:
    if isinstance(entity, int):
        return (0, entity)
    return (1, str(entity))


# ── Panel builders ─────────────────────────────────────────────────────────


def build_memory(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    mem = deltas.get("mem")
    if mem is None:
        return None
    w = ctx.cell_width

    dirty = mem.get("dirty", 0) + mem.get("writeback", 0)
    dirty_sev = 0
    if mem.get("dirty_threshold") and dirty >= mem["dirty_threshold"]:
        dirty_sev = 2
    elif mem.get("dirty_background_threshold") and dirty >= mem["dirty_background_threshold"]:
        dirty_sev = 1

    rows = [
        [_label("ACTIVE", ctx), _value(fmt_bytes(mem.get("active", 0), w), ctx)],
        [_label("INACTIVE", ctx), _value(fmt_bytes(mem.get("inactive", 0), w), ctx)],
        [_label("CACHED", ctx), _value(fmt_bytes(mem.get("cached", 0), w), ctx)],
        [_label("FREE", ctx), _value(fmt_bytes(mem.get("free", 0), w), ctx)],
        [_label("DIRTY", ctx), _value(fmt_bytes(mem.get("dirty", 0), w), ctx, dirty_sev)],
        [_label("W_BACK", ctx), _value(fmt_bytes(mem.get("writeback", 0), w), ctx, dirty_sev)],
    ]
    return PanelModel(
        key="memory",
        priority=PRIORITY["memory"],
        header=_header(ctx, "MEMORY", ""),
        rows=rows,
        mandatory=True,
        min_rows=len(rows),
    )


def build_swap(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    w = ctx.cell_width
    levels = ctx.levels("swap_used")
    rows: list[list[Cell]] = []

    def usage_row(name: str, values: Mapping[str, float]) -> list[Cell]:
        size = values.get("size", 0)
        used = values.get("used", 0)
        sev = severity(100.0 * used / size, levels) if size else 0
        row = [
            _label(name, ctx),
            _value(fmt_bytes(size, w), ctx),
            _value(fmt_bytes(used, w), ctx, sev),
        ]
        if "zram" in values:
            row.append(_value(fmt_bytes(values["zram"], w), ctx))
        return row

    for device in sorted((e for e in deltas if e != "total"), key=str):
        rows.append(usage_row(str(device), deltas[device]))

    total = deltas.get("total", {})
    rows.append(usage_row("total", total))
    if "swapin" in total:
        rows.append([_label("IN/s", ctx), _value(fmt_bytes(total["swapin"], w), ctx)])
    if "swapout" in total:
        rows.append([_label("OUT/s", ctx), _value(fmt_bytes(total["swapout"], w), ctx)])

    return PanelModel(
        key="swap",
        priority=PRIORITY["swap"],
        header=_header(ctx, "SWAP", "SIZE", "USED", "ZRAM"),
        rows=rows,
        mandatory=True,
    )


def build_pressure(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    resources = [r for r in PRESSURE_RESOURCES if r in deltas]
    if not resources:
        return None
    w = ctx.cell_width
    levels = ctx.levels("pressure")
    titles = {"cpu": "CPU", "memory": "MEM", "io": "IO"}

    rows: list[list[Cell]] = []
    for window in PRESSURE_WINDOWS:
        row = [_label(window, ctx)]
        for resource in resources:
            value = deltas[resource].get(f"some_{window}")
            if value is None:
                row.append(_value("-", ctx))
            else:
                row.append(_value(fmt_percent(value, w), ctx, severity(value, levels)))
        rows.append(row)

    # some_total is stalled microseconds, so its rate / 1e4 is a percentage
    now = [_label("now", ctx)]
    for resource in resources:
        rate = deltas[resource].get("some_total")
        if rate is None:
            now.append(_value("-", ctx))
        else:
            pct = rate / 1e4
            now.append(_value(fmt_percent(pct, w), ctx, severity(pct, levels)))
    rows.append(now)

    return PanelModel(
        key="pressure",
        priority=PRIORITY["pressure"],
        header=_header(ctx, "PSI", *(titles[r] for r in resources)),
        rows=rows,
        mandatory=True,
        min_rows=len(rows),
    )


_CPU_ROWS = (
    ("IOWAIT", ("iowait",)),
    ("SYSTEM", ("system", "irq", "softirq")),
    ("USER", ("user",)),
    ("NICE", ("nice",)),
)


def build_cpu(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    cores = sorted(c for c in deltas if "idle" in deltas[c])
    if not cores:
        return None
    shares = {core: cpu_shares(deltas[core]) for core in cores}

    header = [_label("CPU", ctx, heading=True)]
    for i, core in enumerate(cores):
        header.append(Cell(str(core)[-1], 1, "<", 1 if i == 0 else 0, heading=True))

    rows: list[list[Cell]] = []
    for title, categories in _CPU_ROWS:
        row = [_label(title, ctx)]
        for i, core in enumerate(cores):
            share = sum(shares[core].get(c, 0.0) for c in categories)
            glyph = cpu_glyph(share)
            sev = 2 if glyph == "X" else 1 if glyph == "O" else 0
            row.append(Cell(glyph, 1, "<", 1 if i == 0 else 0, sev))
        rows.append(row)

    return PanelModel(
        key="cpu",
        priority=PRIORITY["cpu"],
        header=header,
        rows=rows,
        min_rows=len(rows),
    )


def build_hwmon(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    w = ctx.cell_width
    temp_levels = ctx.levels("temperature")
    gpu_levels = ctx.levels("gpu_percent")

    rows: list[list[Cell]] = []
    for chip, values in deltas.items():
        if not values:
            continue
        chip_rows: list[list[Cell]] = []
        for name in sorted(values):
            value = values[name]
            kind, _, label = name.partition(":")
            if kind == "temp":
                chip_rows.append(
                    [_label(label, ctx), _value(f"{value:.0f}C", ctx, severity(value, temp_levels))]
                )
            elif kind == "pct":
                chip_rows.append(
                    [_label(label, ctx), _value(fmt_percent(value, w), ctx, severity(value, gpu_levels))]
                )
            elif kind == "power" and values.get(f"power_cap:{label}"):
                pct = 100.0 * value / values[f"power_cap:{label}"]
                chip_rows.append(
                    [_label(label, ctx), _value(f"{value:.0f}W", ctx, severity(pct, gpu_levels))]
                )
        if values.get("vram_total"):
            pct = 100.0 * values.get("vram_used", 0) / values["vram_total"]
            chip_rows.append(
                [_label("vram", ctx), _value(fmt_percent(pct, w), ctx, severity(pct, gpu_levels))]
            )
        if chip_rows:
            name = sample.label(chip, "name", str(chip))
            rows.append([Cell(name, len(name), "<", 0, flex=True)])
            rows.extend(chip_rows)

    if not rows:
        return None
    return PanelModel(
        key="hwmon",
        priority=PRIORITY["hwmon"],
        header=_header(ctx, "SENSORS", ""),
        rows=rows,
    )


def build_network(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    w = ctx.cell_width
    rows = [
        [
            _label(str(iface), ctx),
            _value(fmt_bytes(rates["rx"], w), ctx),
            _value(fmt_bytes(rates["tx"], w), ctx),
        ]
        for iface, rates in sorted(deltas.items(), key=lambda kv: str(kv[0]))
        if "rx" in rates and "tx" in rates
    ]
    if not rows:
        return None
    return PanelModel(
        key="network",
        priority=PRIORITY["network"],
        header=_header(ctx, "NET", "RX/s", "TX/s"),
        rows=rows,
    )


def build_blockdev(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    w = ctx.cell_width
    levels = ctx.levels("disk_busy")
    rows: list[list[Cell]] = []
    for device, rates in sorted(deltas.items(), key=lambda kv: str(kv[0])):
        if "read" not in rates or "written" not in rates:
            continue
        # weighted_ms per second / 1000 * 100
        busy = rates.get("weighted_ms", 0.0) / 10
        rows.append(
            [
                _label(str(device), ctx),
                _value(fmt_bytes(rates["read"], w), ctx),
                _value(fmt_bytes(rates["written"], w), ctx),
                _value(fmt_percent(busy, w), ctx, severity(busy, levels)),
            ]
        )
    if not rows:
        return None
    return PanelModel(
        key="blockdev",
        priority=PRIORITY["blockdev"],
        header=_header(ctx, "DISK", "READ/s", "WRITE/s", "BUSY%"),
        rows=rows,
    )


def build_filesystem(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    w = ctx.cell_width
    levels = ctx.levels("fs_used")
    rows: list[list[Cell]] = []
    for mount, values in sorted(deltas.items(), key=lambda kv: str(kv[0])):
        size = values.get("size", 0)
        used = values.get("used", 0)
        pct = 100.0 * used / size if size else 0.0
        rows.append(
            [
                _label(str(mount), ctx),
                _value(fmt_percent(pct, w), ctx, severity(pct, levels)),
                _value(fmt_bytes(used, w), ctx),
                _value(fmt_bytes(values.get("avail", 0), w), ctx),
            ]
        )
    if not rows:
        return None
    return PanelModel(
        key="filesystem",
        priority=PRIORITY["filesystem"],
        header=_header(ctx, "FS", "USED%", "USED", "AVAIL"),
        rows=rows,
    )


def _hit_ratio(hits: float | None, misses: float | None) -> float | None:
    if hits is None or misses is None or hits + misses <= 0:
        return None
    return 100.0 * hits / (hits + misses)


def build_cache(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    w = ctx.cell_width
    levels = ctx.levels("cache_used")
    rows: list[list[Cell]] = []
    for device, values in sorted(deltas.items(), key=lambda kv: str(kv[0])):
        total = values.get("cache_total", 0)
        used_pct = 100.0 * values.get("cache_used", 0) / total if total else 0.0
        row = [
            _label(str(device), ctx),
            _value(fmt_percent(used_pct, w), ctx, severity(used_pct, levels)),
        ]
        for hits, misses in (("read_hits", "read_misses"), ("write_hits", "write_misses")):
            ratio = _hit_ratio(values.get(hits), values.get(misses))
            row.append(_value("." if ratio is None else fmt_percent(ratio, w), ctx))
        row.append(_value(fmt_count(values.get("dirty", 0), w), ctx))
        row.append(_value(fmt_count(values.get("promotions", 0), w), ctx))
        row.append(_value(fmt_count(values.get("demotions", 0), w), ctx))
        rows.append(row)
    if not rows:
        return None
    return PanelModel(
        key="cache",
        priority=PRIORITY["cache"],
        header=_header(ctx, "CACHE", "USED%", "RHIT%", "WHIT%", "DIRTY", "PROMO/s", "DEMOT/s"),
        rows=rows,
    )


def build_tasks(deltas: Deltas, sample: RawSample, ctx: PanelContext) -> PanelModel | None:
    w = ctx.cell_width
    levels = ctx.levels("task_cpu")
    procs = sorted(
        (
            (100.0 * rates["cpu_ticks"] / ctx.clk_tck, pid)
            for pid, rates in deltas.items()
            if "cpu_ticks" in rates
        ),
        key=lambda p: (-p[0], _sort_key(p[1])),
    )
    if not procs:
        return None

    rows: list[list[Cell]] = []
    for i, (cpu, pid) in enumerate(procs):
        comm = sample.label(pid, "comm")
        state = sample.label(pid, "state", "?")
        # Arguments are only looked up for rows that can be on screen
        if i < ctx.max_rows:
            command = format_command(comm, ctx.cmdline(int(pid)))
        else:
            command = comm
        state_sev = 3 if state == "D" else 1 if state == "R" else 0
        rows.append(
            [
                Cell(str(pid)[-w:], w, ">", 0),
                Cell(state[:1], 1, "<", 1, state_sev),
                _value(fmt_percent(cpu, w), ctx, severity(cpu, levels)),
                Cell(command, len(command), "<", 1, flex=True),
            ]
        )

    header = [
        Cell("PID", w, ">", 0, heading=True),
        Cell("S", 1, "<", 1, heading=True),
        _value("CPU%", ctx, heading=True),
        Cell("COMMAND", len("COMMAND"), "<", 1, heading=True, flex=True),
    ]
    return PanelModel(
        key="tasks",
        priority=PRIORITY["tasks"],
        header=header,
        rows=rows,
        fill=True,
    )


# ── Registry ───────────────────────────────────────────────────────────────

PanelBuilder = Callable[[Deltas, RawSample, PanelContext], PanelModel | None]

BUILDERS: dict[str, PanelBuilder] = {
    "memory": build_memory,
    "swap": build_swap,
    "pressure": build_pressure,
    "cpu": build_cpu,
    "hwmon": build_hwmon,
    "network": build_network,
    "blockdev": build_blockdev,
    "filesystem": build_filesystem,
    "cache": build_cache,
    "tasks": build_tasks,
}

PRIORITY: dict[str, int] = {name: i for i, name in enumerate(BUILDERS)}


def build_panel(
    reader: str,
    deltas: Deltas,
    sample: RawSample,
    ctx: PanelContext,
) -> PanelModel | None:
    """Build the panel for one reader, or *None* when there is nothing to show."""
    builder = BUILDERS.get(reader)
    if builder is None:
        return None
    return builder(deltas, sample, ctx)
