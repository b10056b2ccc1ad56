"""Counter readers: one per kernel data source.

Each reader parses one source (mostly /proc and /sys text files, plus a
couple of helper commands) into a ``RawSample`` and knows nothing about the
others. A malformed line only drops that entity; a missing source raises
``SourceUnavailable`` so the dashboard can omit the panel.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, ClassVar, Sequence

import psutil

from hitome.errors import ParseFailure, SourceUnavailable
from hitome.sample import EntityId, FieldSpec, Number, RawSample

logger = logging.getLogger(__name__)

Entities = dict[EntityId, dict[str, Number]]
Labels = dict[EntityId, dict[str, str]]

SECTOR_SIZE = 512
PAGE_SIZE: int = os.sysconf("SC_PAGE_SIZE")
CLK_TCK: int = os.sysconf("SC_CLK_TCK")


def _read(path: Path) -> str:
    """Read a pseudo-file, replacing invalid UTF-8 (process names are user data)."""
    return path.read_bytes().decode("utf-8", errors="replace")


def _parse_vmstat(text: str) -> dict[str, int]:
    values: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            values[parts[0]] = int(parts[1])
        except ValueError:
            logger.debug("vmstat: malformed line %r", line)
    return values


# ── Base class ─────────────────────────────────────────────────────────────


class Reader:
    """A kernel data source that can produce a ``RawSample``."""

    name: ClassVar[str] = ""
    fields: ClassVar[FieldSpec] = FieldSpec()
    mandatory: ClassVar[bool] = False

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock

    def sample(self) -> RawSample:
        entities, labels = self._collect()
        return RawSample.build(self.name, self._clock(), entities, labels)

    def _collect(self) -> tuple[Entities, Labels]:
        raise NotImplementedError


# ── Memory / swap / pressure ───────────────────────────────────────────────

# vmstat counter -> memory fields it contributes to
_VMSTAT_MEMORY: dict[str, tuple[str, ...]] = {
    "nr_active_anon": ("active",),
    "nr_active_file": ("active", "cached"),
    "nr_inactive_anon": ("inactive",),
    "nr_inactive_file": ("inactive", "cached"),
    "nr_slab_unreclaimable": ("cached",),
    "nr_slab_reclaimable": ("cached",),
    "nr_kernel_misc_reclaimable": ("cached",),
    "nr_swapcached": ("cached",),
    "nr_free_pages": ("free",),
    "nr_dirty": ("dirty",),
    "nr_writeback": ("writeback",),
    "nr_dirty_threshold": ("dirty_threshold",),
    "nr_dirty_background_threshold": ("dirty_background_threshold",),
}

MEMORY_FIELDS = (
    "active",
    "inactive",
    "cached",
    "free",
    "dirty",
    "writeback",
    "dirty_threshold",
    "dirty_background_threshold",
)


class MemoryReader(Reader):
    """Page-cache and anonymous memory breakdown from /proc/vmstat."""

    name = "memory"
    mandatory = True

    def __init__(
        self,
        proc_root: str | Path = "/proc",
        page_size: int = PAGE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._path = Path(proc_root) / "vmstat"
        self._page_size = page_size

    def _collect(self) -> tuple[Entities, Labels]:
        try:
            vmstat = _parse_vmstat(_read(self._path))
        except OSError as e:
            raise SourceUnavailable(self.name, str(e)) from e

        mem: dict[str, Number] = dict.fromkeys(MEMORY_FIELDS, 0)
        for key, targets in _VMSTAT_MEMORY.items():
            pages = vmstat.get(key)
            if pages is None:
                continue
            for target in targets:
                mem[target] += pages * self._page_size
        return {"mem": mem}, {}


class SwapReader(Reader):
    """Swap devices from /proc/swaps, zram usage and swap-in/out traffic."""

    name = "swap"
    fields = FieldSpec(cumulative=frozenset({"swapin", "swapout"}))

    def __init__(
        self,
        proc_root: str | Path = "/proc",
        sys_root: str | Path = "/sys",
        page_size: int = PAGE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._proc = Path(proc_root)
        self._sys = Path(sys_root)
        self._page_size = page_size

    def _zram_used(self, device: str) -> int | None:
        # https://docs.kernel.org/admin-guide/blockdev/zram.html (mem_used_total)
        try:
            return int(_read(self._sys / "block" / device / "mm_stat").split()[2])
        except (OSError, ValueError, IndexError):
            return None

    def _collect(self) -> tuple[Entities, Labels]:
        entities: Entities = {}
        total_size = 0
        total_used = 0

        try:
            swaps = _read(self._proc / "swaps").splitlines()[1:]
        except OSError:
            swaps = []

        for line in swaps:
            parts = line.split()
            try:
                device = os.path.basename(parts[0])
                size = int(parts[2]) * 1024
                used = int(parts[3]) * 1024
            except (IndexError, ValueError):
                logger.debug("swaps: malformed line %r", line)
                continue
            fields: dict[str, Number] = {"size": size, "used": used}
            if device.startswith("zram"):
                zram = self._zram_used(device)
                if zram is not None:
                    fields["zram"] = zram
            entities[device] = fields
            total_size += size
            total_used += used

        total: dict[str, Number] = {"size": total_size, "used": total_used}
        try:
            vmstat = _parse_vmstat(_read(self._proc / "vmstat"))
        except OSError:
            vmstat = {}
        if "nr_swapcached" in vmstat:
            # Swap-cached pages are also counted in memory
            total["used"] = max(0, total_used - vmstat["nr_swapcached"] * self._page_size)
        if "pswpin" in vmstat and "pswpout" in vmstat:
            total["swapin"] = vmstat["pswpin"] * self._page_size
            total["swapout"] = vmstat["pswpout"] * self._page_size
        entities["total"] = total
        return entities, {}


PRESSURE_RESOURCES = ("cpu", "memory", "io")
PRESSURE_WINDOWS = ("avg10", "avg60", "avg300")


class PressureReader(Reader):
    """Pressure stall information from /proc/pressure/*."""

    name = "pressure"
    fields = FieldSpec(cumulative=frozenset({"some_total", "full_total"}))

    def __init__(
        self,
        proc_root: str | Path = "/proc",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._dir = Path(proc_root) / "pressure"

    @staticmethod
    def _parse(text: str) -> dict[str, Number]:
        fields: dict[str, Number] = {}
        for line in text.splitlines():
            parts = line.split()
            if not parts or parts[0] not in ("some", "full"):
                continue
            kind = parts[0]
            for token in parts[1:]:
                key, sep, value = token.partition("=")
                if not sep:
                    continue
                try:
                    if key == "total":
                        fields[f"{kind}_total"] = int(value)
                    elif key in PRESSURE_WINDOWS:
                        fields[f"{kind}_{key}"] = float(value)
                except ValueError:
                    logger.debug("pressure: malformed token %r", token)
        return fields

    def _collect(self) -> tuple[Entities, Labels]:
        entities: Entities = {}
        for resource in PRESSURE_RESOURCES:
            try:
                text = _read(self._dir / resource)
            except OSError:
                continue
            entities[resource] = self._parse(text)
        if not entities:
            raise SourceUnavailable(self.name, f"{self._dir} is not readable")
        return entities, {}


# ── CPU / network / block devices ──────────────────────────────────────────

CPU_REQUIRED = ("user", "nice", "system", "idle", "iowait")
CPU_OPTIONAL = ("irq", "softirq", "steal")


class CpuReader(Reader):
    """Per-core jiffies from /proc/stat."""

    name = "cpu"
    mandatory = True
    fields = FieldSpec(cumulative=frozenset(CPU_REQUIRED + CPU_OPTIONAL))

    def __init__(
        self,
        proc_root: str | Path = "/proc",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._path = Path(proc_root) / "stat"

    @staticmethod
    def _parse_core(parts: list[str]) -> tuple[int, dict[str, Number]]:
        # https://docs.kernel.org/filesystems/proc.html#miscellaneous-kernel-statistics-in-proc-stat
        try:
            core = int(parts[0][3:])
            names = CPU_REQUIRED + CPU_OPTIONAL
            values = [int(v) for v in parts[1 : 1 + len(names)]]
        except ValueError as e:
            raise ParseFailure(f"bad cpu line {' '.join(parts)!r}") from e
        if len(values) < len(CPU_REQUIRED):
            raise ParseFailure(f"short cpu line {' '.join(parts)!r}")
        return core, dict(zip(names, values))

    def _collect(self) -> tuple[Entities, Labels]:
        try:
            text = _read(self._path)
        except OSError as e:
            raise SourceUnavailable(self.name, str(e)) from e

        entities: Entities = {}
        for line in text.splitlines():
            parts = line.split()
            if not parts:
                continue
            if not parts[0].startswith("cpu"):
                break
            if parts[0] == "cpu":
                continue
            try:
                core, fields = self._parse_core(parts)
            except ParseFailure as e:
                logger.debug("cpu: %s", e)
                continue
            entities[core] = fields
        return entities, {}


def _excluded(name: str, prefixes: Sequence[str]) -> bool:
    return any(name.startswith(p) for p in prefixes)


class NetworkReader(Reader):
    """Per-interface byte counters from /proc/net/dev."""

    name = "network"
    fields = FieldSpec(cumulative=frozenset({"rx", "tx"}))

    def __init__(
        self,
        proc_root: str | Path = "/proc",
        exclude: Sequence[str] = ("br",),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._path = Path(proc_root) / "net" / "dev"
        self._exclude = tuple(exclude)

    def _collect(self) -> tuple[Entities, Labels]:
        try:
            lines = _read(self._path).splitlines()[2:]
        except OSError as e:
            raise SourceUnavailable(self.name, str(e)) from e

        entities: Entities = {}
        for line in lines:
            iface, sep, counters = line.partition(":")
            iface = iface.strip()
            if not sep or not iface or _excluded(iface, self._exclude):
                continue
            values = counters.split()
            try:
                # 8 receive columns precede the transmit columns
                entities[iface] = {"rx": int(values[0]), "tx": int(values[8])}
            except (IndexError, ValueError):
                logger.debug("network: malformed line %r", line)
        return entities, {}


class BlockDeviceReader(Reader):
    """Per-disk I/O counters from /proc/diskstats."""

    name = "blockdev"
    fields = FieldSpec(cumulative=frozenset({"read", "written", "weighted_ms"}))

    def __init__(
        self,
        proc_root: str | Path = "/proc",
        sys_root: str | Path = "/sys",
        exclude: Sequence[str] = ("dm-", "loop"),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._path = Path(proc_root) / "diskstats"
        self._block = Path(sys_root) / "block"
        self._exclude = tuple(exclude)

    def _whole_disks(self) -> set[str] | None:
        try:
            return set(os.listdir(self._block))
        except OSError:
            return None

    def _collect(self) -> tuple[Entities, Labels]:
        try:
            lines = _read(self._path).splitlines()
        except OSError as e:
            raise SourceUnavailable(self.name, str(e)) from e

        disks = self._whole_disks()
        entities: Entities = {}
        # https://www.kernel.org/doc/Documentation/iostats.txt
        for line in lines:
            parts = line.split()
            if len(parts) < 3:
                continue
            kname = parts[2]
            if _excluded(kname, self._exclude):
                continue
            if disks is not None:
                if kname not in disks:
                    continue
            elif kname.rstrip("0123456789").removesuffix("p") in entities:
                # No sysfs: partitions are listed after their disk
                continue
            try:
                entities[kname] = {
                    "read": int(parts[5]) * SECTOR_SIZE,
                    "written": int(parts[9]) * SECTOR_SIZE,
                    "weighted_ms": int(parts[13]),
                }
            except (IndexError, ValueError):
                logger.debug("blockdev: malformed line %r", line)
        return entities, {}


# ── Filesystems / sensors ──────────────────────────────────────────────────


class FilesystemReader(Reader):
    """Usage of mounted block-device filesystems.

    Each device is reported once, at its first mountpoint; further mounts
    of the same device (bind mounts, btrfs subvolumes) are skipped. Every
    filesystem reports its own statvfs figures, a filesystem mounted inside
    another one does not inherit anything from its parent.
    """

    name = "filesystem"

    def _collect(self) -> tuple[Entities, Labels]:
        entities: Entities = {}
        seen: set[str] = set()
        try:
            partitions = psutil.disk_partitions(all=False)
        except OSError as e:
            raise SourceUnavailable(self.name, str(e)) from e

        for part in partitions:
            if not part.device.startswith("/") or part.device in seen:
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError as e:
                logger.debug("filesystem: statvfs(%s) failed: %s", part.mountpoint, e)
                continue
            seen.add(part.device)
            entities[part.mountpoint] = {
                "size": usage.total,
                "used": usage.total - usage.free,
                "avail": usage.free,
            }
        return entities, {}


class HwmonReader(Reader):
    """Temperatures (and amdgpu power/VRAM) from /sys/class/hwmon.

    Field names carry their unit kind as a prefix: ``temp:<label>`` in
    degrees Celsius, ``power:<label>``/``power_cap:<label>`` in watts and
    ``pct:<label>`` in percent. NVIDIA GPUs are queried through nvidia-smi
    until the first failure.
    """

    name = "hwmon"

    def __init__(
        self,
        sys_root: str | Path = "/sys",
        nvidia: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._base = Path(sys_root) / "class" / "hwmon"
        self._nvidia_available: bool | None = None if nvidia else False

    @staticmethod
    def _read_int(path: Path) -> int | None:
        try:
            return int(_read(path).strip())
        except (OSError, ValueError):
            return None

    def _read_chip(self, path: Path) -> dict[str, Number]:
        values: dict[str, Number] = {}
        try:
            files = os.listdir(path)
        except OSError:
            return values

        inputs = []
        for fname in files:
            if fname.startswith("temp") and fname.endswith("_input"):
                index = fname[4:-6]
                if index.isdigit():
                    inputs.append(int(index))

        for y in sorted(inputs):
            millidegrees = self._read_int(path / f"temp{y}_input")
            if millidegrees is None:
                continue
            try:
                label = _read(path / f"temp{y}_label").strip() or f"Temp{y}"
            except OSError:
                label = f"Temp{y}"
            key = f"temp:{label}"
            if key in values:
                key = f"temp:{label}{y}"
            values[key] = millidegrees / 1000.0
        return values

    def _read_amdgpu(self, path: Path, values: dict[str, Number]) -> None:
        power = self._read_int(path / "power1_average")
        cap = self._read_int(path / "power1_cap")
        if power is not None and cap is not None:
            values["power:pwr"] = power / 1_000_000
            values["power_cap:pwr"] = cap / 1_000_000
        used = self._read_int(path / "device" / "mem_info_vram_used")
        total = self._read_int(path / "device" / "mem_info_vram_total")
        if used is not None and total is not None:
            values["vram_used"] = used
            values["vram_total"] = total

    def _read_nvidia(self) -> tuple[Entities, Labels] | None:
        """Query nvidia-smi. Returns *None* once it has been found unusable."""
        if self._nvidia_available is False:
            return None
        try:
            result = subprocess.run(
                [
                    "nvidia-smi",
                    "--query-gpu=index,temperature.gpu,memory.used,memory.total,"
                    "utilization.gpu,utilization.memory",
                    "--format=csv,noheader,nounits",
                ],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=3,
            )
        except (OSError, subprocess.TimeoutExpired):
            self._nvidia_available = False
            return None
        if result.returncode != 0:
            self._nvidia_available = False
            return None
        self._nvidia_available = True

        entities: Entities = {}
        labels: Labels = {}
        for line in result.stdout.strip().splitlines():
            parts = [p.strip() for p in line.split(",")]
            if len(parts) < 6:
                continue
            key = f"nvidia{parts[0]}"
            fields: dict[str, Number] = {}
            try:
                fields["temp:Tgpu"] = float(parts[1])
            except ValueError:
                pass  # reported as [N/A]
            try:
                fields["pct:Vram"] = 100.0 * float(parts[2]) / float(parts[3])
            except (ValueError, ZeroDivisionError):
                pass
            try:
                fields["pct:Load"] = max(float(parts[4]), float(parts[5]))
            except ValueError:
                pass
            entities[key] = fields
            labels[key] = {"name": key}
        return entities, labels

    def _collect(self) -> tuple[Entities, Labels]:
        entities: Entities = {}
        labels: Labels = {}

        try:
            monitors: list[str] | None = os.listdir(self._base)
        except OSError:
            monitors = None

        chips = sorted(
            (m for m in monitors or () if m.startswith("hwmon") and m[5:].isdigit()),
            key=lambda m: int(m[5:]),
        )
        for chip in chips:
            path = self._base / chip
            try:
                chip_name = _read(path / "name").strip() or chip
            except OSError:
                chip_name = chip
            values = self._read_chip(path)
            if chip_name == "amdgpu":
                self._read_amdgpu(path, values)
            entities[chip] = values
            labels[chip] = {"name": chip_name}

        gpus = self._read_nvidia()
        if gpus is not None:
            entities.update(gpus[0])
            labels.update(gpus[1])

        if monitors is None and gpus is None:
            raise SourceUnavailable(self.name, f"{self._base} is not readable")
        return entities, labels


# ── Cache layer (dm-cache via helper command) ──────────────────────────────

CACHE_COUNTERS = (
    "read_hits",
    "read_misses",
    "write_hits",
    "write_misses",
    "demotions",
    "promotions",
)


class CacheReader(Reader):
    """dm-cache device status reported by ``dmsetup status --target cache``.

    dmsetup needs root; the command is configurable so it can be prefixed
    with ``sudo -n``. A missing binary is remembered and never retried.
    """

    name = "cache"
    fields = FieldSpec(cumulative=frozenset(CACHE_COUNTERS))

    def __init__(
        self,
        command: Sequence[str] = ("dmsetup", "status", "--target", "cache"),
        timeout: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._command = list(command)
        self._timeout = timeout
        self._missing = False

    @staticmethod
    def _parse_line(line: str) -> tuple[str, dict[str, Number]] | None:
        # <name>: <start> <len> cache <metadata block size> <used>/<total>
        # <cache block size> <used>/<total> <read hits> <read misses>
        # <write hits> <write misses> <demotions> <promotions> <dirty> ...
        # (https://docs.kernel.org/admin-guide/device-mapper/cache.html)
        name, sep, status = line.partition(":")
        parts = status.split()
        if not sep or len(parts) < 3 or parts[2] != "cache":
            return None
        stats = parts[3:]
        try:
            meta_used, meta_total = stats[1].split("/")
            cache_used, cache_total = stats[3].split("/")
            fields: dict[str, Number] = {
                "meta_used": int(meta_used),
                "meta_total": int(meta_total),
                "cache_used": int(cache_used),
                "cache_total": int(cache_total),
                "dirty": int(stats[10]),
            }
            for i, counter in enumerate(CACHE_COUNTERS):
                fields[counter] = int(stats[4 + i])
        except (IndexError, ValueError) as e:
            raise ParseFailure(f"bad cache status {line!r}") from e
        return name.strip(), fields

    def _collect(self) -> tuple[Entities, Labels]:
        if self._missing:
            raise SourceUnavailable(self.name, f"{self._command[0]} not found")
        try:
            result = subprocess.run(
                self._command,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self._timeout,
            )
        except FileNotFoundError as e:
            self._missing = True
            raise SourceUnavailable(self.name, f"{self._command[0]} not found") from e
        except OSError as e:
            raise SourceUnavailable(self.name, str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise SourceUnavailable(self.name, f"timed out after {self._timeout}s") from e
        if result.returncode != 0:
            reason = result.stderr.strip() or f"exit status {result.returncode}"
            raise SourceUnavailable(self.name, reason)

        entities: Entities = {}
        for line in result.stdout.splitlines():
            try:
                parsed = self._parse_line(line)
            except ParseFailure as e:
                logger.debug("cache: %s", e)
                continue
            if parsed is not None:
                entities[parsed[0]] = parsed[1]
        return entities, {}


# ── Process table ──────────────────────────────────────────────────────────


def parse_task_stat(text: str) -> tuple[str, str, dict[str, Number]]:
    """Parse /proc/[pid]/stat into (comm, state, fields).

    The command name sits between parentheses and may itself contain
    spaces or parentheses, so it spans from the first '(' to the last ')'.
    See proc(5) for field positions.
    """
    start = text.find("(")
    end = text.rfind(")")
    if start < 0 or end < start:
        raise ParseFailure(f"no command name in {text[:40]!r}")
    comm = text[start + 1 : end]
    rest = text[end + 1 :].split()
    try:
        state = rest[0]
        fields: dict[str, Number] = {
            "cpu_ticks": int(rest[11]) + int(rest[12]),  # utime + stime
            "threads": int(rest[17]),
            "starttime": int(rest[19]),
            "rss": int(rest[21]) * PAGE_SIZE,
        }
    except (IndexError, ValueError) as e:
        raise ParseFailure(f"bad stat line for {comm!r}") from e
    return comm, state, fields


class TaskReader(Reader):
    """Per-process CPU time from /proc/[pid]/stat.

    ``cpu_ticks`` is in clock ticks (see ``CLK_TCK``). ``starttime`` is an
    identity field: a recycled PID is a new process.
    """

    name = "tasks"
    fields = FieldSpec(cumulative=frozenset({"cpu_ticks"}), identity=("starttime",))

    def __init__(
        self,
        proc_root: str | Path = "/proc",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self._proc = Path(proc_root)

    def _collect(self) -> tuple[Entities, Labels]:
        try:
            listing = os.listdir(self._proc)
        except OSError as e:
            raise SourceUnavailable(self.name, str(e)) from e

        entities: Entities = {}
        labels: Labels = {}
        for entry in listing:
            if not entry.isdigit():
                continue
            try:
                text = _read(self._proc / entry / "stat")
            except OSError:
                # Exited since the listing, or not ours to read
                continue
            try:
                comm, state, fields = parse_task_stat(text)
            except ParseFailure as e:
                logger.debug("tasks: %s", e)
                continue
            pid = int(entry)
            entities[pid] = fields
            labels[pid] = {"comm": comm, "state": state}
        return entities, labels

    def read_cmdline(self, pid: int) -> list[str]:
        """Arguments of a process, or an empty list (kernel threads, exited)."""
        try:
            raw = (self._proc / str(pid) / "cmdline").read_bytes()
        except OSError:
            return []
        args = raw.decode("utf-8", errors="replace").split("\0")
        while args and not args[-1]:
            args.pop()
        return args


# ── Assembly ───────────────────────────────────────────────────────────────


def build_readers(
    config: dict[str, Any],
    proc_root: str | Path = "/proc",
    sys_root: str | Path = "/sys",
) -> list[Reader]:
    """Instantiate every reader, in panel priority order."""
    exclude = config.get("exclude", {})
    return [
        MemoryReader(proc_root),
        SwapReader(proc_root, sys_root),
        PressureReader(proc_root),
        CpuReader(proc_root),
        HwmonReader(sys_root, nvidia=bool(config.get("nvidia", True))),
        NetworkReader(proc_root, exclude=exclude.get("interfaces", ("br",))),
        BlockDeviceReader(
            proc_root, sys_root, exclude=exclude.get("block_devices", ("dm-", "loop"))
        ),
        FilesystemReader(),
        CacheReader(
            config.get("cache_helper", ("dmsetup", "status", "--target", "cache")),
            timeout=float(config.get("cache_timeout", 2.0)),
        ),
        TaskReader(proc_root),
    ]
