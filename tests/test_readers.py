"""Tests for hitome.readers, against fixture /proc and /sys trees."""

from __future__ import annotations

import errno
import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from hitome.config import DEFAULT_CONFIG
from hitome.errors import ParseFailure, SourceUnavailable
from hitome.readers import (
    BlockDeviceReader,
    CacheReader,
    CpuReader,
    FilesystemReader,
    HwmonReader,
    MemoryReader,
    NetworkReader,
    PressureReader,
    SwapReader,
    TaskReader,
    build_readers,
    parse_task_stat,
)

PAGE = 4096


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def _clock() -> float:
    return 123.0


# ── Memory / swap / pressure ───────────────────────────────────────────────

VMSTAT = """\
nr_free_pages 1000
nr_inactive_anon 10
nr_active_anon 20
nr_inactive_file 30
nr_active_file 40
nr_slab_reclaimable 5
nr_slab_unreclaimable 6
nr_swapcached 2
nr_dirty 7
nr_writeback 1
nr_dirty_threshold 500
nr_dirty_background_threshold 250
pswpin 100
pswpout 300
garbage
"""


class TestMemoryReader:
    def test_aggregates_vmstat(self, tmp_path: Path) -> None:
        _write(tmp_path / "vmstat", VMSTAT)
        sample = MemoryReader(tmp_path, page_size=PAGE, clock=_clock).sample()
        mem = sample.entities["mem"]
        assert sample.reader == "memory"
        assert sample.timestamp == 123.0
        assert mem["active"] == (20 + 40) * PAGE
        assert mem["inactive"] == (10 + 30) * PAGE
        assert mem["cached"] == (40 + 30 + 5 + 6 + 2) * PAGE
        assert mem["free"] == 1000 * PAGE
        assert mem["dirty_threshold"] == 500 * PAGE

    def test_missing_vmstat_is_unavailable(self, tmp_path: Path) -> None:
        with pytest.raises(SourceUnavailable):
            MemoryReader(tmp_path).sample()

    def test_is_mandatory(self) -> None:
        assert MemoryReader.mandatory is True


class TestSwapReader:
    def test_devices_and_total(self, tmp_path: Path) -> None:
        proc, sys = tmp_path / "proc", tmp_path / "sys"
        _write(
            proc / "swaps",
            "Filename\tType\tSize\tUsed\tPriority\n"
            "/dev/zram0  partition  8388604  1024  100\n"
            "/swapfile   file       1048576  0     -2\n",
        )
        _write(proc / "vmstat", VMSTAT)
        _write(sys / "block" / "zram0" / "mm_stat", "4096 2048 65536 0 0 0 0 0\n")
        sample = SwapReader(proc, sys, page_size=PAGE).sample()

        assert sample.entities["zram0"]["size"] == 8388604 * 1024
        assert sample.entities["zram0"]["zram"] == 65536
        assert "zram" not in sample.entities["swapfile"]
        total = sample.entities["total"]
        assert total["size"] == (8388604 + 1048576) * 1024
        assert total["used"] == 1024 * 1024 - 2 * PAGE
        assert total["swapin"] == 100 * PAGE
        assert total["swapout"] == 300 * PAGE

    def test_no_swap_still_reports_total(self, tmp_path: Path) -> None:
        _write(tmp_path / "swaps", "Filename\tType\tSize\tUsed\tPriority\n")
        sample = SwapReader(tmp_path, tmp_path).sample()
        assert dict(sample.entities["total"]) == {"size": 0, "used": 0}

    def test_cumulative_fields(self) -> None:
        assert SwapReader.fields.is_cumulative("swapin")
        assert not SwapReader.fields.is_cumulative("used")


class TestPressureReader:
    def test_parses_some_and_full(self, tmp_path: Path) -> None:
        _write(
            tmp_path / "pressure" / "io",
            "some avg10=1.50 avg60=0.75 avg300=0.10 total=123456\n"
            "full avg10=0.50 avg60=0.25 avg300=0.00 total=6543\n",
        )
        _write(
            tmp_path / "pressure" / "cpu",
            "some avg10=0.00 avg60=0.00 avg300=0.00 total=99\n",
        )
        sample = PressureReader(tmp_path).sample()
        io = sample.entities["io"]
        assert io["some_avg10"] == pytest.approx(1.5)
        assert io["full_total"] == 6543
        assert sample.entities["cpu"]["some_total"] == 99
        assert "memory" not in sample.entities

    def test_no_psi_support(self, tmp_path: Path) -> None:
        with pytest.raises(SourceUnavailable):
            PressureReader(tmp_path).sample()


# ── CPU / network / block devices ──────────────────────────────────────────


class TestCpuReader:
    def test_per_core_jiffies(self, tmp_path: Path) -> None:
        _write(
            tmp_path / "stat",
            "cpu  300 0 100 1800 10 0 0 0 0 0\n"
            "cpu0 100 0 50 900 5 1 2 3 0 0\n"
            "cpu1 200 0 50 900 5\n"
            "intr 12345 0 0\n"
            "cpu9 1 1 1 1 1\n",
        )
        sample = CpuReader(tmp_path).sample()
        assert set(sample.entities) == {0, 1}
        assert sample.entities[0]["steal"] == 3
        assert "steal" not in sample.entities[1]
        assert sample.entities[1]["user"] == 200

    def test_short_core_line_dropped(self, tmp_path: Path) -> None:
        _write(tmp_path / "stat", "cpu 1 2 3 4 5\ncpu0 1 2 3\ncpu1 1 2 3 4 5\n")
        sample = CpuReader(tmp_path).sample()
        assert list(sample.entities) == [1]

    def test_parse_core_rejects_garbage(self) -> None:
        with pytest.raises(ParseFailure):
            CpuReader._parse_core(["cpuX", "1", "2", "3", "4", "5"])


NET_DEV = """\
Inter-|   Receive                                                |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
    lo:  5000      50    0    0    0     0          0         0     5000      50    0    0    0     0       0          0
  eth0:1000000   900    0    0    0     0          0         0   200000     800    0    0    0     0       0          0
br-1a2b:   77       1    0    0    0     0          0         0       88       1    0    0    0     0       0          0
 wlan0: broken
"""


class TestNetworkReader:
    def test_parses_interfaces(self, tmp_path: Path) -> None:
        _write(tmp_path / "net" / "dev", NET_DEV)
        sample = NetworkReader(tmp_path).sample()
        assert dict(sample.entities["eth0"]) == {"rx": 1000000, "tx": 200000}
        assert sample.entities["lo"]["tx"] == 5000

    def test_excludes_bridges_and_malformed(self, tmp_path: Path) -> None:
        _write(tmp_path / "net" / "dev", NET_DEV)
        sample = NetworkReader(tmp_path).sample()
        assert "br-1a2b" not in sample.entities
        assert "wlan0" not in sample.entities

    def test_custom_exclude(self, tmp_path: Path) -> None:
        _write(tmp_path / "net" / "dev", NET_DEV)
        sample = NetworkReader(tmp_path, exclude=("lo",)).sample()
        assert "lo" not in sample.entities
        assert "br-1a2b" in sample.entities


DISKSTATS = """\
   7       0 loop0 10 0 20 0 0 0 0 0 0 0 0 0 0
 259       0 nvme0n1 100 0 2000 50 40 0 800 30 0 60 80 0 0 0 0
 259       1 nvme0n1p1 90 0 1800 45 40 0 800 30 0 55 75 0 0 0 0
 253       0 dm-0 5 0 10 0 0 0 0 0 0 0 0 0 0 0 0
   8       0 sda 10 0 20 5 4 0 8 3 0 6 8
"""


class TestBlockDeviceReader:
    def test_whole_disks_from_sysfs(self, tmp_path: Path) -> None:
        proc, sys = tmp_path / "proc", tmp_path / "sys"
        _write(proc / "diskstats", DISKSTATS)
        for name in ("loop0", "nvme0n1", "dm-0", "sda"):
            (sys / "block" / name).mkdir(parents=True)
        sample = BlockDeviceReader(proc, sys).sample()

        assert set(sample.entities) == {"nvme0n1", "sda"}
        nvme = sample.entities["nvme0n1"]
        assert nvme["read"] == 2000 * 512
        assert nvme["written"] == 800 * 512
        assert nvme["weighted_ms"] == 80

    def test_partition_heuristic_without_sysfs(self, tmp_path: Path) -> None:
        _write(tmp_path / "diskstats", DISKSTATS)
        sample = BlockDeviceReader(tmp_path, tmp_path / "nosys").sample()
        assert "nvme0n1" in sample.entities
        assert "nvme0n1p1" not in sample.entities

    def test_missing_diskstats(self, tmp_path: Path) -> None:
        with pytest.raises(SourceUnavailable):
            BlockDeviceReader(tmp_path, tmp_path).sample()


# ── Filesystems / sensors ──────────────────────────────────────────────────


def _partition(device: str, mountpoint: str) -> MagicMock:
    return MagicMock(device=device, mountpoint=mountpoint)


class TestFilesystemReader:
    @patch("hitome.readers.psutil.disk_usage")
    @patch("hitome.readers.psutil.disk_partitions")
    def test_first_mount_per_device(self, mock_parts: MagicMock, mock_usage: MagicMock) -> None:
        mock_parts.return_value = [
            _partition("/dev/nvme0n1p2", "/"),
            _partition("/dev/nvme0n1p2", "/home"),
            _partition("tmpfs", "/run"),
            _partition("/dev/sda1", "/data"),
        ]
        mock_usage.return_value = MagicMock(total=1000, used=600, free=300)
        sample = FilesystemReader().sample()

        assert set(sample.entities) == {"/", "/data"}
        assert dict(sample.entities["/"]) == {"size": 1000, "used": 700, "avail": 300}

    @patch("hitome.readers.psutil.disk_usage")
    @patch("hitome.readers.psutil.disk_partitions")
    def test_unreadable_mount_skipped(self, mock_parts: MagicMock, mock_usage: MagicMock) -> None:
        mock_parts.return_value = [_partition("/dev/sdb1", "/mnt/gone"), _partition("/dev/sdb1", "/mnt/b")]
        mock_usage.side_effect = [PermissionError("denied"), MagicMock(total=10, used=1, free=9)]
        sample = FilesystemReader().sample()
        assert list(sample.entities) == ["/mnt/b"]


def _hwmon(sys: Path, chip: str, name: str, files: dict[str, str]) -> None:
    base = sys / "class" / "hwmon" / chip
    _write(base / "name", name + "\n")
    for fname, content in files.items():
        _write(base / fname, content)


class TestHwmonReader:
    def test_temperatures_with_labels(self, tmp_path: Path) -> None:
        _hwmon(
            tmp_path,
            "hwmon2",
            "k10temp",
            {"temp1_input": "45500\n", "temp1_label": "Tctl\n", "temp3_input": "39000\n"},
        )
        sample = HwmonReader(tmp_path, nvidia=False).sample()
        assert sample.entities["hwmon2"]["temp:Tctl"] == pytest.approx(45.5)
        assert sample.entities["hwmon2"]["temp:Temp3"] == pytest.approx(39.0)
        assert sample.label("hwmon2", "name") == "k10temp"

    def test_amdgpu_power_and_vram(self, tmp_path: Path) -> None:
        _hwmon(
            tmp_path,
            "hwmon0",
            "amdgpu",
            {
                "temp1_input": "60000",
                "temp1_label": "edge",
                "power1_average": "35000000",
                "power1_cap": "120000000",
                "device/mem_info_vram_used": "1073741824",
                "device/mem_info_vram_total": "4294967296",
            },
        )
        values = HwmonReader(tmp_path, nvidia=False).sample().entities["hwmon0"]
        assert values["power:pwr"] == pytest.approx(35.0)
        assert values["power_cap:pwr"] == pytest.approx(120.0)
        assert values["vram_total"] == 4294967296

    def test_no_hwmon_and_no_nvidia(self, tmp_path: Path) -> None:
        with pytest.raises(SourceUnavailable):
            HwmonReader(tmp_path, nvidia=False).sample()

    @patch("hitome.readers.subprocess.run")
    def test_nvidia_smi(self, mock_run: MagicMock, tmp_path: Path) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="0, 66, 2048, 8192, 30, 75\n")
        sample = HwmonReader(tmp_path).sample()
        gpu = sample.entities["nvidia0"]
        assert gpu["temp:Tgpu"] == pytest.approx(66.0)
        assert gpu["pct:Vram"] == pytest.approx(25.0)
        assert gpu["pct:Load"] == pytest.approx(75.0)
        assert mock_run.call_args.kwargs["errors"] == "replace"

    @patch("hitome.readers.subprocess.run", side_effect=FileNotFoundError)
    def test_nvidia_smi_missing_is_cached(self, mock_run: MagicMock, tmp_path: Path) -> None:
        _hwmon(tmp_path, "hwmon0", "acpitz", {"temp1_input": "30000"})
        reader = HwmonReader(tmp_path)
        reader.sample()
        reader.sample()
        assert mock_run.call_count == 1

    @patch(
        "hitome.readers.subprocess.run",
        side_effect=OSError(errno.ENOEXEC, "Exec format error"),
    )
    def test_nvidia_smi_unrunnable(self, mock_run: MagicMock, tmp_path: Path) -> None:
        _hwmon(tmp_path, "hwmon0", "acpitz", {"temp1_input": "30000"})
        sample = HwmonReader(tmp_path).sample()
        assert list(sample.entities) == ["hwmon0"]


# ── Cache layer ────────────────────────────────────────────────────────────

DMSETUP_LINE = (
    "vg-cached: 0 209715200 cache 8 1024/32768 128 4000/16000 "
    "900 100 300 200 7 11 42 1 writeback 2 migration_threshold 2048 smq 0 rw -\n"
)


class TestCacheReader:
    @patch("hitome.readers.subprocess.run")
    def test_parses_status(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout=DMSETUP_LINE, stderr="")
        sample = CacheReader().sample()
        dev = sample.entities["vg-cached"]
        assert dev["meta_used"] == 1024
        assert dev["cache_used"] == 4000
        assert dev["cache_total"] == 16000
        assert dev["read_hits"] == 900
        assert dev["write_misses"] == 200
        assert dev["demotions"] == 7
        assert dev["promotions"] == 11
        assert dev["dirty"] == 42

    @patch("hitome.readers.subprocess.run")
    def test_no_devices(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="No devices found\n", stderr="")
        assert len(CacheReader().sample()) == 0

    @patch("hitome.readers.subprocess.run")
    def test_failed_device_line_skipped(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(
            returncode=0, stdout="broken: 0 100 cache Fail\n" + DMSETUP_LINE, stderr=""
        )
        assert list(CacheReader().sample().entities) == ["vg-cached"]

    @patch("hitome.readers.subprocess.run")
    def test_permission_denied(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(
            returncode=1, stdout="", stderr="/dev/mapper/control: open failed: Permission denied\n"
        )
        with pytest.raises(SourceUnavailable, match="Permission denied"):
            CacheReader().sample()

    @patch("hitome.readers.subprocess.run", side_effect=FileNotFoundError)
    def test_missing_helper_not_retried(self, mock_run: MagicMock) -> None:
        reader = CacheReader()
        for _ in range(3):
            with pytest.raises(SourceUnavailable):
                reader.sample()
        assert mock_run.call_count == 1

    @patch(
        "hitome.readers.subprocess.run",
        side_effect=subprocess.TimeoutExpired(cmd="dmsetup", timeout=2),
    )
    def test_timeout(self, mock_run: MagicMock) -> None:
        with pytest.raises(SourceUnavailable, match="timed out"):
            CacheReader().sample()

    @patch(
        "hitome.readers.subprocess.run",
        side_effect=OSError(errno.ENOEXEC, "Exec format error"),
    )
    def test_unrunnable_helper_retried(self, mock_run: MagicMock) -> None:
        reader = CacheReader()
        for _ in range(2):
            with pytest.raises(SourceUnavailable, match="Exec format error"):
                reader.sample()
        assert mock_run.call_count == 2

    @pytest.mark.skipif(shutil.which("printf") is None, reason="needs printf")
    def test_undecodable_device_name(self) -> None:
        line = r"caf\351: 0 100 cache 8 1/10 64 2/20 1 2 3 4 5 6 0\n"
        sample = CacheReader(command=["printf", line]).sample()
        assert list(sample.entities) == ["caf\ufffd"]
        assert sample.entities["caf\ufffd"]["cache_total"] == 20

    @patch("hitome.readers.subprocess.run")
    def test_configured_command(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        CacheReader(["sudo", "-n", "dmsetup", "status"], timeout=5).sample()
        args, kwargs = mock_run.call_args
        assert args[0] == ["sudo", "-n", "dmsetup", "status"]
        assert kwargs["timeout"] == 5


# ── Process table ──────────────────────────────────────────────────────────


def _stat_line(pid: int, comm: str, state: str = "S", utime: int = 0, stime: int = 0,
               starttime: int = 1000) -> str:
    rest = [state, "1", str(pid), str(pid), "0", "-1", "4194560", "100", "0", "0", "0",
            str(utime), str(stime), "0", "0", "20", "0", "3", "0", str(starttime),
            "1000000", "250"] + ["0"] * 30
    return f"{pid} ({comm}) " + " ".join(rest) + "\n"


class TestParseTaskStat:
    def test_fields(self) -> None:
        comm, state, fields = parse_task_stat(_stat_line(42, "bash", "R", 70, 30, 555))
        assert comm == "bash"
        assert state == "R"
        assert fields["cpu_ticks"] == 100
        assert fields["starttime"] == 555
        assert fields["threads"] == 3

    def test_comm_with_spaces_and_parens(self) -> None:
        comm, state, _ = parse_task_stat(_stat_line(7, "Web Content (x)", "S"))
        assert comm == "Web Content (x)"
        assert state == "S"

    def test_truncated_line(self) -> None:
        with pytest.raises(ParseFailure):
            parse_task_stat("42 (bash) S 1 2")

    def test_no_parentheses(self) -> None:
        with pytest.raises(ParseFailure):
            parse_task_stat("42 bash S")


class TestTaskReader:
    def test_reads_processes(self, tmp_path: Path) -> None:
        _write(tmp_path / "1" / "stat", _stat_line(1, "systemd", utime=10, stime=5))
        _write(tmp_path / "99" / "stat", _stat_line(99, "sleep"))
        _write(tmp_path / "100" / "stat", "100 (bad) S\n")
        (tmp_path / "self").mkdir()
        (tmp_path / "200").mkdir()  # exited between listing and read
        _write(tmp_path / "meminfo", "")

        sample = TaskReader(tmp_path).sample()
        assert set(sample.entities) == {1, 99}
        assert sample.entities[1]["cpu_ticks"] == 15
        assert sample.label(1, "comm") == "systemd"
        assert sample.label(99, "state") == "S"

    def test_identity_is_starttime(self) -> None:
        assert TaskReader.fields.identity == ("starttime",)
        assert TaskReader.fields.is_cumulative("cpu_ticks")

    def test_read_cmdline(self, tmp_path: Path) -> None:
        (tmp_path / "5").mkdir()
        (tmp_path / "5" / "cmdline").write_bytes(b"/usr/bin/python3\0-m\0http.server\0")
        reader = TaskReader(tmp_path)
        assert reader.read_cmdline(5) == ["/usr/bin/python3", "-m", "http.server"]
        assert reader.read_cmdline(6) == []


class TestBuildReaders:
    def test_order_and_config(self) -> None:
        readers = build_readers(DEFAULT_CONFIG)
        assert [r.name for r in readers] == [
            "memory",
            "swap",
            "pressure",
            "cpu",
            "hwmon",
            "network",
            "blockdev",
            "filesystem",
            "cache",
            "tasks",
        ]
        assert [r.name for r in readers if r.mandatory] == ["memory", "cpu"]
