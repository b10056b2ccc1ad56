"""Tests for hitome.scheduler: whole ticks against fixture /proc trees."""

from __future__ import annotations

import io
import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from hitome.deltas import compute_deltas, index_deltas
from hitome.errors import StartupFailure
from hitome.panels import cpu_shares
from hitome.readers import CacheReader, CpuReader, MemoryReader, NetworkReader, Reader
from hitome.render import CURSOR_HOME, CLEAR_SCREEN, SEPARATOR
from hitome.sample import RawSample
from hitome.scheduler import Scheduler, Settings

VMSTAT = "nr_free_pages 1000\nnr_active_anon 20\nnr_dirty 0\nnr_writeback 0\n"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _proc(tmp_path: Path, user: int, idle: int) -> Path:
    (tmp_path / "vmstat").write_text(VMSTAT)
    (tmp_path / "stat").write_text(
        f"cpu  {user} 0 0 {idle} 0\ncpu0 {user} 0 0 {idle} 0\nintr 0\n"
    )
    return tmp_path


def _settings(**kw: object) -> Settings:
    defaults: dict = {"interval": 1.0, "columns": 80, "rows": 24}
    defaults.update(kw)
    return Settings(**defaults)


# ── Ticks ──────────────────────────────────────────────────────────────────


class TestCpuRates:
    def test_one_second_of_half_busy_core(self, tmp_path: Path) -> None:
        clock = FakeClock()
        cpu = CpuReader(_proc(tmp_path, 100, 900), clock=clock)
        out = io.StringIO()
        scheduler = Scheduler([MemoryReader(tmp_path, clock=clock), cpu], _settings(), out)

        scheduler.prime()
        _proc(tmp_path, 150, 950)
        clock.now = 1.0
        scheduler.tick()

        store = scheduler.store
        rates = index_deltas(compute_deltas(store.previous("cpu"), store.current("cpu"), cpu.fields))
        assert rates[0]["user"] == pytest.approx(50.0)
        assert rates[0]["idle"] == pytest.approx(50.0)
        assert cpu_shares(rates[0])["busy"] == pytest.approx(0.5)

        text = out.getvalue()
        assert text.startswith(SEPARATOR)
        assert "MEMORY" in text
        assert "USER" in text

    def test_elapsed_time_not_nominal_interval(self, tmp_path: Path) -> None:
        clock = FakeClock()
        cpu = CpuReader(_proc(tmp_path, 100, 900), clock=clock)
        scheduler = Scheduler([cpu], _settings(interval=1.0), io.StringIO())
        scheduler.prime()
        _proc(tmp_path, 150, 950)
        clock.now = 2.5  # late tick
        scheduler.tick()
        store = scheduler.store
        rates = index_deltas(compute_deltas(store.previous("cpu"), store.current("cpu"), cpu.fields))
        assert rates[0]["user"] == pytest.approx(20.0)


class TestVanishingEntity:
    def test_removed_interface_has_no_panel(self, tmp_path: Path) -> None:
        net_dev = tmp_path / "net" / "dev"
        net_dev.parent.mkdir()
        header = "Inter-|\n face |\n"
        net_dev.write_text(header + "wlan0: 1000 0 0 0 0 0 0 0 0 0 0 0 0 0 0 0\n")
        clock = FakeClock()
        out = io.StringIO()
        scheduler = Scheduler([NetworkReader(tmp_path, clock=clock)], _settings(), out)
        scheduler.prime()

        net_dev.write_text(header)
        clock.now = 1.0
        scheduler.tick()
        assert "wlan0" not in out.getvalue()


class TestUnavailableSource:
    @patch("hitome.readers.subprocess.run", side_effect=FileNotFoundError)
    def test_missing_cache_helper(
        self, mock_run: MagicMock, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        clock = FakeClock()
        readers = [
            MemoryReader(_proc(tmp_path, 1, 1), clock=clock),
            CpuReader(tmp_path, clock=clock),
            CacheReader(clock=clock),
        ]
        out = io.StringIO()
        scheduler = Scheduler(readers, _settings(), out)
        scheduler.prime()
        for step in (1.0, 2.0):
            clock.now = step
            frame = scheduler.tick()
            assert frame.height > 0

        text = out.getvalue()
        assert "MEMORY" in text
        assert "RHIT%" not in text
        assert "cache" not in scheduler.store
        assert caplog.text.count("dmsetup not found") == 1
        assert mock_run.call_count == 1

    def test_mandatory_source_missing_at_startup(self, tmp_path: Path) -> None:
        scheduler = Scheduler([MemoryReader(tmp_path)], _settings(), io.StringIO())
        with pytest.raises(StartupFailure, match="memory"):
            scheduler.prime()

    def test_optional_source_missing_at_startup(self, tmp_path: Path) -> None:
        (tmp_path / "vmstat").write_text(VMSTAT)
        scheduler = Scheduler(
            [MemoryReader(tmp_path), NetworkReader(tmp_path)], _settings(), io.StringIO()
        )
        scheduler.prime()
        assert "network" not in scheduler.store
        assert "memory" in scheduler.store


class TestSampleOrder:
    def test_all_readers_read_before_rotation(self, tmp_path: Path) -> None:
        seen: list[RawSample | None] = []

        class Recorder(Reader):
            name = "recorder"

            def _collect(self) -> tuple[dict, dict]:
                seen.append(scheduler.store.current("memory"))
                return {}, {}

        scheduler = Scheduler(
            [MemoryReader(_proc(tmp_path, 1, 1)), Recorder()], _settings(), io.StringIO()
        )
        scheduler.prime()
        first = scheduler.store.current("memory")
        scheduler.tick()
        assert seen == [None, first]
        assert scheduler.store.previous("memory") is first


# ── Output ─────────────────────────────────────────────────────────────────


class TestOutput:
    def test_smart_mode_clears_only_first_frame(self, tmp_path: Path) -> None:
        out = io.StringIO()
        scheduler = Scheduler([MemoryReader(_proc(tmp_path, 1, 1))], _settings(smart=True), out)
        scheduler.prime()
        first = scheduler.tick()
        second = scheduler.tick()
        assert first.text.startswith(CURSOR_HOME + CLEAR_SCREEN)
        assert second.text.startswith(CURSOR_HOME)
        assert CLEAR_SCREEN not in second.text
        assert out.getvalue() == first.text + second.text

    def test_tiny_terminal(self, tmp_path: Path) -> None:
        out = io.StringIO()
        settings = _settings(columns=1, rows=1)
        scheduler = Scheduler([MemoryReader(_proc(tmp_path, 1, 1))], settings, out)
        scheduler.prime()
        frame = scheduler.tick()
        assert frame.height == 1
        assert frame.text == SEPARATOR + "\nt\n"

    @patch("hitome.scheduler.shutil.get_terminal_size")
    def test_geometry_read_every_tick(self, mock_size: MagicMock, tmp_path: Path) -> None:
        mock_size.return_value = os.terminal_size((100, 30))
        scheduler = Scheduler(
            [MemoryReader(_proc(tmp_path, 1, 1))], _settings(columns=None, rows=None), io.StringIO()
        )
        scheduler.prime()
        scheduler.tick()
        scheduler.tick()
        assert mock_size.call_count == 2
        assert scheduler.terminal_size() == (100, 30)

    def test_fixed_geometry(self) -> None:
        scheduler = Scheduler([], _settings(columns=120, rows=40), io.StringIO())
        assert scheduler.terminal_size() == (120, 40)


class TestRun:
    def test_stop_before_start(self) -> None:
        out = io.StringIO()
        scheduler = Scheduler([], _settings(), out)
        scheduler.stop.set()
        scheduler.run()
        assert out.getvalue() == ""

    def test_stop_cuts_wait_short(self, tmp_path: Path) -> None:
        class StopAfterFrame(io.StringIO):
            def write(self, s: str) -> int:
                scheduler.stop.set()
                return super().write(s)

        out = StopAfterFrame()
        scheduler = Scheduler(
            [MemoryReader(_proc(tmp_path, 1, 1))], _settings(interval=3600.0), out
        )
        scheduler.prime()
        scheduler.run()
        assert out.getvalue().count(SEPARATOR) == 1

    def test_wait_reports_stop(self) -> None:
        scheduler = Scheduler([], _settings(), io.StringIO())
        assert scheduler.wait(-5) is False
        scheduler.stop.set()
        assert scheduler.wait(10) is True
