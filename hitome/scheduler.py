"""Fixed-interval sampling loop: sample, rotate, derive, lay out, draw.

Everything happens on one thread in a strict sequence per tick; the only
place the loop blocks is the wait at the end of a tick, which a stop
request cuts short.
"""

from __future__ import annotations

import logging
import shutil
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence, TextIO

from hitome.config import DEFAULT_CONFIG
from hitome.deltas import SnapshotStore, compute_deltas, index_deltas
from hitome.errors import SourceUnavailable, StartupFailure
from hitome.layout import plan
from hitome.panels import PanelContext, PanelModel, build_panel
from hitome.readers import Reader, TaskReader
from hitome.render import Frame, render
from hitome.sample import RawSample

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Effective runtime settings after config file and CLI flags."""

    interval: float = 2.0  # seconds
    column_width: int = 8
    smart: bool = False
    columns: int | None = None  # fixed terminal size, None = ask every tick
    rows: int | None = None
    config: dict[str, Any] = field(default_factory=lambda: DEFAULT_CONFIG)


class Scheduler:
    def __init__(
        self,
        readers: Sequence[Reader],
        settings: Settings,
        out: TextIO = sys.stdout,
        store: SnapshotStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        stop: threading.Event | None = None,
    ) -> None:
        self._readers = list(readers)
        self._settings = settings
        self._out = out
        self._store = store if store is not None else SnapshotStore()
        self._clock = clock
        self.stop = stop if stop is not None else threading.Event()
        self._warned: set[str] = set()
        self._previous_height = 0
        self._cmdline: Callable[[int], list[str]] = lambda pid: []
        for reader in self._readers:
            if isinstance(reader, TaskReader):
                self._cmdline = reader.read_cmdline

    @property
    def store(self) -> SnapshotStore:
        return self._store

    # ── Sampling ──────────────────────────────────────────────────────

    def _unavailable(self, reader: Reader, error: SourceUnavailable) -> None:
        if reader.name not in self._warned:
            logger.warning("%s", error)
            self._warned.add(reader.name)
        self._store.discard(reader.name)

    def _sample_all(self, startup: bool = False) -> None:
        samples: list[RawSample] = []
        for reader in self._readers:
            try:
                samples.append(reader.sample())
            except SourceUnavailable as e:
                if startup and reader.mandatory:
                    raise StartupFailure(str(e)) from e
                self._unavailable(reader, e)
        # Rotate only once every reader has been read
        for sample in samples:
            self._store.rotate(sample)

    def prime(self) -> None:
        """Take the first sample of every reader.

        Raises:
            StartupFailure: If a mandatory source cannot be read.
        """
        self._sample_all(startup=True)

    # ── Frame building ────────────────────────────────────────────────

    def terminal_size(self) -> tuple[int, int]:
        """(columns, rows), re-read every call unless fixed."""
        columns, rows = self._settings.columns, self._settings.rows
        if columns is None or rows is None:
            size = shutil.get_terminal_size()
            columns = size.columns if columns is None else columns
            rows = size.lines if rows is None else rows
        return columns, rows

    def build_panels(self, max_rows: int) -> list[PanelModel]:
        ctx = PanelContext(
            column_width=self._settings.column_width,
            config=self._settings.config,
            max_rows=max_rows,
            cmdline=self._cmdline,
        )
        panels: list[PanelModel] = []
        for reader in self._readers:
            current = self._store.current(reader.name)
            if current is None:
                continue
            records = compute_deltas(self._store.previous(reader.name), current, reader.fields)
            panel = build_panel(reader.name, index_deltas(records), current, ctx)
            if panel is not None:
                panels.append(panel)
        return panels

    def tick(self) -> Frame:
        """Run one full cycle and write its frame."""
        self._sample_all()
        columns, rows = self.terminal_size()
        layout = plan(self.build_panels(rows), columns, rows, self._settings.column_width)
        frame = render(layout, self._settings.smart, self._previous_height)
        self._out.write(frame.text)
        self._out.flush()
        self._previous_height = frame.height
        return frame

    # ── Loop ──────────────────────────────────────────────────────────

    def wait(self, seconds: float) -> bool:
        """Sleep unless stopped; returns True when a stop was requested."""
        return self.stop.wait(max(0.0, seconds))

    def run(self) -> None:
        while not self.stop.is_set():
            start = self._clock()
            self.tick()
            self.wait(start + self._settings.interval - self._clock())
