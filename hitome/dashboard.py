"""hitome: a non-interactive, resource-light terminal dashboard.

Samples memory, swap, pressure, per-core CPU, network, block device,
filesystem, sensor, dm-cache and process counters from /proc and /sys and
redraws them as a grid of panels sized to the terminal.

Usage:
    hitome
    hitome --refresh-interval 1000 --column-width 9
    hitome --colour false --columns 120 --rows 40 > log.txt
    hitome --dump-config > ~/.config/hitome/config.toml
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from types import FrameType
from typing import Any, Mapping

from hitome.config import MIN_COL_WIDTH, dump_default_config, load_config
from hitome.errors import StartupFailure
from hitome.readers import build_readers
from hitome.scheduler import Scheduler, Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# ── Argument types ─────────────────────────────────────────────────────────


def _bool_arg(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("true", "yes", "on", "1"):
        return True
    if lowered in ("false", "no", "off", "0"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {n}")
    return n


def _column_width(value: str) -> int:
    n = _positive_int(value)
    if n < MIN_COL_WIDTH:
        raise argparse.ArgumentTypeError(f"must be at least {MIN_COL_WIDTH}, got {n}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hitome",
        description="Non-interactive terminal dashboard for Linux kernel counters.",
    )
    parser.add_argument(
        "-c",
        "--colour",
        type=_bool_arg,
        default=None,
        metavar="true|false",
        help="Redraw in place with ANSI colours (default: guess from $TERM)",
    )
    parser.add_argument(
        "--columns",
        type=_positive_int,
        default=None,
        metavar="N",
        help="Terminal width (default: detect on every refresh)",
    )
    parser.add_argument(
        "--rows",
        type=_positive_int,
        default=None,
        metavar="N",
        help="Terminal height (default: detect on every refresh)",
    )
    parser.add_argument(
        "-w",
        "--column-width",
        type=_column_width,
        default=None,
        metavar="N",
        help=f"Width of a grid column, at least {MIN_COL_WIDTH} (default: 8)",
    )
    parser.add_argument(
        "-i",
        "--refresh-interval",
        type=_positive_int,
        default=None,
        metavar="MS",
        help="Milliseconds between refreshes (default: 2000)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to TOML config file",
    )
    parser.add_argument(
        "--dump-config",
        action="store_true",
        help="Print the default configuration as TOML and exit",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        metavar="PATH",
        help="Write log messages to this file instead of stderr",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log debug messages",
    )
    return parser


# ── Setup helpers ──────────────────────────────────────────────────────────


def guess_colour(environ: Mapping[str, str] = os.environ) -> bool:
    term = environ.get("TERM", "")
    return bool(term) and term != "dumb"


def setup_logging(log_file: str | None, verbose: bool = False) -> None:
    """Send hitome's log records to stderr, or to ``log_file`` if given."""
    handler: logging.Handler
    if log_file:
        try:
            handler = logging.FileHandler(log_file)
        except OSError as e:
            print(f"hitome: cannot open log file {log_file}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    package_logger = logging.getLogger("hitome")
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    package_logger.addHandler(handler)


def make_settings(args: argparse.Namespace, config: dict[str, Any]) -> Settings:
    """Combine config values with command-line overrides."""
    interval_ms = args.refresh_interval or config["refresh_interval"]
    column_width = args.column_width or config["column_width"]
    if not isinstance(column_width, int) or column_width < MIN_COL_WIDTH:
        print(
            f"hitome: column_width must be an integer >= {MIN_COL_WIDTH}, got {column_width!r}",
            file=sys.stderr,
        )
        raise SystemExit(1)
    if not isinstance(interval_ms, (int, float)) or interval_ms <= 0:
        print(f"hitome: refresh_interval must be positive, got {interval_ms!r}", file=sys.stderr)
        raise SystemExit(1)

    return Settings(
        interval=interval_ms / 1000.0,
        column_width=column_width,
        smart=guess_colour() if args.colour is None else args.colour,
        columns=args.columns,
        rows=args.rows,
        config=config,
    )


# ── CLI entry point ────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.dump_config:
        print(dump_default_config(), end="")
        return

    setup_logging(args.log_file, args.verbose)
    config = load_config(args.config)
    settings = make_settings(args, config)
    scheduler = Scheduler(build_readers(config), settings)

    def _request_stop(signum: int, frame: FrameType | None) -> None:
        logger.debug("received signal %d, stopping", signum)
        scheduler.stop.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    try:
        scheduler.prime()
    except StartupFailure as e:
        print(f"hitome: {e}", file=sys.stderr)
        raise SystemExit(1) from e

    print("hitome will now wait a while to collect statistics...", flush=True)
    try:
        if not scheduler.wait(settings.interval):
            scheduler.run()
    except KeyboardInterrupt:
        pass
    if settings.smart:
        print()


if __name__ == "__main__":
    main()
