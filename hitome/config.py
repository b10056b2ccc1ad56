"""Configuration loading for hitome.

Loads defaults from an optional TOML file; command-line flags override them.
Search order: explicit --config path → ~/.config/hitome/config.toml → defaults only.
"""

from __future__ import annotations

import logging
import sys
import tomllib
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MIN_COL_WIDTH = 6

DEFAULT_CONFIG: dict[str, Any] = {
    "refresh_interval": 2000,
    "column_width": 8,
    "nvidia": True,
    "cache_helper": ["dmsetup", "status", "--target", "cache"],
    "cache_timeout": 2.0,
    "exclude": {
        "interfaces": ["br"],
        "block_devices": ["dm-", "loop"],
    },
    "thresholds": {
        "pressure": {"med": 1.0, "high": 5.0, "crit": 10.0},
        "disk_busy": {"med": 50.0, "high": 80.0, "crit": 200.0},
        "fs_used": {"med": 80.0, "high": 90.0, "crit": 95.0},
        "temperature": {"med": 50.0, "high": 70.0, "crit": 90.0},
        "gpu_percent": {"med": 50.0, "high": 80.0, "crit": 90.0},
        "task_cpu": {"med": 40.0, "high": 60.0, "crit": 80.0},
        "swap_used": {"med": 25.0, "high": 50.0, "crit": 80.0},
        "cache_used": {"med": 90.0, "high": 95.0, "crit": 99.0},
    },
}

_DEFAULT_PATH = Path.home() / ".config" / "hitome" / "config.toml"


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/hitome/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"hitome: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"hitome: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _deep_merge(DEFAULT_CONFIG, user_config)

    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _deep_merge(DEFAULT_CONFIG, user_config)
        except tomllib.TOMLDecodeError:
            logger.warning("ignoring invalid TOML in %s", _DEFAULT_PATH)

    return dict(DEFAULT_CONFIG)


def threshold(config: dict[str, Any], metric: str) -> tuple[float, float, float]:
    """Return the (med, high, crit) levels configured for a metric."""
    levels = config.get("thresholds", {}).get(metric) or DEFAULT_CONFIG["thresholds"][metric]
    return float(levels["med"]), float(levels["high"]), float(levels["crit"])


def _toml_list(values: list[str]) -> str:
    return "[" + ", ".join(f'"{v}"' for v in values) + "]"


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# hitome configuration",
        "# Place this file at ~/.config/hitome/config.toml",
        "",
        f"refresh_interval = {DEFAULT_CONFIG['refresh_interval']}",
        f"column_width = {DEFAULT_CONFIG['column_width']}",
        f"nvidia = {'true' if DEFAULT_CONFIG['nvidia'] else 'false'}",
        f"cache_helper = {_toml_list(DEFAULT_CONFIG['cache_helper'])}",
        f"cache_timeout = {DEFAULT_CONFIG['cache_timeout']}",
        "",
        "[exclude]",
    ]
    for key, prefixes in DEFAULT_CONFIG["exclude"].items():
        lines.append(f"{key} = {_toml_list(prefixes)}")
    lines.append("")

    for metric, levels in DEFAULT_CONFIG["thresholds"].items():
        lines.append(f"[thresholds.{metric}]")
        lines.append(f"med = {levels['med']}")
        lines.append(f"high = {levels['high']}")
        lines.append(f"crit = {levels['crit']}")
        lines.append("")

    return "\n".join(lines) + "\n"
