"""
subathon.config — YAML Configuration Loader
============================================

**Why this file exists:**
This module reads ``config.yaml`` for **infrastructure-only** settings
(data directory, API bind address, background intervals).  The reward
rates and the countdown itself are per-streamer and live in each tenant's
``timer_config.json`` snapshot, editable through the API.

Usage::

    from subathon.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.data_dir)          # PosixPath('Data')
    print(cfg.api_port)          # 8080
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from subathon.constants import (
    DEFAULT_ENQUEUE_TIMEOUT_SECONDS,
    DEFAULT_RECOVERY_INTERVAL_SECONDS,
)


# ---------------------------------------------------------------------------
# Typed settings object, infrastructure only.
# Reward tuning lives in the per-tenant config snapshot.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SubathonConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Storage
    data_dir: Path

    # HTTP
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    # Logging
    log_level: str = "INFO"

    # Accumulator tuning
    recovery_interval_seconds: float = DEFAULT_RECOVERY_INTERVAL_SECONDS
    enqueue_timeout_seconds: float = DEFAULT_ENQUEUE_TIMEOUT_SECONDS


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def default_config_path() -> Path:
    """``$SUBATHON_CONFIG`` if set, otherwise ``./config.yaml``."""
    return Path(os.getenv("SUBATHON_CONFIG", "config.yaml"))


def load_config(path: str | Path | None = None) -> SubathonConfig:
    """Read *path* and return a :class:`SubathonConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to :func:`default_config_path`.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If ``data_dir`` is missing from the YAML file.
    ValueError
        If a numeric setting is not a positive number.
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    recovery_interval = float(
        raw.get("recovery_interval_seconds", DEFAULT_RECOVERY_INTERVAL_SECONDS)
    )
    enqueue_timeout = float(
        raw.get("enqueue_timeout_seconds", DEFAULT_ENQUEUE_TIMEOUT_SECONDS)
    )
    if recovery_interval <= 0 or enqueue_timeout <= 0:
        raise ValueError(
            "recovery_interval_seconds and enqueue_timeout_seconds must be > 0"
        )

    return SubathonConfig(
        data_dir=Path(raw["data_dir"]),
        api_host=str(raw.get("api_host", "127.0.0.1")),
        api_port=int(raw.get("api_port", 8080)),
        log_level=str(raw.get("log_level", "INFO")).upper(),
        recovery_interval_seconds=recovery_interval,
        enqueue_timeout_seconds=enqueue_timeout,
    )
