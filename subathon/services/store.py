"""
subathon.services.store — Per-Tenant Snapshot Persistence
==========================================================

Whole-document JSON snapshots of a tenant's :class:`TimerConfig` and
:class:`TimerState`::

    <data_dir>/<tenant_id>/timer_config.json
    <data_dir>/<tenant_id>/timer_state.json

Writes are atomic: the document goes to a temp file in the same
directory, is fsynced, then ``os.replace``-d over the old snapshot.  A
crash mid-write leaves the previous snapshot intact.

All methods are synchronous — call them via ``await asyncio.to_thread(...)``
from async code.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from subathon.constants import CONFIG_FILENAME, STATE_FILENAME
from subathon.engine.models import TimerConfig, TimerState

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class SnapshotError(RuntimeError):
    """A snapshot exists but could not be decoded."""


class InvalidTenantError(ValueError):
    """Tenant id is not usable as a single directory name."""


def validate_tenant_id(tenant_id: str) -> str:
    if (
        not tenant_id
        or tenant_id in (".", "..")
        or not _TENANT_ID_RE.match(tenant_id)
    ):
        raise InvalidTenantError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write *payload* as indented JSON to *path* via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class SnapshotStore:
    """Reads and writes the two snapshot documents of one tenant."""

    def __init__(self, data_dir: str | Path, tenant_id: str) -> None:
        self.tenant_id = validate_tenant_id(tenant_id)
        self.tenant_dir = Path(data_dir) / tenant_id
        self.config_path = self.tenant_dir / CONFIG_FILENAME
        self.state_path = self.tenant_dir / STATE_FILENAME

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise SnapshotError(f"Cannot read snapshot {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SnapshotError(f"Snapshot {path} is not a JSON object")
        return data

    def load_config(self) -> TimerConfig:
        """Return the persisted config, or defaults if none was saved yet."""
        data = self._read(self.config_path)
        if data is None:
            return TimerConfig()
        try:
            return TimerConfig.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise SnapshotError(f"Invalid config snapshot: {exc}") from exc

    def load_state(self) -> TimerState:
        """Return the persisted state, or a fresh state if none was saved yet."""
        data = self._read(self.state_path)
        if data is None:
            return TimerState()
        try:
            return TimerState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise SnapshotError(f"Invalid state snapshot: {exc}") from exc

    # -------------------------------------------------------------------
    # Saving: callers pass already-serialized dicts so the snapshot is
    # taken on the owning task and only the disk I/O runs off-loop.
    # -------------------------------------------------------------------
    def save_config(self, payload: dict[str, Any]) -> None:
        write_json_atomic(self.config_path, payload)

    def save_state(self, payload: dict[str, Any]) -> None:
        write_json_atomic(self.state_path, payload)
