"""
subathon.services.emergency_log — Durable Side Channel for Lost Enqueues
=========================================================================

If an event cannot be handed to an accumulator's queue, it is appended
here as one JSON line instead of being dropped.  The accumulator replays
the file on startup and on every periodic recovery scan, then renames it
to ``<name>.recovered.<timestamp>.bak``.  Files are never deleted, so
every spilled event stays on disk for audit.

Parsing is line-by-line: a corrupt line is counted and skipped, it never
aborts the batch.

The :attr:`EmergencyLog.lock` serializes async appends with a
recover → apply → archive cycle, so no line can be appended between
reading the file and renaming it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from subathon.engine.events import (
    MalformedEventError,
    TimerEvent,
    dumps_event,
    loads_event,
)

logger = logging.getLogger(__name__)


@dataclass
class RecoveryBatch:
    """Result of reading the emergency log."""

    events: list[TimerEvent] = field(default_factory=list)
    skipped: int = 0

    def __bool__(self) -> bool:
        return bool(self.events) or self.skipped > 0


class EmergencyLog:
    """Append-only JSON-lines file for one tenant."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock = asyncio.Lock()

    # -------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------
    def append_sync(self, event: TimerEvent) -> None:
        """Append *event* as one line and fsync.  Raises on I/O failure."""
        line = dumps_event(event)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")
            fh.flush()
            os.fsync(fh.fileno())

    async def append(self, event: TimerEvent) -> None:
        async with self.lock:
            await asyncio.to_thread(self.append_sync, event)

    # -------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------
    def has_entries(self) -> bool:
        try:
            return self.path.stat().st_size > 0
        except FileNotFoundError:
            return False

    def read(self) -> RecoveryBatch:
        """Parse every line of the log.  Missing file → empty batch."""
        batch = RecoveryBatch()
        if not self.path.exists():
            return batch

        with open(self.path, encoding="utf-8", errors="replace") as fh:
            for lineno, raw in enumerate(fh, start=1):
                line = raw.strip()
                if not line:
                    continue
                try:
                    batch.events.append(loads_event(line))
                except MalformedEventError as exc:
                    batch.skipped += 1
                    logger.warning(
                        "Skipping malformed emergency log line %s:%d — %s",
                        self.path.name, lineno, exc,
                    )
        return batch

    def archive(self, now: datetime | None = None) -> Path | None:
        """Rename the log to a timestamped ``.recovered.*.bak`` file.

        Returns the new path, or ``None`` if there was nothing to archive.
        """
        if not self.path.exists():
            return None

        stamp = (now or datetime.now(UTC)).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.path.with_name(f"{self.path.name}.recovered.{stamp}.bak")
        suffix = 1
        while target.exists():
            target = self.path.with_name(
                f"{self.path.name}.recovered.{stamp}-{suffix}.bak"
            )
            suffix += 1

        os.replace(self.path, target)
        logger.info("Emergency log archived → %s", target.name)
        return target
