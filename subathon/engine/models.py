"""
subathon.engine.models — Timer Config, State and Log Records
=============================================================

The two per-tenant documents persisted by :mod:`subathon.services.store`:

* :class:`TimerConfig` — reward rates and the countdown window.  Replaced
  wholesale on update.
* :class:`TimerState` — everything the accumulator has applied so far,
  including the bounded :class:`ProcessedEvent` log.

Both round-trip through plain JSON-compatible dicts (``to_dict`` /
``from_dict``).  Unknown keys are ignored and missing keys fall back to
their defaults so older snapshots keep loading.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any

__all__ = [
    "ProcessedEvent",
    "TimerConfig",
    "TimerState",
    "TimerStatus",
    "parse_datetime",
    "utc_now",
]


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_datetime(value: str | datetime) -> datetime:
    """Parse an ISO-8601 string; naive values are taken as UTC."""
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


class TimerStatus(enum.StrEnum):
    """Derived lifecycle status.  Stopped dominates paused."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# TimerConfig
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class TimerConfig:
    """Per-tenant countdown window and reward rates."""

    start_time: datetime = field(default_factory=utc_now)
    # Anchor restored by reset; never touched by the accumulator itself.
    initial_start_time: datetime = field(default_factory=utc_now)

    min_duration_seconds: int = 86_400        # 24 hours
    max_duration_seconds: int = 7_776_000     # 90 days, 0 = uncapped

    seconds_per_sub_tier1: int = 60
    seconds_per_sub_tier2: int = 120
    seconds_per_sub_tier3: int = 180
    seconds_per_prime_sub: int = 60

    # Linear mode when > 0, otherwise block mode below.
    seconds_per_bit: int = 0
    # Block mode: seconds_per_bits per full min_bits_to_trigger block.
    seconds_per_bits: int = 60
    min_bits_to_trigger: int = 1_000

    # Display only
    background_color: str = "#1e1e1e"
    text_color: str = "#00e676"

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["start_time"] = self.start_time.isoformat()
        data["initial_start_time"] = self.initial_start_time.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimerConfig:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in ("start_time", "initial_start_time"):
            if kwargs.get(key) is not None:
                kwargs[key] = parse_datetime(kwargs[key])
            else:
                kwargs.pop(key, None)
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# ProcessedEvent
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ProcessedEvent:
    """One applied reward.  Removed only as a whole by ``delete_event``."""

    id: str
    timestamp: datetime
    description: str
    seconds_added: int
    user_display: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "description": self.description,
            "seconds_added": self.seconds_added,
            "user_display": self.user_display,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessedEvent:
        return cls(
            id=str(data["id"]),
            timestamp=parse_datetime(data["timestamp"]),
            description=str(data.get("description", "")),
            seconds_added=int(data.get("seconds_added", 0)),
            user_display=str(data.get("user_display") or ""),
        )


# ---------------------------------------------------------------------------
# TimerState
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class TimerState:
    """Mutable accumulator state, owned by a single consumer task."""

    total_added_seconds: int = 0
    is_paused: bool = False
    is_stopped: bool = False
    paused_at: datetime | None = None
    total_paused_seconds: int = 0
    event_log: list[ProcessedEvent] = field(default_factory=list)

    @property
    def status(self) -> TimerStatus:
        if self.is_stopped:
            return TimerStatus.STOPPED
        if self.is_paused:
            return TimerStatus.PAUSED
        return TimerStatus.RUNNING

    def pop_event(self, event_id: str) -> ProcessedEvent | None:
        """Remove and return the log entry with *event_id*, if present."""
        for index, entry in enumerate(self.event_log):
            if entry.id == event_id:
                return self.event_log.pop(index)
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_added_seconds": self.total_added_seconds,
            "is_paused": self.is_paused,
            "is_stopped": self.is_stopped,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "total_paused_seconds": self.total_paused_seconds,
            "event_log": [e.to_dict() for e in self.event_log],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimerState:
        paused_at = data.get("paused_at")
        return cls(
            total_added_seconds=int(data.get("total_added_seconds", 0)),
            is_paused=bool(data.get("is_paused", False)),
            is_stopped=bool(data.get("is_stopped", False)),
            paused_at=parse_datetime(paused_at) if paused_at else None,
            total_paused_seconds=int(data.get("total_paused_seconds", 0)),
            event_log=[
                ProcessedEvent.from_dict(e) for e in data.get("event_log") or []
            ],
        )
