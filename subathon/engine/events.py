"""
subathon.engine.events — TimerEvent Variants and JSON Codec
============================================================

Every reward-bearing action is normalized into one of four frozen
variants before it enters an accumulator's queue.  Each variant carries
only its own fields; :data:`TimerEvent` is their union.

The same events are written one-per-line to the emergency log, so the
codec here is the wire format of that file::

    {"kind": "sub", "user_display": "Ada", "tier": "1000", "count": 1,
     "message_id": "sub-42-638712345678901234"}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

__all__ = [
    "BitsEvent",
    "GiftSubEvent",
    "MalformedEventError",
    "ManualEvent",
    "SubEvent",
    "TimerEvent",
    "dumps_event",
    "event_from_dict",
    "event_to_dict",
    "loads_event",
    "message_id_of",
]


class MalformedEventError(ValueError):
    """A serialized event could not be decoded."""


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SubEvent:
    user_display: str
    tier: str
    count: int = 1
    message_id: str = ""


@dataclass(frozen=True, slots=True)
class GiftSubEvent:
    user_display: str
    tier: str
    count: int = 1
    message_id: str = ""


@dataclass(frozen=True, slots=True)
class BitsEvent:
    user_display: str
    bits: int
    count: int = 1
    message_id: str = ""


@dataclass(frozen=True, slots=True)
class ManualEvent:
    """Admin adjustment.

    Each call gets a fresh ``message_id``, so two adjustments never collide
    while a replayed copy of the same spilled line is still suppressed.
    """

    seconds: int
    reason: str = ""
    message_id: str = ""


TimerEvent = SubEvent | GiftSubEvent | BitsEvent | ManualEvent

_KIND_BY_TYPE: dict[type, str] = {
    SubEvent: "sub",
    GiftSubEvent: "gift_sub",
    BitsEvent: "bits",
    ManualEvent: "manual",
}


def message_id_of(event: TimerEvent) -> str:
    """Deduplication key, empty when the producer supplied none."""
    return getattr(event, "message_id", "") or ""


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------
def event_to_dict(event: TimerEvent) -> dict[str, Any]:
    kind = _KIND_BY_TYPE.get(type(event))
    if kind is None:
        raise TypeError(f"Not a TimerEvent: {event!r}")

    if isinstance(event, ManualEvent):
        return {
            "kind": kind,
            "seconds": event.seconds,
            "reason": event.reason,
            "message_id": event.message_id,
        }
    if isinstance(event, BitsEvent):
        return {
            "kind": kind,
            "user_display": event.user_display,
            "bits": event.bits,
            "count": event.count,
            "message_id": event.message_id,
        }
    return {
        "kind": kind,
        "user_display": event.user_display,
        "tier": event.tier,
        "count": event.count,
        "message_id": event.message_id,
    }


def event_from_dict(data: Any) -> TimerEvent:
    """Decode a dict produced by :func:`event_to_dict`.

    Raises :class:`MalformedEventError` for anything else.
    """
    if not isinstance(data, dict):
        raise MalformedEventError(f"Expected an object, got {type(data).__name__}")

    kind = data.get("kind")
    try:
        if kind == "manual":
            return ManualEvent(
                seconds=int(data["seconds"]),
                reason=str(data.get("reason") or ""),
                message_id=str(data.get("message_id") or ""),
            )
        if kind == "bits":
            return BitsEvent(
                user_display=str(data["user_display"]),
                bits=int(data["bits"]),
                count=int(data.get("count", 1)),
                message_id=str(data.get("message_id") or ""),
            )
        if kind in ("sub", "gift_sub"):
            cls = SubEvent if kind == "sub" else GiftSubEvent
            return cls(
                user_display=str(data["user_display"]),
                tier=str(data["tier"]),
                count=int(data.get("count", 1)),
                message_id=str(data.get("message_id") or ""),
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedEventError(f"Invalid {kind!r} event: {exc}") from exc

    raise MalformedEventError(f"Unknown event kind: {kind!r}")


def dumps_event(event: TimerEvent) -> str:
    """Serialize to a single JSON line (no trailing newline)."""
    return json.dumps(event_to_dict(event), separators=(",", ":"))


def loads_event(line: str) -> TimerEvent:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise MalformedEventError(f"Invalid JSON: {exc}") from exc
    return event_from_dict(data)
