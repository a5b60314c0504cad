"""
tests/test_events.py — TimerEvent codec and snapshot models
============================================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from conftest import T0, make_config
from subathon.engine.events import (
    BitsEvent,
    GiftSubEvent,
    MalformedEventError,
    ManualEvent,
    SubEvent,
    dumps_event,
    loads_event,
    message_id_of,
)
from subathon.engine.models import (
    ProcessedEvent,
    TimerConfig,
    TimerState,
    TimerStatus,
    parse_datetime,
)


class TestEventCodec:
    @pytest.mark.parametrize(
        "event",
        [
            SubEvent(user_display="Ada", tier="1000", count=2, message_id="sub-1-1"),
            GiftSubEvent(user_display="Bob", tier="3000", count=5, message_id="sub-1-2"),
            BitsEvent(user_display="Cy", bits=250, count=1, message_id="bits-1-3"),
            ManualEvent(seconds=-60, reason="correction", message_id="manual-1-4"),
        ],
    )
    def test_line_round_trip(self, event):
        line = dumps_event(event)
        assert "\n" not in line
        assert loads_event(line) == event

    def test_kind_tag(self):
        assert '"kind":"gift_sub"' in dumps_event(GiftSubEvent(user_display="B", tier="1000"))

    def test_message_id_of(self):
        assert message_id_of(ManualEvent(seconds=5)) == ""
        assert message_id_of(ManualEvent(seconds=5, message_id="manual-1-9")) == "manual-1-9"
        assert message_id_of(BitsEvent(user_display="C", bits=1, message_id="x")) == "x"

    @pytest.mark.parametrize(
        "line",
        [
            "not json",
            "[1, 2]",
            '{"kind": "raid", "viewers": 10}',
            '{"kind": "sub", "tier": "1000"}',
            '{"kind": "bits", "user_display": "C", "bits": "lots"}',
        ],
    )
    def test_malformed(self, line):
        with pytest.raises(MalformedEventError):
            loads_event(line)


class TestModels:
    def test_status_stopped_dominates_paused(self):
        state = TimerState(is_paused=True, is_stopped=True)
        assert state.status is TimerStatus.STOPPED
        assert TimerState(is_paused=True).status is TimerStatus.PAUSED
        assert TimerState().status is TimerStatus.RUNNING

    def test_config_round_trip(self):
        config = make_config(max_duration_seconds=3600, text_color="#fff")
        restored = TimerConfig.from_dict(config.to_dict())
        assert restored == config

    def test_config_ignores_unknown_keys_and_fills_defaults(self):
        restored = TimerConfig.from_dict(
            {"start_time": T0.isoformat(), "twitch_client_id": "abc"}
        )
        assert restored.start_time == T0
        assert restored.min_duration_seconds == 86_400

    def test_state_round_trip(self):
        state = TimerState(
            total_added_seconds=120,
            is_paused=True,
            paused_at=T0,
            total_paused_seconds=30,
            event_log=[
                ProcessedEvent(
                    id="sub-1-1",
                    timestamp=T0,
                    description="Sub (1000) by Ada",
                    seconds_added=60,
                    user_display="Ada",
                )
            ],
        )
        assert TimerState.from_dict(state.to_dict()) == state

    def test_pop_event(self):
        entry = ProcessedEvent(id="a", timestamp=T0, description="", seconds_added=5)
        state = TimerState(event_log=[entry])
        assert state.pop_event("missing") is None
        assert state.pop_event("a") is entry
        assert state.event_log == []

    def test_parse_naive_datetime_as_utc(self):
        assert parse_datetime("2026-03-01T12:00:00") == datetime(2026, 3, 1, 12, tzinfo=UTC)
