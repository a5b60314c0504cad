"""
tests/test_accumulator.py — Queue, projection, lifecycle and recovery
======================================================================

Each test runs the real consumer task on a fresh event loop with a
:class:`FakeClock`, so projections are exact to the second.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import T0, make_config, run_async
from subathon.constants import EMERGENCY_LOG_FILENAME
from subathon.engine.events import BitsEvent, ManualEvent, SubEvent
from subathon.engine.models import ProcessedEvent, TimerState, TimerStatus
from subathon.engine.reward import calculate_reward
from subathon.services.accumulator import (
    Accumulator,
    AccumulatorClosedError,
    next_tick,
)
from subathon.services.emergency_log import EmergencyLog
from subathon.services.store import SnapshotStore

TENANT = "42"


async def _started(data_dir, clock, **config_overrides) -> Accumulator:
    acc = Accumulator(TENANT, data_dir, clock=clock, recovery_interval=3600)
    acc.start_background()
    await acc.update_config(make_config(**config_overrides))
    return acc


def _backups(data_dir):
    return sorted((data_dir / TENANT).glob(f"{EMERGENCY_LOG_FILENAME}.recovered.*.bak"))


# ===========================================================================
# Event processing
# ===========================================================================
class TestEventProcessing:
    def test_manual_time_added_and_logged(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.add_manual_time(500, "Admin abuse")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 500
        assert len(state.event_log) == 1
        assert state.event_log[0].description == "Admin abuse"
        assert state.event_log[0].seconds_added == 500

    def test_negative_manual_time_changes_nothing(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.add_manual_time(-120, "correction")
            await acc.add_manual_time(0, "noop")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 0
        assert state.event_log == []

    def test_identical_manual_adjustments_both_apply(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.add_manual_time(30, "bonus")
            await acc.add_manual_time(30, "bonus")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 60
        ids = [e.id for e in state.event_log]
        assert len(set(ids)) == 2
        assert all(i.startswith(f"manual-{TENANT}-") for i in ids)

    def test_duplicate_message_id_applied_once(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.enqueue_sub("Ada", "1000", message_id="m1")
            await acc.enqueue_sub("Ada", "1000", message_id="m1")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 60
        assert [e.id for e in state.event_log] == ["m1"]

    def test_zero_reward_not_logged(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.enqueue_bits("Cy", 50, message_id="b1")
            await acc.enqueue_sub("Bob", "Prime", is_gift=True, message_id="g1")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 0
        assert state.event_log == []

    def test_generated_ids_are_unique(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            for _ in range(5):
                await acc.enqueue_sub("Ada", "2000")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        ids = [e.id for e in state.event_log]
        assert len(set(ids)) == 5
        assert all(i.startswith(f"sub-{TENANT}-") for i in ids)
        assert state.total_added_seconds == 600

    def test_next_tick_strictly_increases(self):
        ticks = [next_tick() for _ in range(100)]
        assert ticks == sorted(set(ticks))

    def test_invalid_counts_rejected(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            try:
                with pytest.raises(ValueError):
                    await acc.enqueue_sub("Ada", "1000", count=0)
                with pytest.raises(ValueError):
                    await acc.enqueue_bits("Cy", -1)
            finally:
                await acc.close()

        run_async(_run())

    def test_processing_error_does_not_stop_consumer(self, data_dir, clock):
        calls = {"n": 0}

        def _flaky(event, config):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return calculate_reward(event, config)

        async def _run():
            acc = await _started(data_dir, clock)
            with patch("subathon.services.accumulator.calculate_reward", side_effect=_flaky):
                await acc.add_manual_time(10, "first")
                await acc.add_manual_time(20, "second")
                await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 20

    def test_event_log_pruned_past_limit(self, data_dir, clock):
        seeded = TimerState(
            total_added_seconds=5000,
            event_log=[
                ProcessedEvent(
                    id=f"e{i}", timestamp=T0, description="seed", seconds_added=1
                )
                for i in range(5000)
            ],
        )
        SnapshotStore(data_dir, TENANT).save_state(seeded.to_dict())

        async def _run():
            acc = await _started(data_dir, clock)
            await acc.add_manual_time(7, "overflow")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert len(state.event_log) == 4001
        assert state.event_log[0].id == "e1000"
        assert state.event_log[-1].description == "overflow"
        # Pruning never changes the accumulated total
        assert state.total_added_seconds == 5007


# ===========================================================================
# Delete
# ===========================================================================
class TestDeleteEvent:
    def test_delete_reverts_and_keeps_id_suppressed(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.enqueue_sub("Ada", "3000", message_id="m1")
            await acc.flush()
            before = acc.state.total_added_seconds

            await acc.delete_event("m1")
            await acc.flush()
            after_delete = acc.state

            await acc.enqueue_sub("Ada", "3000", message_id="m1")
            await acc.flush()
            after_redelivery = acc.state
            await acc.close()
            return before, after_delete, after_redelivery

        before, after_delete, after_redelivery = run_async(_run())
        assert before == 180
        assert after_delete.total_added_seconds == 0
        assert after_delete.event_log == []
        assert after_redelivery.total_added_seconds == 0

    def test_delete_unknown_id_is_noop(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.add_manual_time(30, "x")
            await acc.delete_event("nope")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        assert run_async(_run()).total_added_seconds == 30


# ===========================================================================
# Projection
# ===========================================================================
class TestRemainingTime:
    def test_counts_down_from_start(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.flush()
            clock.advance(100)
            remaining = acc.remaining_time()
            await acc.close()
            return remaining

        assert run_async(_run()) == timedelta(seconds=500)

    def test_before_start_counts_to_start(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock, start_time=T0 + timedelta(hours=1))
            await acc.flush()
            result = acc.remaining_time(), acc.is_running()
            await acc.close()
            return result

        remaining, running = run_async(_run())
        assert remaining == timedelta(hours=1)
        assert running is True

    def test_max_duration_caps_total(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock, max_duration_seconds=700)
            await acc.add_manual_time(500, "big")
            await acc.flush()
            remaining = acc.remaining_time()
            total = acc.state.total_added_seconds
            await acc.close()
            return remaining, total

        remaining, total = run_async(_run())
        assert remaining == timedelta(seconds=700)
        assert total == 500

    def test_never_negative(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.flush()
            clock.advance(10_000)
            result = acc.remaining_time(), acc.is_running()
            await acc.close()
            return result

        remaining, running = run_async(_run())
        assert remaining == timedelta(0)
        assert running is False

    def test_stopped_is_zero(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.stop()
            await acc.flush()
            result = acc.remaining_time(), acc.is_running(), acc.status
            await acc.close()
            return result

        remaining, running, status = run_async(_run())
        assert remaining == timedelta(0)
        assert running is False
        assert status is TimerStatus.STOPPED


# ===========================================================================
# Lifecycle
# ===========================================================================
class TestLifecycle:
    def test_pause_freezes_and_resume_accounts_pause(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            clock.advance(100)
            await acc.pause()
            await acc.flush()
            frozen = acc.remaining_time()

            clock.advance(50)
            still_frozen = acc.remaining_time()
            running_while_paused = acc.is_running()

            await acc.start()
            await acc.flush()
            resumed = acc.remaining_time()
            state = acc.state
            await acc.close()
            return frozen, still_frozen, running_while_paused, resumed, state

        frozen, still_frozen, running, resumed, state = run_async(_run())
        assert frozen == timedelta(seconds=500)
        assert still_frozen == frozen
        assert running is False
        assert resumed == timedelta(seconds=500)
        assert state.total_paused_seconds == 50
        assert state.paused_at is None
        assert state.status is TimerStatus.RUNNING

    def test_pause_twice_keeps_first_pause_time(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.pause()
            await acc.flush()
            clock.advance(30)
            await acc.pause()
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        assert run_async(_run()).paused_at == T0

    def test_events_while_paused_extend_after_resume(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.pause()
            await acc.add_manual_time(60, "gift")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.is_paused
        assert state.total_added_seconds == 60

    def test_reset(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock, start_time=T0 - timedelta(hours=2))
            await acc.add_manual_time(300, "x")
            await acc.pause()
            await acc.reset()
            await acc.flush()
            result = acc.config, acc.state
            await acc.close()
            return result

        config, state = run_async(_run())
        assert config.start_time == config.initial_start_time == T0
        assert state.total_added_seconds == 0
        assert state.event_log == []
        assert state.total_paused_seconds == 0
        assert state.status is TimerStatus.PAUSED

    def test_start_after_stop_runs_again(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.stop()
            await acc.start()
            await acc.flush()
            status = acc.status
            await acc.close()
            return status

        assert run_async(_run()) is TimerStatus.RUNNING

    def test_close_persists_snapshot(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.add_manual_time(45, "x")
            await acc.close()

        run_async(_run())
        store = SnapshotStore(data_dir, TENANT)
        assert store.load_state().total_added_seconds == 45
        assert store.load_config().min_duration_seconds == 600

    def test_control_after_close_raises(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.close()
            with pytest.raises(AccumulatorClosedError):
                await acc.pause()

        run_async(_run())

    def test_restart_keeps_dedup(self, data_dir, clock):
        async def _first():
            acc = await _started(data_dir, clock)
            await acc.enqueue_bits("Cy", 200, message_id="b-1")
            await acc.close()

        async def _second():
            acc = Accumulator(TENANT, data_dir, clock=clock, recovery_interval=3600)
            acc.start_background()
            await acc.enqueue_bits("Cy", 200, message_id="b-1")
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        run_async(_first())
        state = run_async(_second())
        assert state.total_added_seconds == 120
        assert len(state.event_log) == 1


# ===========================================================================
# Emergency log
# ===========================================================================
class TestEmergencyRecovery:
    def test_enqueue_after_close_spills(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.close()
            queued = await acc.enqueue_sub("Ada", "1000", message_id="late")
            return queued, acc.emergency_log.read().events

        queued, spilled = run_async(_run())
        assert queued is False
        assert [e.message_id for e in spilled] == ["late"]

    def test_failed_spill_logs_critical(self, data_dir, clock, caplog):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.close()
            with patch.object(acc.emergency_log, "append", side_effect=OSError("ro fs")):
                return await acc.enqueue_bits("Cy", 100, message_id="lost-1")

        with caplog.at_level(logging.WARNING, logger="subathon.services.accumulator"):
            assert run_async(_run()) is False

        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "lost-1" in critical[0].getMessage()

    def test_startup_recovery_applies_once_and_archives(self, data_dir, clock):
        log = EmergencyLog(data_dir / TENANT / EMERGENCY_LOG_FILENAME)
        log.append_sync(SubEvent(user_display="Ada", tier="1000", message_id="s1"))
        log.append_sync(SubEvent(user_display="Ada", tier="1000", message_id="s1"))
        log.append_sync(BitsEvent(user_display="Cy", bits=100, message_id="b1"))
        log.append_sync(ManualEvent(seconds=15, reason="spilled"))
        SnapshotStore(data_dir, TENANT).save_config(make_config().to_dict())

        async def _run():
            acc = Accumulator(TENANT, data_dir, clock=clock, recovery_interval=3600)
            acc.start_background()
            await acc.flush()
            state = acc.state
            await acc.close()
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 60 + 60 + 15
        assert not log.path.exists()
        assert len(_backups(data_dir)) == 1
        assert SnapshotStore(data_dir, TENANT).load_state().total_added_seconds == 135

    def test_recover_now_requeues_and_archives(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.enqueue_sub("Ada", "1000", message_id="dup")
            await acc.flush()
            acc.emergency_log.append_sync(
                SubEvent(user_display="Ada", tier="1000", message_id="dup")
            )
            acc.emergency_log.append_sync(ManualEvent(seconds=40, reason="later"))
            count = await acc.recover_now()
            state = acc.state
            empty = await acc.recover_now()
            await acc.close()
            return count, state, empty

        count, state, empty = run_async(_run())
        assert count == 2
        assert empty == 0
        assert state.total_added_seconds == 100
        assert len(_backups(data_dir)) == 1

    def test_recover_now_after_close_leaves_file(self, data_dir, clock):
        async def _run():
            acc = await _started(data_dir, clock)
            await acc.close()
            await acc.add_manual_time(10, "late")
            return await acc.recover_now(), acc.emergency_log.has_entries()

        count, has_entries = run_async(_run())
        assert count == 0
        assert has_entries is True

    def test_startup_recovery_failure_keeps_consumer_alive(self, data_dir, clock):
        log = EmergencyLog(data_dir / TENANT / EMERGENCY_LOG_FILENAME)
        log.append_sync(ManualEvent(seconds=5, reason="spilled", message_id="manual-42-1"))

        async def _run():
            acc = Accumulator(TENANT, data_dir, clock=clock, recovery_interval=3600)
            acc.start_background()
            queued = await acc.add_manual_time(10, "live")
            await asyncio.wait_for(acc.flush(), timeout=5)
            state = acc.state
            await acc.close()
            return queued, state

        with patch.object(EmergencyLog, "archive", side_effect=OSError("rename failed")):
            queued, state = run_async(_run())

        assert queued is True
        assert state.total_added_seconds == 15
        assert log.has_entries()
        assert _backups(data_dir) == []

        # The file left behind is replayed on restart without double counting
        state = run_async(_run())[1]
        assert state.total_added_seconds == 25
        assert not log.path.exists()
        assert len(_backups(data_dir)) == 1

    def test_periodic_scan_applies_spilled_events(self, data_dir, clock):
        async def _run():
            acc = Accumulator(TENANT, data_dir, clock=clock, recovery_interval=0.05)
            acc.start_background()
            await acc.update_config(make_config())
            await acc.flush()
            acc.emergency_log.append_sync(
                SubEvent(user_display="Ada", tier="2000", message_id="late-1")
            )
            for _ in range(250):
                if not acc.emergency_log.has_entries() and acc.state.total_added_seconds:
                    break
                await asyncio.sleep(0.02)
            state = acc.state
            await asyncio.wait_for(acc.close(), timeout=2)
            return state

        state = run_async(_run())
        assert state.total_added_seconds == 120
        assert [e.id for e in state.event_log] == ["late-1"]
        assert len(_backups(data_dir)) == 1

    def test_close_does_not_wait_for_next_scan(self, data_dir, clock):
        async def _run():
            acc = Accumulator(TENANT, data_dir, clock=clock)
            acc.start_background()
            await acc.flush()
            await asyncio.wait_for(acc.close(), timeout=2)
            return acc.accepting

        assert run_async(_run()) is False

    def test_recover_now_without_consumer_returns(self, data_dir, clock):
        async def _run():
            acc = Accumulator(TENANT, data_dir, clock=clock)
            acc.emergency_log.append_sync(ManualEvent(seconds=10, message_id="m-1"))
            count = await asyncio.wait_for(acc.recover_now(), timeout=2)
            return count, acc.emergency_log.has_entries()

        count, has_entries = run_async(_run())
        assert count == 0
        assert has_entries is True
