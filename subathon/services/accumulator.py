"""
subathon.services.accumulator — Per-Tenant Time Accumulator
============================================================

The state machine behind one streamer's countdown.  It owns that tenant's
:class:`TimerConfig` and :class:`TimerState` and is the **only** code that
mutates them.

Pipeline::

    producers ──enqueue_*/start/pause/…──▶ asyncio.Queue ──▶ _consume()
         │                                                     │
         └─(queue refused)─▶ EmergencyLog ──recovery scan──────┘
                                                               ▼
                        dedup → calculate_reward → mutate → snapshot

Every mutation, including lifecycle transitions, config updates and
deletions, is a message on the same queue, so all changes to ``State``
happen in one strict order on one task.

Durability boundary: a message is safe once it is either applied and
snapshotted, or written to the emergency log.  Anything still in the
in-memory queue is drained before :meth:`Accumulator.close` returns.

Usage::

    acc = Accumulator("1234", data_dir)
    acc.start_background()
    await acc.enqueue_sub("Ada", "1000", is_gift=False)
    await acc.flush()
    print(acc.remaining_time())
    await acc.close()
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from subathon.constants import (
    DEFAULT_ENQUEUE_TIMEOUT_SECONDS,
    DEFAULT_RECOVERY_INTERVAL_SECONDS,
    EMERGENCY_LOG_FILENAME,
    EVENT_LOG_MAX,
    EVENT_LOG_PRUNE,
    SNAPSHOT_WRITE_ATTEMPTS,
)
from subathon.engine.events import (
    BitsEvent,
    GiftSubEvent,
    ManualEvent,
    SubEvent,
    TimerEvent,
    dumps_event,
    message_id_of,
)
from subathon.engine.models import (
    ProcessedEvent,
    TimerConfig,
    TimerState,
    TimerStatus,
    utc_now,
)
from subathon.engine.reward import calculate_reward
from subathon.services.emergency_log import EmergencyLog
from subathon.services.store import SnapshotStore

logger = logging.getLogger(__name__)

__all__ = [
    "Accumulator",
    "AccumulatorClosedError",
    "next_tick",
]


class AccumulatorClosedError(RuntimeError):
    """The accumulator is shutting down and accepts no more messages."""


# ---------------------------------------------------------------------------
# Control messages: share the queue with TimerEvents
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StartCommand:
    pass


@dataclass(frozen=True, slots=True)
class PauseCommand:
    pass


@dataclass(frozen=True, slots=True)
class StopCommand:
    pass


@dataclass(frozen=True, slots=True)
class ResetCommand:
    pass


@dataclass(frozen=True, slots=True)
class UpdateConfigCommand:
    config: TimerConfig


@dataclass(frozen=True, slots=True)
class DeleteEventCommand:
    event_id: str


@dataclass(frozen=True, slots=True, eq=False)
class FlushCommand:
    """Barrier: resolved once every message queued before it is applied."""

    done: asyncio.Future


class _Shutdown:
    __slots__ = ()


_SHUTDOWN = _Shutdown()

Command = (
    StartCommand
    | PauseCommand
    | StopCommand
    | ResetCommand
    | UpdateConfigCommand
    | DeleteEventCommand
    | FlushCommand
)
Message = TimerEvent | Command | _Shutdown


# ---------------------------------------------------------------------------
# Message ids
# ---------------------------------------------------------------------------
_tick_lock = threading.Lock()
_last_tick = 0


def next_tick() -> int:
    """Strictly increasing 100-ns wall-clock ticks for this process."""
    global _last_tick
    with _tick_lock:
        tick = time.time_ns() // 100
        if tick <= _last_tick:
            tick = _last_tick + 1
        _last_tick = tick
        return tick


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------
class Accumulator:
    """Single-writer state machine for one tenant's countdown.

    Parameters
    ----------
    tenant_id:
        External user id; also the name of the tenant's data directory.
    data_dir:
        Root directory holding one sub-directory per tenant.
    recovery_interval:
        Seconds between emergency-log re-scans.
    enqueue_timeout:
        Upper bound for handing an event to the queue before it is spilled
        to the emergency log.
    clock:
        Returns the current aware UTC datetime.  Injected in tests.
    """

    def __init__(
        self,
        tenant_id: str,
        data_dir: str | Path,
        *,
        recovery_interval: float = DEFAULT_RECOVERY_INTERVAL_SECONDS,
        enqueue_timeout: float = DEFAULT_ENQUEUE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = SnapshotStore(data_dir, tenant_id)
        self.tenant_id = self._store.tenant_id
        self.emergency_log = EmergencyLog(
            self._store.tenant_dir / EMERGENCY_LOG_FILENAME
        )
        self._recovery_interval = recovery_interval
        self._enqueue_timeout = enqueue_timeout
        self._clock = clock

        self._config: TimerConfig = self._store.load_config()
        self._state: TimerState = self._store.load_state()
        # Rebuilt from the persisted log so redelivered events stay
        # suppressed across restarts.
        self._seen_ids: set[str] = {e.id for e in self._state.event_log}
        self._frozen_remaining: timedelta | None = None

        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._accepting = True
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._consuming = False

        logger.info(
            "Accumulator loaded for tenant %s: %d logged events, %ds added, %s",
            self.tenant_id,
            len(self._state.event_log),
            self._state.total_added_seconds,
            self._state.status.value,
        )

    # -------------------------------------------------------------------
    # Read-only views (call from the event loop thread)
    # -------------------------------------------------------------------
    @property
    def config(self) -> TimerConfig:
        return copy.deepcopy(self._config)

    @property
    def state(self) -> TimerState:
        return copy.deepcopy(self._state)

    @property
    def status(self) -> TimerStatus:
        return self._state.status

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def pending(self) -> int:
        """Messages waiting in the queue."""
        return self._queue.qsize()

    def remaining_time(self, now: datetime | None = None) -> timedelta:
        """Time left on the countdown.

        Stopped → zero.  Paused → the value frozen when the pause began.
        Before ``start_time`` → the time until the countdown begins.
        """
        state = self._state
        if state.is_stopped:
            return timedelta(0)
        if state.is_paused:
            if self._frozen_remaining is None:
                self._frozen_remaining = self._projection(
                    state.paused_at or now or self._clock()
                )
            return self._frozen_remaining
        return self._projection(now or self._clock())

    def is_running(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        if self._state.is_stopped or self._state.is_paused:
            return False
        return self.remaining_time(now) > timedelta(0) or now < self._config.start_time

    def _projection(self, now: datetime) -> timedelta:
        cfg = self._config
        if now < cfg.start_time:
            return cfg.start_time - now

        total = cfg.min_duration_seconds + self._state.total_added_seconds
        if cfg.max_duration_seconds > 0:
            total = min(total, cfg.max_duration_seconds)

        elapsed = (now - cfg.start_time) - timedelta(
            seconds=self._state.total_paused_seconds
        )
        return max(timedelta(seconds=total) - elapsed, timedelta(0))

    # -------------------------------------------------------------------
    # Producer API: safe to call concurrently from many tasks
    # -------------------------------------------------------------------
    async def enqueue_sub(
        self,
        user_display: str,
        tier: str,
        is_gift: bool = False,
        count: int = 1,
        message_id: str | None = None,
    ) -> bool:
        """Queue a (gift) subscription.  Returns False if it was spilled."""
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        cls = GiftSubEvent if is_gift else SubEvent
        event = cls(
            user_display=user_display,
            tier=tier,
            count=count,
            message_id=message_id or f"sub-{self.tenant_id}-{next_tick()}",
        )
        logger.info(
            "Queuing %s event: %dx %s by %s",
            "GiftSub" if is_gift else "Sub", count, tier, user_display,
        )
        return await self.submit(event)

    async def enqueue_bits(
        self,
        user_display: str,
        bits: int,
        count: int = 1,
        message_id: str | None = None,
    ) -> bool:
        """Queue a bits cheer.  Returns False if it was spilled."""
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        if bits < 0:
            raise ValueError(f"bits must be >= 0, got {bits}")
        event = BitsEvent(
            user_display=user_display,
            bits=bits,
            count=count,
            message_id=message_id or f"bits-{self.tenant_id}-{next_tick()}",
        )
        logger.info("Queuing Bits event: %dx %d bits by %s", count, bits, user_display)
        return await self.submit(event)

    async def add_manual_time(self, seconds: int, reason: str) -> bool:
        """Queue a manual adjustment.  Only positive amounts change the timer."""
        event = ManualEvent(
            seconds=seconds,
            reason=reason,
            message_id=f"manual-{self.tenant_id}-{next_tick()}",
        )
        logger.info("Queuing Manual event: %ds - %s", seconds, reason)
        return await self.submit(event)

    async def submit(self, event: TimerEvent) -> bool:
        """Hand *event* to the queue, or spill it to the emergency log.

        Returns True if queued, False if it went to the emergency log (or
        was lost, which is logged at CRITICAL).
        """
        try:
            await asyncio.wait_for(self._put(event), timeout=self._enqueue_timeout)
            return True
        except Exception as exc:
            logger.warning(
                "Enqueue failed for tenant %s (%s: %s) — writing to emergency log",
                self.tenant_id, type(exc).__name__, exc,
            )

        try:
            await self.emergency_log.append(event)
        except Exception:
            logger.critical(
                "EVENT LOST for tenant %s — emergency log write failed. "
                "Recover manually from payload: %s",
                self.tenant_id, dumps_event(event),
                exc_info=True,
            )
        return False

    async def _put(self, message: Message) -> None:
        if not self._accepting:
            raise AccumulatorClosedError(
                f"Accumulator for tenant {self.tenant_id} is closed"
            )
        await self._queue.put(message)

    def _send(self, message: Message) -> None:
        if not self._accepting:
            raise AccumulatorClosedError(
                f"Accumulator for tenant {self.tenant_id} is closed"
            )
        self._queue.put_nowait(message)

    async def start(self) -> None:
        self._send(StartCommand())

    async def pause(self) -> None:
        self._send(PauseCommand())

    async def stop(self) -> None:
        self._send(StopCommand())

    async def reset(self) -> None:
        self._send(ResetCommand())

    async def update_config(self, config: TimerConfig) -> None:
        self._send(UpdateConfigCommand(copy.deepcopy(config)))

    async def delete_event(self, event_id: str) -> None:
        self._send(DeleteEventCommand(event_id))

    async def flush(self) -> None:
        """Wait until every message queued so far has been applied."""
        done = asyncio.get_running_loop().create_future()
        self._send(FlushCommand(done))
        await done

    # -------------------------------------------------------------------
    # Lifecycle of the consumer task
    # -------------------------------------------------------------------
    def start_background(self) -> asyncio.Task:
        """Spawn :meth:`run` on the running loop (idempotent)."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self.run(), name=f"accumulator-{self.tenant_id}"
            )
        return self._task

    async def run(self) -> None:
        """Replay the emergency log, then consume until shutdown."""
        logger.info("Accumulator for tenant %s starting", self.tenant_id)
        try:
            await self._recover_on_startup()
        except Exception:
            # Applied events are deduplicated by id, so the periodic scan
            # can safely retry the same file.
            logger.exception(
                "Startup recovery failed for tenant %s; left for the periodic scan",
                self.tenant_id,
            )

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._consume(), name=f"consume-{self.tenant_id}")
            tg.create_task(
                self._recovery_loop(), name=f"recovery-{self.tenant_id}"
            )

        await self._persist(config=True)
        logger.info("Accumulator for tenant %s stopped", self.tenant_id)

    async def close(self) -> None:
        """Stop accepting messages, drain the queue, flush a final snapshot."""
        if self._accepting:
            self._accepting = False
            self._queue.put_nowait(_SHUTDOWN)
        await self.start_background()

    async def _consume(self) -> None:
        self._consuming = True
        try:
            while True:
                message = await self._queue.get()
                try:
                    if isinstance(message, _Shutdown):
                        self._shutdown.set()
                        return
                    await self._handle(message)
                except Exception:
                    logger.exception(
                        "Error processing %s for tenant %s",
                        type(message).__name__, self.tenant_id,
                    )
                finally:
                    self._queue.task_done()
        finally:
            self._consuming = False

    async def _handle(self, message: Message) -> None:
        now = self._clock()

        if isinstance(message, FlushCommand):
            if not message.done.done():
                message.done.set_result(None)
            return

        if isinstance(message, (SubEvent, GiftSubEvent, BitsEvent, ManualEvent)):
            self._apply_event(message, now)
            await self._persist()
        elif isinstance(message, DeleteEventCommand):
            if self._apply_delete(message.event_id):
                await self._persist()
        elif isinstance(message, UpdateConfigCommand):
            self._config = message.config
            self._frozen_remaining = None
            logger.info("Config updated for tenant %s", self.tenant_id)
            await self._persist(config=True)
        elif isinstance(message, StartCommand):
            self._apply_start(now)
            await self._persist()
        elif isinstance(message, PauseCommand):
            if self._apply_pause(now):
                await self._persist()
        elif isinstance(message, StopCommand):
            self._apply_stop()
            await self._persist()
        elif isinstance(message, ResetCommand):
            self._apply_reset(now)
            await self._persist(config=True)
        else:
            raise TypeError(f"Unsupported message: {message!r}")

    # -------------------------------------------------------------------
    # Mutations: run only on the consumer task
    # -------------------------------------------------------------------
    def _apply_event(self, event: TimerEvent, now: datetime) -> ProcessedEvent | None:
        message_id = message_id_of(event)
        if message_id and message_id in self._seen_ids:
            logger.info("Duplicate event skipped: %s", message_id)
            return None

        result = calculate_reward(event, self._config)
        entry = None
        if result.seconds > 0:
            entry = ProcessedEvent(
                id=message_id or uuid.uuid4().hex,
                timestamp=now,
                description=result.description,
                seconds_added=result.seconds,
                user_display=getattr(event, "user_display", ""),
            )
            state = self._state
            state.total_added_seconds += result.seconds
            state.event_log.append(entry)
            if len(state.event_log) > EVENT_LOG_MAX:
                del state.event_log[:EVENT_LOG_PRUNE]
                logger.info(
                    "Pruned %d oldest log entries for tenant %s",
                    EVENT_LOG_PRUNE, self.tenant_id,
                )
            logger.info(
                "Added %ds. Reason: %s. Total Added: %d",
                result.seconds, result.description, state.total_added_seconds,
            )
        else:
            logger.info("No time earned: %s", result.description)

        if message_id:
            self._seen_ids.add(message_id)
        return entry

    def _apply_delete(self, event_id: str) -> bool:
        entry = self._state.pop_event(event_id)
        if entry is None:
            logger.warning(
                "Delete ignored, no event %s for tenant %s", event_id, self.tenant_id
            )
            return False
        # The id stays in _seen_ids so a redelivery cannot resurrect it.
        self._state.total_added_seconds -= entry.seconds_added
        logger.info("Deleted event %s, removed %ds", event_id, entry.seconds_added)
        return True

    def _apply_start(self, now: datetime) -> None:
        state = self._state
        state.is_stopped = False
        if state.is_paused and state.paused_at is not None:
            paused_for = int((now - state.paused_at).total_seconds())
            state.total_paused_seconds += max(paused_for, 0)
            state.paused_at = None
            logger.info(
                "Resuming from pause. Total paused: %ds", state.total_paused_seconds
            )
        state.is_paused = False
        self._frozen_remaining = None

    def _apply_pause(self, now: datetime) -> bool:
        state = self._state
        if state.is_paused:
            return False
        self._frozen_remaining = self._projection(now)
        state.is_paused = True
        state.paused_at = now
        logger.info(
            "Timer paused for tenant %s with %s remaining",
            self.tenant_id, self._frozen_remaining,
        )
        return True

    def _apply_stop(self) -> None:
        state = self._state
        state.is_stopped = True
        state.is_paused = False
        state.paused_at = None
        logger.info("Timer stopped for tenant %s", self.tenant_id)

    def _apply_reset(self, now: datetime) -> None:
        self._config.start_time = self._config.initial_start_time
        state = self._state
        state.total_added_seconds = 0
        state.event_log.clear()
        state.is_stopped = False
        state.is_paused = True
        state.paused_at = None
        state.total_paused_seconds = 0
        self._frozen_remaining = self._projection(now)
        logger.info("Timer reset for tenant %s", self.tenant_id)

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------
    async def _persist(self, *, config: bool = False) -> bool:
        """Snapshot state (and optionally config) to disk.

        Never rolls back the in-memory mutation: on repeated failure the
        display and the disk disagree until the next successful write.
        """
        state_payload = self._state.to_dict()
        config_payload = self._config.to_dict() if config else None

        for attempt in range(1, SNAPSHOT_WRITE_ATTEMPTS + 1):
            try:
                if config_payload is not None:
                    await asyncio.to_thread(self._store.save_config, config_payload)
                await asyncio.to_thread(self._store.save_state, state_payload)
                return True
            except Exception:
                if attempt == SNAPSHOT_WRITE_ATTEMPTS:
                    logger.exception(
                        "Snapshot write FAILED for tenant %s after %d attempts; "
                        "in-memory state is ahead of disk",
                        self.tenant_id, attempt,
                    )
                    return False
                logger.warning(
                    "Snapshot write attempt %d failed for tenant %s, retrying",
                    attempt, self.tenant_id,
                )
                await asyncio.sleep(0.05 * attempt)
        return False

    # -------------------------------------------------------------------
    # Emergency log recovery
    # -------------------------------------------------------------------
    async def _recover_on_startup(self) -> None:
        """Apply spilled events directly, before the queue is drained."""
        async with self.emergency_log.lock:
            if not self.emergency_log.has_entries():
                return
            batch = await asyncio.to_thread(self.emergency_log.read)
            applied = 0
            for event in batch.events:
                try:
                    if self._apply_event(event, self._clock()) is not None:
                        applied += 1
                except Exception:
                    logger.exception(
                        "Error replaying recovered event for tenant %s", self.tenant_id
                    )
            await self._persist()
            await asyncio.to_thread(self.emergency_log.archive, self._clock())

        logger.warning(
            "Recovered %d emergency events for tenant %s on startup "
            "(%d applied, %d malformed lines skipped)",
            len(batch.events), self.tenant_id, applied, batch.skipped,
        )

    async def recover_now(self) -> int:
        """Re-submit spilled events through the queue and archive the log.

        Returns the number of events re-submitted.  Does nothing unless the
        consumer task is running, since the barrier would never resolve.
        """
        if not self._consuming:
            logger.warning(
                "Recovery skipped for tenant %s: consumer is not running",
                self.tenant_id,
            )
            return 0
        async with self.emergency_log.lock:
            if not self.emergency_log.has_entries():
                return 0
            batch = await asyncio.to_thread(self.emergency_log.read)
            if not self._accepting:
                # Left on disk for the next startup.
                return 0

            for event in batch.events:
                self._queue.put_nowait(event)
            done = asyncio.get_running_loop().create_future()
            self._queue.put_nowait(FlushCommand(done))
            await done

            await asyncio.to_thread(self.emergency_log.archive, self._clock())

        logger.warning(
            "Recovered %d emergency events for tenant %s (%d malformed lines skipped)",
            len(batch.events), self.tenant_id, batch.skipped,
        )
        return len(batch.events)

    async def _recovery_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=self._recovery_interval
                )
                return
            except TimeoutError:
                pass
            try:
                await self.recover_now()
            except Exception:
                logger.exception(
                    "Emergency log recovery failed for tenant %s", self.tenant_id
                )
