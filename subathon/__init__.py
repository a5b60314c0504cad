"""
Subathon — A Viewer-Extendable Countdown for Live Streams
==========================================================
Tracks one countdown deadline per streamer that viewers extend with
subscriptions, gifted subscriptions, bit cheers and manual adjustments.
Every extension flows through a single ordered event pipeline, is
deduplicated, persisted as a snapshot, and recoverable from an
append-only emergency log if it ever fails to reach the pipeline.

Package layout::

    subathon/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Tiers, log bounds, file names
    ├── engine/
    │   ├── events.py      # TimerEvent variants + JSON codec
    │   ├── models.py      # TimerConfig / TimerState / ProcessedEvent
    │   └── reward.py      # Reward calculation (pure)
    ├── services/
    │   ├── accumulator.py # Per-tenant single-consumer state machine
    │   ├── emergency_log.py  # Durable side channel for failed enqueues
    │   ├── store.py       # Atomic JSON snapshot persistence
    │   └── registry.py    # tenant_id → Accumulator
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Registry + JWT dependencies
        └── routes/        # Overlay reads + producer endpoints
"""

__version__ = "0.1.0"
