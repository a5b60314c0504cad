"""
subathon.constants — Shared Constants
======================================

Single source of truth for subscription tiers, event-log bounds and the
per-tenant file names.  Import from here instead of duplicating values in
the engine, services and API.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Subscription tiers as reported by the platform
# ---------------------------------------------------------------------------
TIER_1 = "1000"
TIER_2 = "2000"
TIER_3 = "3000"
TIER_PRIME = "Prime"

SUB_TIERS: tuple[str, ...] = (TIER_1, TIER_2, TIER_3, TIER_PRIME)

# ---------------------------------------------------------------------------
# Event log bounds: amortized trim, not a strict cap
# ---------------------------------------------------------------------------
EVENT_LOG_MAX = 5_000
EVENT_LOG_PRUNE = 1_000

# ---------------------------------------------------------------------------
# Background work
# ---------------------------------------------------------------------------
DEFAULT_RECOVERY_INTERVAL_SECONDS = 300.0
DEFAULT_ENQUEUE_TIMEOUT_SECONDS = 2.0
SNAPSHOT_WRITE_ATTEMPTS = 3

# ---------------------------------------------------------------------------
# Per-tenant files (relative to <data_dir>/<tenant_id>/)
# ---------------------------------------------------------------------------
CONFIG_FILENAME = "timer_config.json"
STATE_FILENAME = "timer_state.json"
EMERGENCY_LOG_FILENAME = "emergency_events.jsonl"
