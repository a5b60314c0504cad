"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# The app lifespan validates it on startup and the auth dependency signs
# against it.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402

from subathon.engine.models import TimerConfig  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def run_async(coro):
    """Run an async coroutine in a fresh event loop (no pytest-asyncio)."""
    return asyncio.run(coro)


class FakeClock:
    """Manually advanced UTC clock for deterministic projections."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "Data"
    path.mkdir()
    return path


def make_config(**overrides) -> TimerConfig:
    """Config used across tests: 10 min base, block-mode bits at 100/60s."""
    values = dict(
        start_time=T0,
        initial_start_time=T0,
        min_duration_seconds=600,
        max_duration_seconds=0,
        seconds_per_sub_tier1=60,
        seconds_per_sub_tier2=120,
        seconds_per_sub_tier3=180,
        seconds_per_prime_sub=90,
        seconds_per_bit=0,
        seconds_per_bits=60,
        min_bits_to_trigger=100,
    )
    values.update(overrides)
    return TimerConfig(**values)
