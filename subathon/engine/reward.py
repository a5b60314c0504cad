"""
subathon.engine.reward — Reward Calculation
============================================

Pure calculation: (event, config) → seconds to add + log description.
No queue, no disk, no clock.

Rules:
  Sub      → tier rate × count, unknown tier falls back to tier 1
  Gift sub → tier rate × count, unknown tier (and Prime) earns nothing
  Bits     → linear (seconds_per_bit) or block (seconds_per_bits per full
             min_bits_to_trigger block), nothing below the threshold
  Manual   → the signed seconds verbatim
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from subathon.constants import TIER_1, TIER_2, TIER_3, TIER_PRIME
from subathon.engine.events import (
    BitsEvent,
    GiftSubEvent,
    ManualEvent,
    SubEvent,
    TimerEvent,
)
from subathon.engine.models import TimerConfig

logger = logging.getLogger(__name__)

__all__ = [
    "RewardResult",
    "bits_seconds",
    "calculate_reward",
    "describe_event",
    "tier_rate",
]


@dataclass(frozen=True, slots=True)
class RewardResult:
    """Output of :func:`calculate_reward`."""

    seconds: int = 0
    description: str = ""


# ---------------------------------------------------------------------------
# Rates
# ---------------------------------------------------------------------------
def tier_rate(tier: str, config: TimerConfig, *, gift: bool = False) -> int:
    """Seconds per single subscription of *tier*.

    Gifted subs only know the three paid tiers; an ordinary sub with an
    unrecognized tier is paid at the tier-1 rate.
    """
    rates = {
        TIER_1: config.seconds_per_sub_tier1,
        TIER_2: config.seconds_per_sub_tier2,
        TIER_3: config.seconds_per_sub_tier3,
    }
    if not gift:
        rates[TIER_PRIME] = config.seconds_per_prime_sub

    rate = rates.get(tier)
    if rate is not None:
        return rate
    if gift:
        logger.debug("Gift sub with unsupported tier %r earns nothing", tier)
        return 0
    return config.seconds_per_sub_tier1


def bits_seconds(total_bits: int, config: TimerConfig) -> int:
    """Seconds earned by *total_bits* under the configured bits mode."""
    if total_bits < config.min_bits_to_trigger:
        return 0
    if config.seconds_per_bit > 0:
        return total_bits * config.seconds_per_bit
    if config.seconds_per_bits > 0 and config.min_bits_to_trigger > 0:
        return (total_bits // config.min_bits_to_trigger) * config.seconds_per_bits
    return 0


# ---------------------------------------------------------------------------
# Descriptions
# ---------------------------------------------------------------------------
def describe_event(event: TimerEvent) -> str:
    if isinstance(event, ManualEvent):
        return event.reason
    if isinstance(event, BitsEvent):
        if event.count > 1:
            total = event.bits * event.count
            return (
                f"{event.count}x Cheer {event.bits} bits ({total} total) "
                f"by {event.user_display}"
            )
        return f"Cheer {event.bits} bits by {event.user_display}"
    if isinstance(event, GiftSubEvent):
        label = f"Gift Sub ({event.tier}) to {event.user_display}"
    else:
        label = f"Sub ({event.tier}) by {event.user_display}"
    return f"{event.count}x {label}" if event.count > 1 else label


# ---------------------------------------------------------------------------
# Full calculation
# ---------------------------------------------------------------------------
def calculate_reward(event: TimerEvent, config: TimerConfig) -> RewardResult:
    """Compute the reward for *event* under *config*.

    This is a PURE function — deterministic for a given (event, config).
    """
    if isinstance(event, ManualEvent):
        seconds = event.seconds
    elif isinstance(event, BitsEvent):
        seconds = bits_seconds(event.bits * event.count, config)
    elif isinstance(event, GiftSubEvent):
        seconds = tier_rate(event.tier, config, gift=True) * event.count
    elif isinstance(event, SubEvent):
        seconds = tier_rate(event.tier, config) * event.count
    else:
        raise TypeError(f"Not a TimerEvent: {event!r}")

    return RewardResult(seconds=seconds, description=describe_event(event))
