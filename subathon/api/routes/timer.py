"""
subathon.api.routes.timer — Producer endpoints (JWT‑protected)
===============================================================

Every endpoint here only *queues* work on the caller's accumulator and
answers ``202 Accepted``; the change becomes visible once the consumer
task has applied it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from subathon.api.deps import get_tenant_accumulator
from subathon.engine.models import TimerConfig
from subathon.services.accumulator import Accumulator, AccumulatorClosedError

router = APIRouter(prefix="/timer", tags=["timer"])

_QUEUED = {"status": "queued"}


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SubIn(BaseModel):
    user_display: str
    tier: str = "1000"
    is_gift: bool = False
    count: int = Field(default=1, ge=1)
    message_id: str | None = None


class BitsIn(BaseModel):
    user_display: str
    bits: int = Field(ge=0)
    count: int = Field(default=1, ge=1)
    message_id: str | None = None


class ManualIn(BaseModel):
    seconds: int
    reason: str = ""


class ConfigIn(BaseModel):
    start_time: datetime
    initial_start_time: datetime | None = None  # defaults to start_time
    min_duration_seconds: int = Field(default=86_400, ge=0)
    max_duration_seconds: int = Field(default=7_776_000, ge=0)
    seconds_per_sub_tier1: int = Field(default=60, ge=0)
    seconds_per_sub_tier2: int = Field(default=120, ge=0)
    seconds_per_sub_tier3: int = Field(default=180, ge=0)
    seconds_per_prime_sub: int = Field(default=60, ge=0)
    seconds_per_bit: int = Field(default=0, ge=0)
    seconds_per_bits: int = Field(default=60, ge=0)
    min_bits_to_trigger: int = Field(default=1_000, ge=0)
    background_color: str = "#1e1e1e"
    text_color: str = "#00e676"

    @field_validator("start_time", "initial_start_time")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def to_timer_config(self) -> TimerConfig:
        data = self.model_dump()
        if data["initial_start_time"] is None:
            data["initial_start_time"] = data["start_time"]
        return TimerConfig(**data)


def _closed(exc: AccumulatorClosedError) -> HTTPException:
    return HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
@router.post("/subs", status_code=status.HTTP_202_ACCEPTED)
async def queue_sub(body: SubIn, acc: Accumulator = Depends(get_tenant_accumulator)):
    queued = await acc.enqueue_sub(
        body.user_display,
        body.tier,
        is_gift=body.is_gift,
        count=body.count,
        message_id=body.message_id,
    )
    return _QUEUED if queued else {"status": "deferred"}


@router.post("/bits", status_code=status.HTTP_202_ACCEPTED)
async def queue_bits(body: BitsIn, acc: Accumulator = Depends(get_tenant_accumulator)):
    queued = await acc.enqueue_bits(
        body.user_display, body.bits, count=body.count, message_id=body.message_id
    )
    return _QUEUED if queued else {"status": "deferred"}


@router.post("/manual", status_code=status.HTTP_202_ACCEPTED)
async def add_manual(body: ManualIn, acc: Accumulator = Depends(get_tenant_accumulator)):
    queued = await acc.add_manual_time(body.seconds, body.reason)
    return _QUEUED if queued else {"status": "deferred"}


@router.delete("/events/{event_id}", status_code=status.HTTP_202_ACCEPTED)
async def delete_event(event_id: str, acc: Accumulator = Depends(get_tenant_accumulator)):
    try:
        await acc.delete_event(event_id)
    except AccumulatorClosedError as exc:
        raise _closed(exc)
    return _QUEUED


# ---------------------------------------------------------------------------
# Config + lifecycle
# ---------------------------------------------------------------------------
@router.put("/config", status_code=status.HTTP_202_ACCEPTED)
async def update_config(body: ConfigIn, acc: Accumulator = Depends(get_tenant_accumulator)):
    try:
        await acc.update_config(body.to_timer_config())
    except AccumulatorClosedError as exc:
        raise _closed(exc)
    return _QUEUED


@router.post("/{action}", status_code=status.HTTP_202_ACCEPTED)
async def lifecycle(
    action: Literal["start", "pause", "stop", "reset"],
    acc: Accumulator = Depends(get_tenant_accumulator),
):
    try:
        await getattr(acc, action)()
    except AccumulatorClosedError as exc:
        raise _closed(exc)
    return _QUEUED
