"""
subathon.api.routes.public — Read-only overlay endpoints
=========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from subathon.api.deps import get_registry, resolve_existing_accumulator
from subathon.services.registry import TenantRegistry

router = APIRouter(prefix="/timers", tags=["public"])


# ---------------------------------------------------------------------------
# GET /timers/{tenant_id}
# ---------------------------------------------------------------------------
@router.get("/{tenant_id}")
async def get_remaining(
    tenant_id: str, registry: TenantRegistry = Depends(get_registry)
):
    """Remaining time for the overlay, polled about once a second."""
    acc = resolve_existing_accumulator(registry, tenant_id)
    remaining = acc.remaining_time()
    return {
        "tenant_id": acc.tenant_id,
        "remaining_seconds": int(remaining.total_seconds()),
        "is_running": acc.is_running(),
        "status": acc.status.value,
    }


@router.get("/{tenant_id}/state")
async def get_state(tenant_id: str, registry: TenantRegistry = Depends(get_registry)):
    acc = resolve_existing_accumulator(registry, tenant_id)
    return acc.state.to_dict()


@router.get("/{tenant_id}/config")
async def get_config(tenant_id: str, registry: TenantRegistry = Depends(get_registry)):
    acc = resolve_existing_accumulator(registry, tenant_id)
    return acc.config.to_dict()
