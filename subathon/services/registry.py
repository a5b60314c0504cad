"""
subathon.services.registry — tenant_id → Accumulator
=====================================================

One :class:`Accumulator` per active tenant, created lazily on first
access and started immediately.

:meth:`TenantRegistry.get` must be called from the event loop thread.
Lookup and insert happen without an ``await`` in between, so concurrent
first accesses from different tasks always receive the same instance.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from subathon.config import SubathonConfig
from subathon.constants import (
    DEFAULT_ENQUEUE_TIMEOUT_SECONDS,
    DEFAULT_RECOVERY_INTERVAL_SECONDS,
)
from subathon.services.accumulator import Accumulator
from subathon.services.store import validate_tenant_id

logger = logging.getLogger(__name__)


class TenantRegistry:
    """Owns every live accumulator of this process."""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        recovery_interval: float = DEFAULT_RECOVERY_INTERVAL_SECONDS,
        enqueue_timeout: float = DEFAULT_ENQUEUE_TIMEOUT_SECONDS,
    ) -> None:
        self.data_dir = Path(data_dir)
        self._recovery_interval = recovery_interval
        self._enqueue_timeout = enqueue_timeout
        self._accumulators: dict[str, Accumulator] = {}

    @classmethod
    def from_config(cls, cfg: SubathonConfig) -> TenantRegistry:
        return cls(
            cfg.data_dir,
            recovery_interval=cfg.recovery_interval_seconds,
            enqueue_timeout=cfg.enqueue_timeout_seconds,
        )

    def get(self, tenant_id: str) -> Accumulator:
        """Return the tenant's accumulator, creating and starting it if absent."""
        acc = self._accumulators.get(tenant_id)
        if acc is not None:
            return acc

        validate_tenant_id(tenant_id)
        acc = Accumulator(
            tenant_id,
            self.data_dir,
            recovery_interval=self._recovery_interval,
            enqueue_timeout=self._enqueue_timeout,
        )
        self._accumulators[tenant_id] = acc
        acc.start_background()
        logger.info("Accumulator created for tenant %s", tenant_id)
        return acc

    def lookup(self, tenant_id: str) -> Accumulator | None:
        """Like :meth:`get`, but never creates a tenant that has no data yet.

        Returns ``None`` for an unknown tenant, so anonymous readers cannot
        grow the registry or the data directory.
        """
        acc = self._accumulators.get(tenant_id)
        if acc is not None:
            return acc
        validate_tenant_id(tenant_id)
        if not (self.data_dir / tenant_id).is_dir():
            return None
        return self.get(tenant_id)

    def tenants(self) -> list[str]:
        return list(self._accumulators)

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._accumulators

    async def remove(self, tenant_id: str) -> bool:
        """Drain and close the tenant's accumulator.  False if not active.

        The closing instance stays registered until its final snapshot is
        on disk.  Callers that reach it meanwhile have their events spilled
        to the emergency log, which the next instance replays on startup.
        """
        acc = self._accumulators.get(tenant_id)
        if acc is None:
            return False
        await acc.close()
        if self._accumulators.get(tenant_id) is acc:
            del self._accumulators[tenant_id]
        logger.info("Accumulator removed for tenant %s", tenant_id)
        return True

    async def close_all(self) -> None:
        """Close every accumulator (application shutdown)."""
        accs = list(self._accumulators.values())
        results = await asyncio.gather(
            *(acc.close() for acc in accs), return_exceptions=True
        )
        self._accumulators.clear()
        for acc, result in zip(accs, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Accumulator for tenant %s failed to close cleanly",
                    acc.tenant_id, exc_info=result,
                )
