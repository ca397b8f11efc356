"""
App pool recycling.

RecycleOrchestrator owns the only host-mutating operation in the service.
It does not retry and does not deduplicate; RecycleDebouncer is the policy
the heartbeat pipeline puts in front of it.
"""

import asyncio
import time
import structlog
from typing import Callable, Dict, Optional

from . import metrics
from .audit import AuditLog
from .inventory import InventoryProvider

logger = structlog.get_logger()


class RecycleOrchestrator:
    """Recycles IIS app pools through the inventory provider."""

    def __init__(self, provider: InventoryProvider, audit: Optional[AuditLog] = None):
        self.provider = provider
        self.audit = audit
        self.logger = logger.bind(component="recycle_orchestrator")

    async def recycle(self, app_pool_name: str) -> bool:
        """
        Recycle an app pool.

        The current pool state is logged but never gates the recycle. Unknown
        pools and host failures are reported as False, never raised.

        Args:
            app_pool_name: Name of the app pool to recycle

        Returns:
            True if the recycle was issued and committed
        """
        self.logger.info("app_pool_recycle_attempt", app_pool=app_pool_name)
        start = time.monotonic()

        try:
            async with self.provider.open_session() as session:
                pool = await session.get_app_pool(app_pool_name)
                if pool is None:
                    self.logger.error("app_pool_not_found", app_pool=app_pool_name)
                    self._audit("app_pool_not_found", "error", app_pool=app_pool_name)
                    metrics.record_recycle("not_found")
                    return False

                self.logger.info(
                    "app_pool_current_state",
                    app_pool=app_pool_name,
                    state=pool.state
                )

                await session.recycle(app_pool_name)
                await session.commit()

        except Exception as e:
            duration = time.monotonic() - start
            self.logger.error(
                "app_pool_recycle_failed",
                app_pool=app_pool_name,
                error=str(e),
                exc_info=True
            )
            self._audit("app_pool_recycle_failed", "error", app_pool=app_pool_name, error=str(e))
            metrics.record_recycle("failure", duration)
            return False

        duration = time.monotonic() - start
        self.logger.info(
            "app_pool_recycled",
            app_pool=app_pool_name,
            previous_state=pool.state,
            duration_seconds=round(duration, 3)
        )
        self._audit("app_pool_recycled", "info", app_pool=app_pool_name, previous_state=pool.state)
        metrics.record_recycle("success", duration)
        return True

    def _audit(self, event: str, level: str, **fields):
        if self.audit is not None:
            self.audit.record(event, level=level, **fields)


class RecycleDebouncer:
    """
    Suppresses overlapping or back-to-back recycles of the same app pool.

    A pool is refused while a recycle for it is in flight, or when its last
    successful recycle started less than cooldown_seconds ago. A failed
    recycle does not start a cooldown. A cooldown of 0 only prevents overlap.
    """

    def __init__(self, cooldown_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_trigger: Dict[str, float] = {}
        # pool name -> start time of the recycle in flight
        self._in_flight: Dict[str, float] = {}

    async def try_acquire(self, app_pool_name: str) -> bool:
        """Claim the pool for a recycle. False means skip it."""
        async with self._lock:
            if app_pool_name in self._in_flight:
                return False

            now = self._clock()
            last = self._last_trigger.get(app_pool_name)
            if last is not None and now - last < self.cooldown_seconds:
                return False

            self._in_flight[app_pool_name] = now
            return True

    async def release(self, app_pool_name: str, succeeded: bool = True):
        """Hand the pool back; only a successful recycle starts the cooldown."""
        async with self._lock:
            started = self._in_flight.pop(app_pool_name, None)
            if succeeded and started is not None:
                self._last_trigger[app_pool_name] = started

    def seconds_until_ready(self, app_pool_name: str) -> float:
        last = self._last_trigger.get(app_pool_name)
        if last is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - last))
