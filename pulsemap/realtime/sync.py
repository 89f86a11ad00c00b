"""Sync service — runs the two producers that keep the PulseStore current.

    backend.subscribe() ──► consume loop ──┐
                                           ├──► RealtimeReconciler ──► PulseStore
    every N seconds: select_since() ───────┘

The periodic refresh is the correctness backstop: it recovers whatever the
feed missed while disconnected.  A dropped feed reconnects after a delay
and immediately triggers a catch-up refresh.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from pulsemap.adapters.base import PulseBackend
from pulsemap.domain.errors import NetworkFailure
from pulsemap.domain.lifecycle import LifecyclePolicy
from pulsemap.foundation.clock import utc_now
from pulsemap.realtime.reconciler import RealtimeReconciler

logger = logging.getLogger(__name__)


class SyncService:
    """Owns the realtime-consumer and refresh tasks.

    Args:
        backend: Remote pulses collection.
        reconciler: Serialized write channel into the store.
        policy: Used to compute how far back a full refresh must reach.
        refresh_interval: Seconds between full refreshes.
        reconnect_delay: Seconds to wait before resubscribing after a drop.
    """

    def __init__(
        self,
        backend: PulseBackend,
        reconciler: RealtimeReconciler,
        policy: LifecyclePolicy,
        refresh_interval: float = 60.0,
        reconnect_delay: float = 5.0,
    ) -> None:
        if refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        self._backend = backend
        self._reconciler = reconciler
        self._policy = policy
        self._refresh_interval = refresh_interval
        self._reconnect_delay = reconnect_delay
        self._tasks: list[asyncio.Task] = []
        self.last_refresh_at: datetime | None = None
        self.feed_connected = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._refresh_loop(), name="pulse-refresh"),
            asyncio.create_task(self._feed_loop(), name="pulse-feed"),
        ]
        logger.info("Sync started (refresh every %.0fs)", self._refresh_interval)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.feed_connected = False
        logger.info("Sync stopped")

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ── Producers ────────────────────────────────────────────────────────

    async def refresh_once(self) -> int | None:
        """Run one full refresh.  Returns the retained count, None on failure."""
        now = utc_now()
        threshold = now - self._policy.longest_ttl
        mark = self._reconciler.write_mark()
        try:
            rows = await self._backend.select_since(threshold)
        except NetworkFailure as exc:
            logger.warning("Full refresh failed: %s", exc)
            return None
        retained = await self._reconciler.apply_refresh(rows, now, since=mark)
        self.last_refresh_at = now
        return retained

    async def consume_feed(self) -> None:
        """Apply events from one subscription until it ends or drops."""
        self.feed_connected = True
        try:
            async for event in self._backend.subscribe():
                await self._reconciler.apply(event)
        finally:
            self.feed_connected = False

    async def _refresh_loop(self) -> None:
        while True:
            await self._guarded_refresh()
            await asyncio.sleep(self._refresh_interval)

    async def _feed_loop(self) -> None:
        while True:
            try:
                await self.consume_feed()
                logger.info("Realtime feed ended, resubscribing")
            except NetworkFailure as exc:
                logger.warning("Realtime feed dropped: %s", exc)
            except Exception as exc:
                logger.error("Realtime feed crashed: %s", exc, exc_info=True)
            await asyncio.sleep(self._reconnect_delay)
            await self._guarded_refresh()

    async def _guarded_refresh(self) -> None:
        try:
            await self.refresh_once()
        except Exception as exc:
            logger.error("Full refresh crashed: %s", exc, exc_info=True)
