"""Pulse feed WebSocket — pushes the visible pulse set to connected map clients.

Architecture:
    realtime feed / refresh / votes  →  PulseStore
                                           ↓  (store listener)
    map clients  ←  /ws/pulses        ←  FeedManager broadcasts snapshot

The FeedManager subscribes to the store's change notifications and
schedules a broadcast in the background so the writer is never blocked by
slow clients.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pulsemap.foundation.clock import utc_now
from pulsemap.store.pulse_store import PulseStore, StoreChange

logger = logging.getLogger(__name__)


class FeedManager:
    """Tracks connected map clients and broadcasts store snapshots."""

    def __init__(self, store: PulseStore) -> None:
        self._store = store
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._pending: asyncio.Task | None = None
        self._latest: StoreChange | None = None
        self._unsubscribe = store.subscribe(self.on_store_changed)

    # ── Client management ────────────────────────────────────────────

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)
        logger.info("Feed client connected (%d total)", len(self._clients))
        await ws.send_text(json.dumps(await self.build_payload(None), default=str))

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)
        logger.info("Feed client disconnected (%d remaining)", len(self._clients))

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def close(self) -> None:
        self._unsubscribe()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    # ── Change handling ──────────────────────────────────────────────

    def on_store_changed(self, change: StoreChange) -> None:
        """Store listener.  Coalesces bursts into one pending broadcast."""
        if not self._clients:
            return
        self._latest = change
        if self._pending is not None and not self._pending.done():
            return
        self._pending = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._latest is not None:
            change, self._latest = self._latest, None
            try:
                payload = await self.build_payload(change)
                await self._broadcast(payload)
            except Exception as exc:
                logger.error("Feed broadcast failed: %s", exc, exc_info=True)

    async def build_payload(self, change: StoreChange | None) -> dict[str, Any]:
        now = utc_now()
        pulses = await self._store.snapshot(now)
        policy = self._store.policy
        return {
            "type": "pulses",
            "change": change.to_dict() if change else None,
            "generated_at": now.isoformat(),
            "pulses": [
                {**p.summary(), "life_remaining": round(policy.life_remaining(p, now), 4)}
                for p in pulses
            ],
        }

    async def _broadcast(self, payload: dict[str, Any]) -> None:
        message = json.dumps(payload, default=str)
        dead: set[WebSocket] = set()

        async with self._lock:
            clients = set(self._clients)

        for ws in clients:
            try:
                await ws.send_text(message)
            except Exception:
                dead.add(ws)

        if dead:
            async with self._lock:
                self._clients -= dead
            logger.info("Removed %d dead feed client(s)", len(dead))


# ── WebSocket endpoint ───────────────────────────────────────────────────


def create_feed_router(manager: FeedManager) -> APIRouter:
    """Factory that creates the pulse feed WebSocket endpoint."""

    router = APIRouter()

    @router.websocket("/ws/pulses")
    async def pulse_feed(websocket: WebSocket) -> None:
        await manager.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                if data.strip().lower() == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            await manager.disconnect(websocket)

    return router
