"""pulsemap — Pulse Lifecycle & Realtime Aggregation Engine.

This is the application entry point.  It wires the PulseEngine (store,
reconciler, sync, ledgers, clusters, playback, submission) to the REST
and WebSocket endpoints and runs the sync tasks for the app's lifetime.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pulsemap.api.pulses import create_pulses_router
from pulsemap.api.radio import create_radio_router
from pulsemap.api.ws_feed import FeedManager, create_feed_router
from pulsemap.config import settings
from pulsemap.engine import PulseEngine, build_engine

# ── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(engine: PulseEngine | None = None, run_sync: bool = True) -> FastAPI:
    """Build the FastAPI app around *engine* (built from settings if omitted)."""
    engine = engine or build_engine(settings)
    feed = FeedManager(engine.store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_sync:
            await engine.start()
        try:
            yield
        finally:
            feed.close()
            if run_sync:
                await engine.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Pulse lifecycle, realtime reconciliation, clustering and radio mode",
        version="0.1.0",
        debug=engine.settings.debug,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # ── Routes ───────────────────────────────────────────────────────────────

    app.include_router(create_pulses_router(engine))
    app.include_router(create_radio_router(engine))
    app.include_router(create_feed_router(feed))

    # ── Health ───────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict:
        visible = await engine.store.snapshot()
        return {
            "status": "ok",
            "backend": engine.settings.backend,
            "visible_pulses": len(visible),
            "held_pulses": await engine.store.count(),
            "quick_reports": sum(1 for p in visible if p.is_quick_report),
            "feed_connected": engine.sync.feed_connected,
            "last_refresh_at": engine.sync.last_refresh_at,
            "tombstones": engine.reconciler.tombstone_count,
            "reconciler": engine.reconciler.stats.to_dict(),
            "feed_clients": feed.client_count,
            "playback": engine.playback.snapshot().to_dict(),
        }

    return app


app = create_app()
