"""Radio mode endpoints — the client plays clips and reports completions.

Paths:
    GET  /api/radio                  current playback state
    POST /api/radio/start            start radio mode over a list of pulse ids
    POST /api/radio/complete         the current clip ended naturally
    POST /api/radio/stop             cancel playback
    POST /api/radio/select/{id}      play one pulse as a one-off
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from pulsemap.core.playback import PlaybackSnapshot
from pulsemap.engine import PulseEngine

logger = logging.getLogger(__name__)


class RadioStartRequest(BaseModel):
    pulse_ids: list[str] = Field(..., min_length=1, description="Playlist order, e.g. ranked cluster leaves")


class CompletionRequest(BaseModel):
    generation: Optional[int] = None


def _state(snap: PlaybackSnapshot) -> dict[str, Any]:
    body = snap.to_dict()
    body["generation"] = snap.generation
    body["audio_url"] = snap.pulse.audio_url if snap.pulse else None
    return body


def create_radio_router(engine: PulseEngine) -> APIRouter:
    """Factory that wires radio mode to the engine's playback controller."""

    router = APIRouter(prefix="/api/radio", tags=["radio"])
    controller = engine.playback

    @router.get("")
    async def radio_state() -> dict[str, Any]:
        return _state(controller.snapshot())

    @router.post("/start")
    async def start_radio(body: RadioStartRequest) -> dict[str, Any]:
        visible = {p.id: p for p in await engine.store.snapshot()}
        ordered = [visible[pid] for pid in body.pulse_ids if pid in visible]
        try:
            snap = controller.start(ordered)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("Radio started with %d track(s)", len(controller.queue))
        return _state(snap)

    @router.post("/complete")
    async def complete_track(body: CompletionRequest) -> dict[str, Any]:
        return _state(controller.complete(body.generation))

    @router.post("/stop")
    async def stop_radio() -> dict[str, Any]:
        return _state(controller.stop())

    @router.post("/select/{pulse_id}")
    async def select_pulse(pulse_id: str) -> dict[str, Any]:
        pulse = await engine.store.get_visible(pulse_id)
        if pulse is None:
            raise HTTPException(status_code=404, detail=f"Pulse {pulse_id} not found")
        try:
            return _state(controller.select(pulse))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    return router
