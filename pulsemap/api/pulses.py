"""REST endpoints over the pulse engine.

Paths:
    GET    /api/pulses                         visible pulses, newest first
    POST   /api/pulses                         upload a clip (raw body) and drop it
    GET    /api/pulses/{id}                    shared-link lookup
    DELETE /api/pulses/{id}                    delete one of this device's pulses
    GET    /api/pulses/{id}/location           street name near a pulse
    POST   /api/pulses/{id}/respect            one respect per device
    POST   /api/pulses/{id}/confirm            confirm a quick report
    POST   /api/pulses/{id}/deny               deny a quick report (quorum deletes)
    POST   /api/reports                        drop a quick report
    GET    /api/clusters                       clusters + standalone markers for a viewport
    GET    /api/clusters/{cluster_id}/leaves   ranked leaves of one cluster

Every read goes through the store snapshot, so expired pulses never leave
this module.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from pydantic import BaseModel

from pulsemap.capture.session import DEFAULT_CONTENT_TYPE, CapturedClip
from pulsemap.core.clusters import Bounds, reply_links
from pulsemap.core.votes import VoteResult
from pulsemap.domain.enums import PulseCategory, VoteOutcome
from pulsemap.domain.errors import (
    NetworkFailure,
    OwnershipError,
    PermissionDenied,
    SubmissionInProgress,
)
from pulsemap.domain.pulse import GeoPoint
from pulsemap.engine import PulseEngine
from pulsemap.foundation.clock import utc_now

logger = logging.getLogger(__name__)


class QuickReportRequest(BaseModel):
    category: PulseCategory
    lat: Optional[float] = None
    lng: Optional[float] = None


def _position(lat: float | None, lng: float | None) -> GeoPoint | None:
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise HTTPException(status_code=422, detail="lat and lng must be given together")
    return GeoPoint(lat=lat, lng=lng)


def _error_status(exc: Exception) -> HTTPException:
    if isinstance(exc, (PermissionDenied, OwnershipError)):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, SubmissionInProgress):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NetworkFailure):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _vote_response(result: VoteResult) -> dict[str, Any]:
    if result.outcome == VoteOutcome.UNKNOWN_PULSE:
        raise HTTPException(status_code=404, detail=f"Pulse {result.pulse_id} not found")
    return result.model_dump(mode="json")


def create_pulses_router(engine: PulseEngine) -> APIRouter:
    """Factory that wires the REST endpoints to one engine."""

    router = APIRouter(prefix="/api", tags=["pulses"])

    # ── Pulses ────────────────────────────────────────────────────────

    @router.get("/pulses")
    async def list_pulses() -> dict[str, Any]:
        now = utc_now()
        pulses = await engine.store.snapshot(now)
        return {
            "pulses": [
                {**p.summary(), "life_remaining": round(engine.policy.life_remaining(p, now), 4)}
                for p in pulses
            ],
            "count": len(pulses),
        }

    @router.post("/pulses", status_code=201)
    async def create_pulse(
        request: Request,
        energy: float = Query(..., ge=0.0, le=1.0),
        category: PulseCategory = PulseCategory.CHAT,
        parent_id: Optional[str] = None,
        lat: Optional[float] = Query(None, ge=-90.0, le=90.0),
        lng: Optional[float] = Query(None, ge=-180.0, le=180.0),
    ) -> dict[str, Any]:
        audio = await request.body()
        if not audio:
            raise HTTPException(status_code=400, detail="Empty audio body")
        clip = CapturedClip(
            audio=audio,
            content_type=request.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
            peak_energy=energy,
        )
        try:
            pulse = await engine.submitter.submit_voice(
                clip, category=category, parent_id=parent_id, position=_position(lat, lng),
            )
        except (ValueError, NetworkFailure, SubmissionInProgress) as exc:
            raise _error_status(exc) from exc
        return pulse.summary()

    @router.get("/pulses/{pulse_id}")
    async def get_pulse(pulse_id: str) -> dict[str, Any]:
        pulse = await engine.store.get_visible(pulse_id)
        if pulse is None:
            raise HTTPException(status_code=404, detail=f"Pulse {pulse_id} not found")
        return {
            **pulse.summary(),
            "life_remaining": round(engine.policy.life_remaining(pulse, utc_now()), 4),
            "owned": await engine.submitter.owns(pulse_id),
        }

    @router.delete("/pulses/{pulse_id}", status_code=204)
    async def delete_pulse(pulse_id: str) -> Response:
        try:
            await engine.submitter.delete_own(pulse_id)
        except (OwnershipError, NetworkFailure) as exc:
            raise _error_status(exc) from exc
        return Response(status_code=204)

    @router.get("/pulses/{pulse_id}/location")
    async def pulse_location(pulse_id: str) -> dict[str, Any]:
        pulse = await engine.store.get_visible(pulse_id)
        if pulse is None:
            raise HTTPException(status_code=404, detail=f"Pulse {pulse_id} not found")
        return {"pulse_id": pulse_id, "street": await engine.submitter.describe_location(pulse)}

    # ── Votes ─────────────────────────────────────────────────────────

    @router.post("/pulses/{pulse_id}/respect")
    async def respect_pulse(pulse_id: str) -> dict[str, Any]:
        return _vote_response(await engine.votes.give_respect(pulse_id, engine.device))

    @router.post("/pulses/{pulse_id}/confirm")
    async def confirm_report(pulse_id: str) -> dict[str, Any]:
        return _vote_response(await engine.reports.confirm_report(pulse_id, engine.device))

    @router.post("/pulses/{pulse_id}/deny")
    async def deny_report(pulse_id: str) -> dict[str, Any]:
        try:
            result = await engine.reports.deny_report(pulse_id, engine.device)
        except ValueError as exc:
            raise _error_status(exc) from exc
        return _vote_response(result)

    # ── Quick reports ─────────────────────────────────────────────────

    @router.post("/reports", status_code=201)
    async def create_report(body: QuickReportRequest) -> dict[str, Any]:
        try:
            pulse = await engine.submitter.submit_quick_report(
                body.category, position=_position(body.lat, body.lng),
            )
        except (ValueError, PermissionDenied, NetworkFailure, SubmissionInProgress) as exc:
            raise _error_status(exc) from exc
        return pulse.summary()

    # ── Clusters ──────────────────────────────────────────────────────

    @router.get("/clusters")
    async def clusters(
        west: float = Query(..., ge=-180.0, le=180.0),
        south: float = Query(..., ge=-90.0, le=90.0),
        east: float = Query(..., ge=-180.0, le=180.0),
        north: float = Query(..., ge=-90.0, le=90.0),
        zoom: float = Query(..., ge=0.0, le=24.0),
    ) -> dict[str, Any]:
        pulses = await engine.store.snapshot()
        result = engine.clusters.cluster(pulses, Bounds(west=west, south=south, east=east, north=north), zoom)
        return {
            "clusters": [node.summary() for node in result.clusters],
            "markers": [p.summary() for p in result.markers],
            "reply_links": [list(link) for link in reply_links(pulses)],
        }

    @router.get("/clusters/{cluster_id}/leaves")
    async def cluster_leaves(
        cluster_id: str,
        west: float = Query(..., ge=-180.0, le=180.0),
        south: float = Query(..., ge=-90.0, le=90.0),
        east: float = Query(..., ge=-180.0, le=180.0),
        north: float = Query(..., ge=-90.0, le=90.0),
        zoom: float = Query(..., ge=0.0, le=24.0),
        ranked: bool = True,
    ) -> dict[str, Any]:
        pulses = await engine.store.snapshot()
        result = engine.clusters.cluster(pulses, Bounds(west=west, south=south, east=east, north=north), zoom)
        node = result.find(cluster_id)
        if node is None:
            raise HTTPException(status_code=404, detail=f"Cluster {cluster_id} not found")
        leaves = engine.clusters.expand(node, ranked=ranked)
        return {"cluster_id": cluster_id, "leaves": [p.summary() for p in leaves]}

    return router
