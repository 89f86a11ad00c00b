"""Cluster engine — groups nearby pulses into single map markers.

Clustering is a pure function of (visible pulses, viewport bounds, zoom).
Pulses are projected to Web Mercator pixel space at the requested zoom;
any pulses within ``radius_px`` of a seed pulse join its cluster.  Seeds
are taken in input order (the store hands out newest first), so the same
input always yields the same clusters.  Nothing is cached: every viewport
or zoom change recomputes from scratch, which is cheap at a few hundred
points.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from pydantic import BaseModel, Field

from pulsemap.domain.pulse import Pulse

MAX_MERCATOR_LAT = 85.05112878


# ── Value types ──────────────────────────────────────────────────────────────

class Bounds(BaseModel):
    """Viewport bounds in degrees.  ``west > east`` spans the antimeridian."""

    west: float = Field(..., ge=-180.0, le=180.0)
    south: float = Field(..., ge=-90.0, le=90.0)
    east: float = Field(..., ge=-180.0, le=180.0)
    north: float = Field(..., ge=-90.0, le=90.0)

    model_config = {"frozen": True}

    def contains(self, lat: float, lng: float) -> bool:
        if not (self.south <= lat <= self.north):
            return False
        if self.west <= self.east:
            return self.west <= lng <= self.east
        return lng >= self.west or lng <= self.east


class ClusterNode(BaseModel):
    """A group of at least two pulses drawn as one marker with a count."""

    cluster_id: str
    point_count: int
    lat: float
    lng: float
    leaves: tuple[Pulse, ...]

    model_config = {"frozen": True}

    def summary(self) -> dict:
        return {
            "cluster_id": self.cluster_id,
            "point_count": self.point_count,
            "lat": self.lat,
            "lng": self.lng,
        }


class ClusterResult(BaseModel):
    """Clusters plus the pulses that stand alone at this zoom."""

    clusters: list[ClusterNode] = Field(default_factory=list)
    markers: list[Pulse] = Field(default_factory=list)

    model_config = {"frozen": True}

    def find(self, cluster_id: str) -> ClusterNode | None:
        for node in self.clusters:
            if node.cluster_id == cluster_id:
                return node
        return None


# ── Engine ───────────────────────────────────────────────────────────────────

class ClusterEngine:
    """Screen-space clustering over Web Mercator.

    Args:
        radius_px: Pixel distance under which pulses are merged.
        tile_size: Pixel width of the world at zoom 0.
        max_zoom: Above this zoom every pulse is drawn on its own.
        min_points: Smallest group that forms a cluster.
    """

    def __init__(
        self,
        radius_px: float = 60.0,
        tile_size: int = 256,
        max_zoom: float = 16.0,
        min_points: int = 2,
    ) -> None:
        if radius_px <= 0:
            raise ValueError("radius_px must be positive")
        if min_points < 2:
            raise ValueError("min_points must be at least 2")
        self._radius = radius_px
        self._tile_size = tile_size
        self._max_zoom = max_zoom
        self._min_points = min_points

    def project(self, lat: float, lng: float, zoom: float) -> tuple[float, float]:
        """Web Mercator pixel coordinates of a point at *zoom*."""
        world = self._tile_size * (2.0 ** zoom)
        lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, lat))
        sin_lat = math.sin(math.radians(lat))
        x = (lng + 180.0) / 360.0 * world
        y = (0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)) * world
        return x, y

    def cluster(self, pulses: Iterable[Pulse], bounds: Bounds, zoom: float) -> ClusterResult:
        """Group the pulses inside *bounds* for display at *zoom*."""
        in_view = [p for p in pulses if bounds.contains(p.lat, p.lng)]
        if zoom > self._max_zoom:
            return ClusterResult(markers=in_view)

        points = [self.project(p.lat, p.lng, zoom) for p in in_view]
        assigned = [False] * len(in_view)
        clusters: list[ClusterNode] = []
        markers: list[Pulse] = []

        for i, seed in enumerate(in_view):
            if assigned[i]:
                continue
            sx, sy = points[i]
            members = [
                j for j in range(i, len(in_view))
                if not assigned[j]
                and math.hypot(points[j][0] - sx, points[j][1] - sy) <= self._radius
            ]
            if len(members) < self._min_points:
                assigned[i] = True
                markers.append(seed)
                continue
            for j in members:
                assigned[j] = True
            clusters.append(self._node(seed, [in_view[j] for j in members], zoom))

        return ClusterResult(clusters=clusters, markers=markers)

    def expand(self, node: ClusterNode, ranked: bool = True) -> list[Pulse]:
        """Leaves of a cluster, by respect (descending) or in insertion order."""
        leaves = list(node.leaves)
        if ranked:
            leaves.sort(key=lambda p: (p.respect_count, p.created_at), reverse=True)
        return leaves

    def _node(self, seed: Pulse, leaves: Sequence[Pulse], zoom: float) -> ClusterNode:
        lat = sum(p.lat for p in leaves) / len(leaves)
        lng = sum(p.lng for p in leaves) / len(leaves)
        return ClusterNode(
            cluster_id=f"z{int(zoom)}-{seed.id}",
            point_count=len(leaves),
            lat=lat,
            lng=lng,
            leaves=tuple(leaves),
        )


def reply_links(pulses: Iterable[Pulse]) -> list[tuple[str, str]]:
    """(reply id, parent id) pairs where both ends are in *pulses*.

    Replies whose parent has already expired are simply unlinked.
    """
    pulses = list(pulses)
    ids = {p.id for p in pulses}
    return [(p.id, p.parent_id) for p in pulses if p.parent_id and p.parent_id in ids]
