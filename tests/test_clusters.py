"""Tests for the ClusterEngine."""

from datetime import datetime, timedelta, timezone

import pytest

from pulsemap.core.clusters import Bounds, ClusterEngine, reply_links
from pulsemap.domain.pulse import Pulse

from tests.test_pulse import _valid_pulse

_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
_ALBANIA = Bounds(west=18.5, south=39.5, east=21.5, north=43.0)


def _at(lat: float, lng: float, minutes_ago: int = 0, **kw) -> Pulse:
    created = (_NOW - timedelta(minutes=minutes_ago)).isoformat()
    return Pulse.model_validate(_valid_pulse(lat=lat, lng=lng, created_at=created, **kw))


@pytest.fixture
def engine() -> ClusterEngine:
    return ClusterEngine(radius_px=60.0)


class TestClustering:
    def test_two_near_one_far(self, engine: ClusterEngine) -> None:
        a = _at(41.3275, 19.8187)
        b = _at(41.3290, 19.8200)
        far = _at(40.4660, 19.4890)  # Vlorë
        result = engine.cluster([a, b, far], _ALBANIA, zoom=10)

        assert len(result.clusters) == 1
        node = result.clusters[0]
        assert node.point_count == 2
        assert {p.id for p in node.leaves} == {a.id, b.id}
        assert [p.id for p in result.markers] == [far.id]

    def test_centroid_is_mean_of_leaves(self, engine: ClusterEngine) -> None:
        a, b = _at(41.0, 20.0), _at(41.002, 20.002)
        node = engine.cluster([a, b], _ALBANIA, zoom=10).clusters[0]
        assert node.lat == pytest.approx(41.001)
        assert node.lng == pytest.approx(20.001)

    def test_zooming_in_splits_clusters(self, engine: ClusterEngine) -> None:
        a, b = _at(41.3275, 19.8187), _at(41.3290, 19.8200)
        assert len(engine.cluster([a, b], _ALBANIA, zoom=8).clusters) == 1
        zoomed = engine.cluster([a, b], _ALBANIA, zoom=16)
        assert zoomed.clusters == []
        assert len(zoomed.markers) == 2

    def test_above_max_zoom_never_clusters(self) -> None:
        engine = ClusterEngine(max_zoom=12)
        a, b = _at(41.0, 20.0), _at(41.0, 20.0)
        result = engine.cluster([a, b], _ALBANIA, zoom=13)
        assert result.clusters == []
        assert len(result.markers) == 2

    def test_points_outside_bounds_are_dropped(self, engine: ClusterEngine) -> None:
        inside, outside = _at(41.0, 20.0), _at(48.85, 2.35)
        result = engine.cluster([inside, outside], _ALBANIA, zoom=10)
        assert [p.id for p in result.markers] == [inside.id]

    def test_antimeridian_bounds(self) -> None:
        bounds = Bounds(west=170.0, south=-50.0, east=-170.0, north=-30.0)
        assert bounds.contains(-40.0, 175.0)
        assert bounds.contains(-40.0, -175.0)
        assert not bounds.contains(-40.0, 0.0)

    def test_does_not_mutate_input(self, engine: ClusterEngine) -> None:
        pulses = [_at(41.0, 20.0), _at(41.0, 20.0)]
        before = [p.model_dump() for p in pulses]
        engine.cluster(pulses, _ALBANIA, zoom=10)
        assert [p.model_dump() for p in pulses] == before

    def test_same_input_same_output(self, engine: ClusterEngine) -> None:
        pulses = [_at(41.0 + i * 0.001, 20.0) for i in range(10)]
        first = engine.cluster(pulses, _ALBANIA, zoom=9)
        second = engine.cluster(pulses, _ALBANIA, zoom=9)
        assert first == second

    def test_find_by_cluster_id(self, engine: ClusterEngine) -> None:
        result = engine.cluster([_at(41.0, 20.0), _at(41.0, 20.0)], _ALBANIA, zoom=10)
        node = result.clusters[0]
        assert result.find(node.cluster_id) is node
        assert result.find("z10-missing") is None

    def test_invalid_radius(self) -> None:
        with pytest.raises(ValueError):
            ClusterEngine(radius_px=0)


class TestExpand:
    def test_ranked_by_respect_descending(self, engine: ClusterEngine) -> None:
        low = _at(41.0, 20.0, respect_count=1)
        high = _at(41.0, 20.0, respect_count=9)
        mid = _at(41.0, 20.0, respect_count=4)
        node = engine.cluster([low, high, mid], _ALBANIA, zoom=10).clusters[0]
        assert [p.id for p in engine.expand(node)] == [high.id, mid.id, low.id]

    def test_insertion_order(self, engine: ClusterEngine) -> None:
        pulses = [_at(41.0, 20.0, respect_count=n) for n in (1, 9, 4)]
        node = engine.cluster(pulses, _ALBANIA, zoom=10).clusters[0]
        assert [p.id for p in engine.expand(node, ranked=False)] == [p.id for p in pulses]


class TestProjection:
    def test_origin_maps_to_world_centre(self, engine: ClusterEngine) -> None:
        x, y = engine.project(0.0, 0.0, zoom=0)
        assert x == pytest.approx(128.0)
        assert y == pytest.approx(128.0)

    def test_world_doubles_per_zoom(self, engine: ClusterEngine) -> None:
        x1, _ = engine.project(0.0, 90.0, zoom=1)
        x2, _ = engine.project(0.0, 90.0, zoom=2)
        assert x2 == pytest.approx(2 * x1)


class TestReplyLinks:
    def test_links_only_visible_parents(self) -> None:
        parent = _at(41.0, 20.0)
        reply = _at(41.0, 20.0, parent_id=parent.id)
        orphan = _at(41.0, 20.0, parent_id="expired-parent")
        assert reply_links([parent, reply, orphan]) == [(reply.id, parent.id)]
