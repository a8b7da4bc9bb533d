"""Unit tests covering corridor preparation and overlap matching."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterator

import pytest

from conftest import make_line, shift_east
from stage_challenge.errors import MalformedPolyline, MalformedRoute, RouteNotFound
from stage_challenge.matching import (
    CorridorCache,
    match_activity_to_route,
    match_activity_to_route_debug,
    match_route,
    match_track,
    prepare_corridor,
)
from stage_challenge.matching.overlap import corridor_offsets
from stage_challenge.polyline_codec import encode


@pytest.fixture
def corridor():
    return make_line(100)


@pytest.fixture
def cache() -> Iterator[CorridorCache]:
    corridor_cache = CorridorCache(max_entries=4)
    yield corridor_cache
    corridor_cache.clear()


def test_track_tracing_corridor_matches(corridor) -> None:
    result = match_track(corridor, corridor, 30.0, 0.8)

    assert result.matched is True
    assert result.overlap_ratio == pytest.approx(1.0)
    assert result.inside_points == result.total_points == 100
    assert result.max_offset_m == pytest.approx(0.0, abs=0.5)


def test_half_track_outside_does_not_match(corridor) -> None:
    track = corridor[:50] + shift_east(corridor[50:])

    result = match_track(track, corridor, 30.0, 0.8)

    assert result.matched is False
    assert result.overlap_ratio == pytest.approx(0.5)
    assert result.max_offset_m > 60.0


def test_ratio_threshold_is_inclusive(corridor) -> None:
    track = corridor[:80] + shift_east(corridor[80:])
    assert match_track(track, corridor, 30.0, 0.8).matched is True
    assert match_track(track, corridor, 30.0, 0.81).matched is False


def test_buffer_distance_in_metres(corridor) -> None:
    # 0.0003 degrees of longitude is about 21 m here, 0.0006 about 42 m.
    near = shift_east(corridor, 0.0003)
    far = shift_east(corridor, 0.0006)
    assert match_track(near, corridor, 30.0, 1.0).matched is True
    assert match_track(far, corridor, 30.0, 0.01).matched is False


def test_empty_track_never_matches(corridor) -> None:
    result = match_track([], corridor, 30.0, 0.0)
    assert result.matched is False
    assert result.overlap_ratio == 0.0


@pytest.mark.parametrize(
    "corridor_points, buffer_meters, ratio",
    [
        ([(51.48, -3.18)], 30.0, 0.8),
        ([], 30.0, 0.8),
        ([(51.48, -3.18), (float("nan"), -3.18)], 30.0, 0.8),
        (make_line(3), -1.0, 0.8),
        (make_line(3), float("inf"), 0.8),
        (make_line(3), 30.0, 1.2),
    ],
)
def test_malformed_route_inputs(corridor_points, buffer_meters, ratio) -> None:
    with pytest.raises(MalformedRoute):
        match_track(make_line(3), corridor_points, buffer_meters, ratio)


def test_matching_is_deterministic(corridor) -> None:
    track = corridor[:30] + shift_east(corridor[30:60]) + corridor[60:]
    first = match_track(track, corridor, 30.0, 0.5)
    second = match_track(list(track), list(corridor), 30.0, 0.5)
    assert first == second


def test_prepared_corridor_outline_surrounds_route(corridor) -> None:
    prepared = prepare_corridor(corridor, 30.0)

    offsets = corridor_offsets(prepared, corridor)
    assert offsets.shape == (100,)
    assert prepared.polygon.area > 0
    outline = prepared.polygon_latlon()
    lats = [lat for lat, _ in outline]
    assert min(lats) < corridor[0][0] < corridor[-1][0] < max(lats)


def test_cache_reuses_prepared_corridor(stage_one_route, cache: CorridorCache) -> None:
    first = cache.get(stage_one_route)
    second = cache.get(stage_one_route)

    assert first is second
    assert (cache.hits, cache.misses) == (1, 1)


def test_cache_refreshes_when_geometry_changes(stage_one_route, cache: CorridorCache) -> None:
    original = cache.get(stage_one_route)
    moved = replace(stage_one_route, corridor=make_line(100, start=(51.5, -3.2)))

    refreshed = cache.get(moved)

    assert refreshed is not original
    assert cache.misses == 2
    assert match_route(moved, moved.corridor, cache=cache).matched is True


def test_store_backed_match(store, stage_one_route) -> None:
    encoded = encode(stage_one_route.corridor)

    payload = match_activity_to_route_debug(store, encoded, stage_one_route.id)

    assert payload == {"matched": True, "overlap_ratio": pytest.approx(1.0)}
    assert match_activity_to_route(store, encoded, stage_one_route.id) is True
    off_route = encode(shift_east(stage_one_route.corridor))
    assert match_activity_to_route(store, off_route, stage_one_route.id) is False


def test_store_backed_match_errors(store, stage_one_route) -> None:
    with pytest.raises(RouteNotFound):
        match_activity_to_route(store, encode(make_line(3)), 999)
    with pytest.raises(MalformedPolyline):
        match_activity_to_route(store, "_p~iF", stage_one_route.id)
