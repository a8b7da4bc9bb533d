"""Point-in-corridor overlap scoring."""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import shapely

from ..models import LatLon
from .models import MatchResult
from .preprocessing import (
    MetricArray,
    PreparedCorridor,
    normalise_track,
    prepare_corridor,
    validate_overlap_ratio,
)


def corridor_offsets(
    prepared: PreparedCorridor, track: Sequence[LatLon]
) -> MetricArray:
    """Return each track point's distance (metres) to the corridor centre line."""

    metric = prepared.project(track)
    if metric.shape[0] == 0:
        return np.empty(0, dtype=float)
    points = shapely.points(metric)
    return np.asarray(shapely.distance(prepared.line, points), dtype=float)


def match_prepared(
    prepared: PreparedCorridor,
    track: Sequence[Sequence[float]],
    min_overlap_ratio: float,
) -> MatchResult:
    """Score a track against an already prepared corridor."""

    threshold = validate_overlap_ratio(min_overlap_ratio)
    points = normalise_track(track)
    total = len(points)
    if total == 0:
        return MatchResult(matched=False, overlap_ratio=0.0)

    offsets = corridor_offsets(prepared, points)
    inside = int(np.count_nonzero(offsets <= prepared.buffer_meters))
    ratio = inside / total
    return MatchResult(
        matched=ratio >= threshold,
        overlap_ratio=ratio,
        inside_points=inside,
        total_points=total,
        max_offset_m=float(np.max(offsets)),
    )


def match_track(
    track: Sequence[Sequence[float]],
    corridor: Sequence[Sequence[float]],
    buffer_meters: float,
    min_overlap_ratio: float,
    *,
    prepared: Optional[PreparedCorridor] = None,
) -> MatchResult:
    """Decide whether ``track`` follows ``corridor`` closely enough.

    Each track point counts as inside when its distance to the corridor
    polyline is at most ``buffer_meters``. The overlap ratio is the share of
    inside points; it assumes roughly uniform sampling along the track.

    Raises:
        MalformedRoute: If the corridor has fewer than two valid vertices or
            the buffer / ratio parameters are out of range.
    """

    if prepared is None:
        prepared = prepare_corridor(corridor, buffer_meters)
    return match_prepared(prepared, track, min_overlap_ratio)


__all__ = ["corridor_offsets", "match_prepared", "match_track"]
