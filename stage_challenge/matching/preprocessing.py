"""Preprocessing utilities for route corridors and activity tracks."""

from __future__ import annotations

from dataclasses import dataclass
from hashlib import sha256
import math
from typing import Iterable, List, Sequence

import numpy as np
from numpy.typing import NDArray
from pyproj import CRS, Transformer
from shapely.geometry import LineString, Polygon

from ..config import CORRIDOR_BUFFER_QUAD_SEGS
from ..errors import MalformedRoute
from ..models import LatLon
from ..utils import json_dumps_sorted

MetricArray = NDArray[np.float64]

_WGS84 = CRS.from_epsg(4326)


@dataclass(slots=True)
class PreparedCorridor:
    """Reusable metric representation of a buffered route corridor."""

    latlon_points: List[LatLon]
    metric_points: MetricArray
    line: LineString
    polygon: Polygon
    buffer_meters: float
    transformer: Transformer
    fingerprint: str

    def project(self, points: Sequence[LatLon]) -> MetricArray:
        """Project lat/lon points into this corridor's local metric plane."""

        return _project_points(points, self.transformer)

    def polygon_latlon(self) -> List[LatLon]:
        """Return the buffered corridor outline as (lat, lon) pairs."""

        if self.polygon.is_empty:
            return []
        xs, ys = self.polygon.exterior.coords.xy
        lons, lats = self.transformer.transform(
            np.asarray(xs), np.asarray(ys), direction="INVERSE"
        )
        return [(float(lat), float(lon)) for lat, lon in zip(lats, lons)]


def validate_corridor(corridor: Sequence[Sequence[float]]) -> List[LatLon]:
    """Return the corridor as float pairs or raise :class:`MalformedRoute`."""

    if corridor is None:
        raise MalformedRoute("Route corridor is missing")
    points: List[LatLon] = []
    for index, vertex in enumerate(corridor):
        try:
            lat, lon = float(vertex[0]), float(vertex[1])
        except (TypeError, ValueError, IndexError) as exc:
            raise MalformedRoute(f"Corridor vertex {index} is not a (lat, lon) pair") from exc
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise MalformedRoute(f"Corridor vertex {index} is not finite")
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            raise MalformedRoute(f"Corridor vertex {index} is out of range")
        points.append((lat, lon))
    if len(points) < 2:
        raise MalformedRoute("A route corridor needs at least two vertices")
    return points


def validate_buffer(buffer_meters: float) -> float:
    try:
        value = float(buffer_meters)
    except (TypeError, ValueError) as exc:
        raise MalformedRoute("buffer_meters must be a number") from exc
    if not math.isfinite(value) or value < 0:
        raise MalformedRoute(f"buffer_meters must be finite and >= 0, got {value}")
    return value


def validate_overlap_ratio(min_overlap_ratio: float) -> float:
    try:
        value = float(min_overlap_ratio)
    except (TypeError, ValueError) as exc:
        raise MalformedRoute("min_overlap_ratio must be a number") from exc
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise MalformedRoute(f"min_overlap_ratio must be within [0, 1], got {value}")
    return value


def corridor_fingerprint(corridor: Sequence[LatLon], buffer_meters: float) -> str:
    """Return a stable hash identifying corridor geometry and width."""

    payload = {
        "corridor": [[float(lat), float(lon)] for lat, lon in corridor],
        "buffer_meters": float(buffer_meters),
    }
    return sha256(json_dumps_sorted(payload).encode("utf-8")).hexdigest()


def prepare_corridor(
    corridor: Sequence[Sequence[float]],
    buffer_meters: float,
    *,
    quad_segs: int = CORRIDOR_BUFFER_QUAD_SEGS,
) -> PreparedCorridor:
    """Project a corridor and build its buffered tolerance polygon."""

    latlon = validate_corridor(corridor)
    buffer_value = validate_buffer(buffer_meters)
    transformer = _build_local_transformer(latlon)
    metric = _project_points(latlon, transformer)
    line = LineString(metric)
    polygon = line.buffer(buffer_value, quad_segs=max(1, quad_segs))
    return PreparedCorridor(
        latlon_points=latlon,
        metric_points=metric,
        line=line,
        polygon=polygon,
        buffer_meters=buffer_value,
        transformer=transformer,
        fingerprint=corridor_fingerprint(latlon, buffer_value),
    )


def _build_local_transformer(points: Sequence[LatLon]) -> Transformer:
    """Build a transverse Mercator transformer centred on the points' bounding box."""

    lats = [pt[0] for pt in points]
    lons = [pt[1] for pt in points]
    centre_lat = (min(lats) + max(lats)) / 2.0
    centre_lon = (min(lons) + max(lons)) / 2.0
    target_crs = CRS.from_proj4(
        f"+proj=tmerc +lat_0={centre_lat:.9f} +lon_0={centre_lon:.9f} "
        "+k=1 +x_0=0 +y_0=0 +ellps=WGS84 +units=m +no_defs"
    )
    return Transformer.from_crs(_WGS84, target_crs, always_xy=True)


def _project_points(points: Sequence[LatLon], transformer: Transformer) -> MetricArray:
    """Project lat/lon pairs through an existing transformer."""

    if not points:
        return np.empty((0, 2), dtype=float)
    lats = np.asarray([pt[0] for pt in points], dtype=float)
    lons = np.asarray([pt[1] for pt in points], dtype=float)
    xs, ys = transformer.transform(lons, lats)
    return np.column_stack((xs, ys)).astype(float, copy=False)


def normalise_track(points: Iterable[Sequence[float]]) -> List[LatLon]:
    """Return track points as float pairs, rejecting non-finite values."""

    track = [(float(pt[0]), float(pt[1])) for pt in points]
    for index, (lat, lon) in enumerate(track):
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise ValueError(f"Track point {index} is not finite")
    return track


__all__ = [
    "PreparedCorridor",
    "normalise_track",
    "corridor_fingerprint",
    "prepare_corridor",
    "validate_buffer",
    "validate_corridor",
    "validate_overlap_ratio",
]
