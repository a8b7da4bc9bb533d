"""Public entry points for the GPS-based route matching package."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence, TYPE_CHECKING

from ..config import POLYLINE_PRECISION
from ..errors import RouteNotFound
from ..models import LatLon, Route
from ..polyline_codec import decode
from .cache import CorridorCache
from .models import MatchResult
from .overlap import corridor_offsets, match_prepared, match_track
from .preprocessing import PreparedCorridor, prepare_corridor

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..db import ChallengeStore

LOGGER = logging.getLogger(__name__)


def match_route(
    route: Route,
    track: Sequence[LatLon],
    *,
    cache: Optional[CorridorCache] = None,
) -> MatchResult:
    """Match a decoded track against a stored route's corridor."""

    if cache is not None:
        prepared = cache.get(route)
    else:
        prepared = prepare_corridor(route.corridor, route.buffer_meters)
    result = match_prepared(prepared, track, route.min_overlap_ratio)
    LOGGER.debug(
        "Route %s stage %s: overlap=%.3f (%d/%d points) matched=%s",
        route.id,
        route.stage_number,
        result.overlap_ratio,
        result.inside_points,
        result.total_points,
        result.matched,
    )
    return result


def match_activity_to_route_debug(
    store: "ChallengeStore",
    polyline: str,
    route_id: int,
    *,
    precision: int = POLYLINE_PRECISION,
    cache: Optional[CorridorCache] = None,
) -> Dict[str, Any]:
    """Return ``{"matched": bool, "overlap_ratio": float}`` for inspection.

    Raises:
        RouteNotFound: If ``route_id`` does not exist.
        MalformedPolyline: If ``polyline`` cannot be decoded.
        MalformedRoute: If the stored corridor is unusable.
    """

    route = store.get_route(route_id)
    if route is None:
        raise RouteNotFound(f"Route {route_id} does not exist")
    track = decode(polyline, precision)
    return match_route(route, track, cache=cache).as_dict()


def match_activity_to_route(
    store: "ChallengeStore",
    polyline: str,
    route_id: int,
    *,
    precision: int = POLYLINE_PRECISION,
    cache: Optional[CorridorCache] = None,
) -> bool:
    """Return True when the encoded track satisfies the route's corridor."""

    payload = match_activity_to_route_debug(
        store, polyline, route_id, precision=precision, cache=cache
    )
    return bool(payload["matched"])


__all__ = [
    "CorridorCache",
    "MatchResult",
    "PreparedCorridor",
    "corridor_offsets",
    "match_activity_to_route",
    "match_activity_to_route_debug",
    "match_prepared",
    "match_route",
    "match_track",
    "prepare_corridor",
]
