"""Render an interactive map showing how an activity sits in a stage corridor."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union, TYPE_CHECKING

import folium
import numpy as np

from ..config import DATABASE_URL, POLYLINE_PRECISION
from ..errors import RouteNotFound, StageChallengeError
from ..matching.models import MatchResult
from ..matching.overlap import corridor_offsets, match_prepared
from ..matching.preprocessing import PreparedCorridor, prepare_corridor
from ..models import LatLon
from ..polyline_codec import decode

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..db import ChallengeStore

PathLike = Union[str, Path]

_TRACK_COLOR = "#2c7bb6"
_ROUTE_COLOR = "#1a9641"
_OUTSIDE_COLOR = "#d73027"


def _contiguous_runs(indices: np.ndarray) -> List[Tuple[int, int]]:
    """Return inclusive index ranges representing contiguous slices."""

    if indices.size == 0:
        return []
    runs: List[Tuple[int, int]] = []
    start = int(indices[0])
    previous = start
    for value in map(int, indices[1:]):
        if value != previous + 1:
            runs.append((start, previous))
            start = value
        previous = value
    runs.append((start, previous))
    return runs


def create_match_map(
    prepared: PreparedCorridor,
    track: Sequence[LatLon],
    *,
    output_html_path: Optional[PathLike] = None,
) -> folium.Map:
    """Create a map with the buffered corridor, the track and its outside stretches.

    Args:
        prepared: Corridor produced by :func:`prepare_corridor`.
        track: Decoded activity points in travel order.
        output_html_path: Optional path to persist the map as an HTML file.

    Returns:
        A :class:`folium.Map` instance containing the overlay.
    """

    offsets = corridor_offsets(prepared, track)
    outside = np.nonzero(offsets > prepared.buffer_meters)[0]

    folium_map = folium.Map(
        location=prepared.latlon_points[0], zoom_start=15, control_scale=True
    )
    outline = prepared.polygon_latlon()
    if outline:
        folium.Polygon(
            outline,
            color=_ROUTE_COLOR,
            weight=1,
            fill=True,
            fill_opacity=0.15,
            tooltip=f"Corridor ({prepared.buffer_meters:.0f} m)",
        ).add_to(folium_map)
    folium.PolyLine(
        prepared.latlon_points,
        color=_ROUTE_COLOR,
        weight=4,
        opacity=0.8,
        tooltip="Stage route",
    ).add_to(folium_map)
    if len(track) >= 2:
        folium.PolyLine(
            list(track),
            color=_TRACK_COLOR,
            weight=4,
            opacity=0.5,
            tooltip="Activity track",
        ).add_to(folium_map)

    for start, end in _contiguous_runs(outside):
        run = list(track[start : end + 1])
        if len(run) == 1:
            folium.CircleMarker(
                location=run[0],
                radius=4,
                color=_OUTSIDE_COLOR,
                fill=True,
                tooltip="Outside corridor",
            ).add_to(folium_map)
            continue
        folium.PolyLine(
            run,
            color=_OUTSIDE_COLOR,
            weight=6,
            opacity=0.9,
            tooltip="Outside corridor",
        ).add_to(folium_map)

    if offsets.size:
        worst = int(np.argmax(offsets))
        folium.CircleMarker(
            location=track[worst],
            radius=7,
            color=_OUTSIDE_COLOR,
            fill=True,
            fill_color=_OUTSIDE_COLOR,
            tooltip="Largest offset",
            popup=folium.Popup(
                html=f"<strong>Max offset:</strong> {offsets[worst]:.1f} m (point {worst})",
                max_width=300,
            ),
        ).add_to(folium_map)

    if output_html_path is not None:
        output_path = Path(output_html_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        folium_map.save(str(output_path))
    return folium_map


def build_match_map_for_route(
    store: "ChallengeStore",
    route_id: int,
    polyline: str,
    *,
    precision: int = POLYLINE_PRECISION,
    output_html: Optional[PathLike] = None,
) -> Tuple[folium.Map, MatchResult]:
    """Load a stored route, score the encoded track and render the overlay.

    Raises:
        RouteNotFound: If ``route_id`` does not exist.
        MalformedPolyline: If ``polyline`` cannot be decoded.
        MalformedRoute: If the stored corridor is unusable.
    """

    route = store.get_route(route_id)
    if route is None:
        raise RouteNotFound(f"Route {route_id} does not exist")
    track = decode(polyline, precision)
    prepared = prepare_corridor(route.corridor, route.buffer_meters)
    result = match_prepared(prepared, track, route.min_overlap_ratio)
    map_object = create_match_map(prepared, track, output_html_path=output_html)
    return map_object, result


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate an HTML map of an encoded activity inside a stage corridor."
    )
    parser.add_argument("--route-id", type=int, required=True)
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--polyline", help="Encoded activity polyline")
    source.add_argument(
        "--polyline-file", type=Path, help="File containing the encoded polyline"
    )
    parser.add_argument("--database-url", default=DATABASE_URL)
    parser.add_argument(
        "--output",
        type=Path,
        help="Optional output HTML path; defaults to maps/route-<id>.html",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point used via ``python -m stage_challenge.tools.match_map``."""

    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
    from ..db import ChallengeStore

    try:
        polyline = args.polyline
        if polyline is None:
            polyline = args.polyline_file.read_text(encoding="utf-8").strip()
    except OSError as exc:
        logging.error("Failed to read polyline file: %s", exc)
        return 1

    output_path = args.output or Path("maps") / f"route-{args.route_id}.html"
    store = ChallengeStore.from_url(args.database_url)
    try:
        _map, result = build_match_map_for_route(
            store, args.route_id, polyline, output_html=output_path
        )
    except StageChallengeError as exc:
        logging.error("Failed to build match map: %s", exc)
        return 1
    finally:
        store.dispose()

    logging.info(
        "Overlap ratio %.3f (%d/%d points) matched=%s",
        result.overlap_ratio,
        result.inside_points,
        result.total_points,
        result.matched,
    )
    if result.max_offset_m is not None:
        logging.info("Max offset %.1f m", result.max_offset_m)
    logging.info("Match map written to %s", output_path)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
