"""Read stage corridors from GPX track files."""

from __future__ import annotations

import logging
import math
from pathlib import Path
import re
from typing import Dict, Iterable, List, Optional, Union

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as ET

from ..config import STAGE_FILE_PATTERN
from ..errors import MalformedRoute, NoGeometryProvided
from ..models import LatLon

LOGGER = logging.getLogger(__name__)

GpxSource = Union[str, Path, bytes]


def parse_gpx(source: GpxSource) -> List[LatLon]:
    """Return the ordered (lat, lon) waypoints of a GPX document.

    ``source`` may be a path or the GPX text itself. Track points are used when
    present, route points otherwise. Waypoints with missing or invalid
    coordinates are skipped.

    Raises:
        MalformedRoute: If the document is not parseable XML.
        NoGeometryProvided: If no valid waypoint remains.
    """

    label, root = _load_root(source)
    elements = _find_points(root.iter(), "trkpt")
    if not elements:
        elements = _find_points(root.iter(), "rtept")

    points: List[LatLon] = []
    skipped = 0
    for element in elements:
        point = _parse_waypoint(element.get("lat"), element.get("lon"))
        if point is None:
            skipped += 1
            continue
        points.append(point)

    if skipped:
        LOGGER.debug("Skipped %d malformed waypoints in %s", skipped, label)
    if not points:
        raise NoGeometryProvided(f"No valid waypoints found in {label}")
    return points


def load_stage_corridors(
    directory: Union[str, Path],
    *,
    pattern: str = STAGE_FILE_PATTERN,
) -> Dict[int, List[LatLon]]:
    """Parse every ``stage-<N>.gpx`` file in a challenge directory.

    Files without usable geometry are logged and left out of the result.
    """

    base = Path(directory)
    if not base.is_dir():
        raise FileNotFoundError(f"Routes directory not found: {base}")
    matcher = re.compile(pattern)
    corridors: Dict[int, List[LatLon]] = {}
    for path in sorted(base.iterdir()):
        match = matcher.match(path.name)
        if match is None or not path.is_file():
            continue
        stage = int(match.group(1))
        if stage < 1:
            LOGGER.warning("Ignoring %s: stage numbers start at 1", path.name)
            continue
        try:
            corridors[stage] = parse_gpx(path)
        except (MalformedRoute, NoGeometryProvided) as exc:
            LOGGER.warning("Skipping %s: %s", path.name, exc)
            continue
        LOGGER.info("Parsed %s: %d points", path.name, len(corridors[stage]))
    return corridors


def _load_root(source: GpxSource):
    try:
        if isinstance(source, bytes):
            return "<bytes>", ET.fromstring(source)
        if isinstance(source, str) and source.lstrip().startswith("<"):
            return "<text>", ET.fromstring(source)
        path = Path(source)
        return str(path), ET.parse(path).getroot()
    except (ET.ParseError, DefusedXmlException) as exc:
        raise MalformedRoute(f"Unable to parse GPX document: {exc}") from exc


def _find_points(elements: Iterable, name: str) -> list:
    return [element for element in elements if _local_name(element.tag) == name]


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _parse_waypoint(lat_raw: Optional[str], lon_raw: Optional[str]) -> Optional[LatLon]:
    if lat_raw is None or lon_raw is None:
        return None
    try:
        lat = float(lat_raw)
        lon = float(lon_raw)
    except ValueError:
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return lat, lon


__all__ = ["load_stage_corridors", "parse_gpx"]
