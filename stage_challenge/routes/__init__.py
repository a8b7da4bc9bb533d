"""Stage route import: GPX parsing and route replacement."""

from .gpx import load_stage_corridors, parse_gpx
from .sync import RouteSyncResult, sync_routes, sync_routes_from_directory

__all__ = [
    "RouteSyncResult",
    "load_stage_corridors",
    "parse_gpx",
    "sync_routes",
    "sync_routes_from_directory",
]
