"""Utility entry points for supplementary stage challenge tooling."""

from .match_map import build_match_map_for_route, create_match_map

__all__ = ["build_match_map_for_route", "create_match_map"]
