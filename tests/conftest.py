"""Global pytest fixtures & helpers.

Adds project root to path and provides an in-memory store with a seeded
challenge so processor, sync and export tests share the same setup.
"""
from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from typing import List, Tuple

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from stage_challenge.db import ChallengeStore
from stage_challenge.models import Challenge, Route

WINDOW_START = datetime(2025, 1, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2025, 1, 31, 23, 59, 59, tzinfo=timezone.utc)


# --- Factory helpers -------------------------------------------------
def make_line(
    n: int = 100,
    start: Tuple[float, float] = (51.4800, -3.1800),
    step_lat: float = 0.0001,
    step_lon: float = 0.0,
) -> List[Tuple[float, float]]:
    """Return ``n`` evenly spaced points (about 11 m apart when heading north)."""

    lat0, lon0 = start
    return [(round(lat0 + i * step_lat, 6), round(lon0 + i * step_lon, 6)) for i in range(n)]


def shift_east(points, degrees: float = 0.001):
    """Move points east; 0.001 degrees is roughly 70 m at this latitude."""

    return [(lat, round(lon + degrees, 6)) for lat, lon in points]


def make_gpx(points, tag: str = "trkpt") -> str:
    body = "\n".join(f'      <{tag} lat="{lat}" lon="{lon}"><ele>10</ele></{tag}>' for lat, lon in points)
    if tag == "trkpt":
        inner = f"  <trk>\n    <trkseg>\n{body}\n    </trkseg>\n  </trk>"
    else:
        inner = f"  <rte>\n{body}\n  </rte>"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<gpx version="1.1" creator="tests" xmlns="http://www.topografix.com/GPX/1/1">\n'
        f"{inner}\n</gpx>\n"
    )


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def store():
    challenge_store = ChallengeStore.from_url("sqlite://", create_schema=True)
    yield challenge_store
    challenge_store.dispose()


@pytest.fixture
def challenge(store: ChallengeStore) -> Challenge:
    return store.add_challenge(
        "Winter Stages",
        WINDOW_START,
        WINDOW_END,
        is_active=True,
        slug="winter-stages",
    )


@pytest.fixture
def stage_one_route(store: ChallengeStore, challenge: Challenge) -> Route:
    (route,) = store.replace_routes(challenge.id, {1: (make_line(), 30.0, 0.8)})
    return route


@pytest.fixture
def participant(store: ChallengeStore, challenge: Challenge):
    return store.add_participant("runner-1", challenge.id)


@pytest.fixture
def gpx_text():
    return make_gpx(make_line(20))
