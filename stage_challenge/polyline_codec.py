"""Strict encoded-polyline codec.

Encoding and decoding are delegated to the ``polyline`` package; this module
adds the validation that package leaves out so a truncated or corrupted
string never turns into a partial coordinate list.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence

import polyline as _polyline

from .config import POLYLINE_PRECISION
from .errors import MalformedPolyline
from .models import LatLon

_ASCII_OFFSET = 63
_CONTINUATION_BIT = 0x20
_MAX_CHUNK_VALUE = 0x3F


def decode(encoded: str, precision: int = POLYLINE_PRECISION) -> List[LatLon]:
    """Decode an encoded polyline string into a list of (lat, lon) tuples.

    Raises:
        MalformedPolyline: If the string is not a complete, valid encoding.
        ValueError: If ``precision`` is negative.
    """

    _check_precision(precision)
    if not isinstance(encoded, str):
        raise MalformedPolyline(
            f"Encoded polyline must be a string, got {type(encoded).__name__}"
        )
    if not encoded:
        return []
    _validate_encoded(encoded)
    try:
        decoded = _polyline.decode(encoded, precision)
    except (IndexError, ValueError, TypeError) as exc:
        raise MalformedPolyline("Unable to decode polyline") from exc
    points = [(float(lat), float(lon)) for lat, lon in decoded]
    for index, (lat, lon) in enumerate(points):
        if not _in_range(lat, lon):
            raise MalformedPolyline(
                f"Decoded point {index} is out of range: ({lat}, {lon})"
            )
    return points


def encode(points: Sequence[Sequence[float]], precision: int = POLYLINE_PRECISION) -> str:
    """Encode (lat, lon) pairs into a polyline string.

    Coordinates are rounded to ``precision`` decimal digits.
    """

    _check_precision(precision)
    normalised = list(_normalise_points(points))
    if not normalised:
        return ""
    return _polyline.encode(normalised, precision)


def _validate_encoded(encoded: str) -> None:
    """Reject characters outside the alphabet and incomplete value chunks."""

    terminal_chunks = 0
    last_value = 0
    for position, char in enumerate(encoded):
        value = ord(char) - _ASCII_OFFSET
        if value < 0 or value > _MAX_CHUNK_VALUE:
            raise MalformedPolyline(
                f"Invalid polyline character {char!r} at offset {position}"
            )
        if value < _CONTINUATION_BIT:
            terminal_chunks += 1
        last_value = value
    if last_value >= _CONTINUATION_BIT:
        raise MalformedPolyline("Polyline ends inside a continuation sequence")
    if terminal_chunks % 2:
        raise MalformedPolyline("Polyline has a latitude without a longitude")


def _normalise_points(points: Iterable[Sequence[float]]) -> Iterable[LatLon]:
    for index, point in enumerate(points):
        try:
            lat, lon = float(point[0]), float(point[1])
        except (TypeError, ValueError, IndexError) as exc:
            raise MalformedPolyline(f"Point {index} is not a (lat, lon) pair") from exc
        if not _in_range(lat, lon):
            raise MalformedPolyline(f"Point {index} is out of range: ({lat}, {lon})")
        yield lat, lon


def _in_range(lat: float, lon: float) -> bool:
    return (
        math.isfinite(lat)
        and math.isfinite(lon)
        and -90.0 <= lat <= 90.0
        and -180.0 <= lon <= 180.0
    )


def _check_precision(precision: int) -> None:
    if precision < 0:
        raise ValueError("precision must be zero or greater")


__all__ = ["decode", "encode"]
