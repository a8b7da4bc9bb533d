"""Replace a challenge's stage routes from parsed corridors."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Union, TYPE_CHECKING

from ..config import DEFAULT_BUFFER_METERS, DEFAULT_MIN_OVERLAP_RATIO
from ..errors import MalformedRoute, NoGeometryProvided
from ..matching.preprocessing import (
    validate_buffer,
    validate_corridor,
    validate_overlap_ratio,
)
from ..models import LatLon
from .gpx import load_stage_corridors

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..db import ChallengeStore, RouteDefinition

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RouteSyncResult:
    challenge_id: int
    synced_count: int
    stages: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "challenge_id": self.challenge_id,
            "synced_count": self.synced_count,
            "stages": list(self.stages),
        }


def sync_routes(
    store: "ChallengeStore",
    challenge_id: int,
    corridors: Mapping[int, Sequence[LatLon]],
    *,
    buffer_meters: float = DEFAULT_BUFFER_METERS,
    min_overlap_ratio: float = DEFAULT_MIN_OVERLAP_RATIO,
) -> RouteSyncResult:
    """Validate every corridor, then replace the supplied stages atomically.

    Nothing is written when any corridor or parameter is invalid.

    Raises:
        NoGeometryProvided: If ``corridors`` is empty.
        MalformedRoute: On a bad stage number, corridor, buffer or ratio.
        ChallengeNotFound: If the challenge does not exist.
    """

    if not corridors:
        raise NoGeometryProvided("No stage corridors supplied")
    buffer_value = validate_buffer(buffer_meters)
    if buffer_value <= 0:
        raise MalformedRoute("buffer_meters must be greater than zero for a stored route")
    ratio = validate_overlap_ratio(min_overlap_ratio)

    definitions: Dict[int, "RouteDefinition"] = {}
    for raw_stage, corridor in corridors.items():
        stage = _coerce_stage(raw_stage)
        if stage in definitions:
            raise MalformedRoute(f"Stage {stage} supplied more than once")
        try:
            points = validate_corridor(corridor)
        except MalformedRoute as exc:
            raise MalformedRoute(f"Stage {stage}: {exc}") from exc
        definitions[stage] = (points, buffer_value, ratio)

    routes = store.replace_routes(challenge_id, definitions)
    stages = [route.stage_number for route in routes]
    LOGGER.info(
        "Synced %d routes for challenge %s (stages %s, buffer=%.1fm, min_overlap=%.2f)",
        len(routes),
        challenge_id,
        stages,
        buffer_value,
        ratio,
    )
    return RouteSyncResult(challenge_id=challenge_id, synced_count=len(routes), stages=stages)


def sync_routes_from_directory(
    store: "ChallengeStore",
    challenge_id: int,
    directory: Union[str, Path],
    *,
    buffer_meters: float = DEFAULT_BUFFER_METERS,
    min_overlap_ratio: float = DEFAULT_MIN_OVERLAP_RATIO,
) -> RouteSyncResult:
    """Re-import every ``stage-<N>.gpx`` file in ``directory`` for a challenge."""

    corridors = load_stage_corridors(directory)
    if not corridors:
        raise NoGeometryProvided(f"No stage track files with geometry in {directory}")
    return sync_routes(
        store,
        challenge_id,
        corridors,
        buffer_meters=buffer_meters,
        min_overlap_ratio=min_overlap_ratio,
    )


def _coerce_stage(value: object) -> int:
    if isinstance(value, bool):
        raise MalformedRoute(f"Invalid stage number {value!r}")
    try:
        stage = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise MalformedRoute(f"Invalid stage number {value!r}") from exc
    if isinstance(value, float) and value != stage:
        raise MalformedRoute(f"Invalid stage number {value!r}")
    if stage < 1:
        raise MalformedRoute(f"Stage numbers start at 1, got {stage}")
    return stage


__all__ = ["RouteSyncResult", "sync_routes", "sync_routes_from_directory"]
