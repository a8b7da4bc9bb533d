"""Stage challenge activity matching package."""

from .main import main
from .models import Activity, Challenge, Participant, Route, StageResult
from .errors import (
    MalformedPolyline,
    MalformedRoute,
    NoGeometryProvided,
    StageChallengeError,
)

__all__ = [
    "main",
    "Activity",
    "Challenge",
    "Participant",
    "Route",
    "StageResult",
    "MalformedPolyline",
    "MalformedRoute",
    "NoGeometryProvided",
    "StageChallengeError",
]
