"""Central error types used across the application."""

from __future__ import annotations


class StageChallengeError(RuntimeError):
    """Base error for stage challenge failures."""


class MalformedPolyline(StageChallengeError, ValueError):
    """Raised when an encoded polyline cannot be decoded exactly."""


class MalformedRoute(StageChallengeError, ValueError):
    """Raised when route geometry or its matching parameters are unusable."""


class NoGeometryProvided(StageChallengeError, ValueError):
    """Raised when a route sync or track file yields no usable coordinates."""


class NoActiveChallenge(StageChallengeError):
    """Raised when no challenge is flagged active (callers treat this as a no-op)."""


class PersistenceError(StageChallengeError):
    """Raised when the backing store fails; retried on the next batch run."""


class ChallengeNotFound(StageChallengeError, LookupError):
    """Raised when a challenge id does not exist."""


class RouteNotFound(StageChallengeError, LookupError):
    """Raised when a route id does not exist."""


__all__ = [
    "StageChallengeError",
    "MalformedPolyline",
    "MalformedRoute",
    "NoGeometryProvided",
    "NoActiveChallenge",
    "PersistenceError",
    "ChallengeNotFound",
    "RouteNotFound",
]
