"""In-memory cache of prepared route corridors."""

from __future__ import annotations

from threading import RLock
from typing import Hashable, Optional, Tuple

from cachetools import LRUCache

from ..config import CORRIDOR_CACHE_SIZE
from ..models import Route
from .preprocessing import (
    PreparedCorridor,
    corridor_fingerprint,
    prepare_corridor,
    validate_buffer,
    validate_corridor,
)

_CacheKey = Tuple[Hashable, str]


class CorridorCache:
    """LRU cache of projected and buffered corridors keyed by route geometry.

    Keys combine the route id with a geometry fingerprint so a route that was
    re-synced mid-run is prepared again instead of served stale.
    """

    def __init__(self, max_entries: int = CORRIDOR_CACHE_SIZE) -> None:
        self._cache: LRUCache[_CacheKey, PreparedCorridor] = LRUCache(
            maxsize=max(1, max_entries)
        )
        self._lock = RLock()
        self.hits = 0
        self.misses = 0

    def get(self, route: Route) -> PreparedCorridor:
        """Return the prepared corridor for ``route``, preparing it on a miss."""

        key = self._key(route)
        with self._lock:
            cached: Optional[PreparedCorridor] = self._cache.get(key)
            if cached is not None:
                self.hits += 1
                return cached
            self.misses += 1
        prepared = prepare_corridor(route.corridor, route.buffer_meters)
        with self._lock:
            self._cache[key] = prepared
        return prepared

    def clear(self) -> None:
        """Empty the cache (primarily for testing)."""
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def _key(route: Route) -> _CacheKey:
        corridor = validate_corridor(route.corridor)
        buffer_meters = validate_buffer(route.buffer_meters)
        return route.id, corridor_fingerprint(corridor, buffer_meters)


__all__ = ["CorridorCache"]
