"""Dataclasses describing corridor matching results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(slots=True)
class MatchResult:
    """Outcome of testing an activity track against one buffered corridor."""

    matched: bool
    overlap_ratio: float
    inside_points: int = 0
    total_points: int = 0
    max_offset_m: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        """Return the debug payload exposed for audit and inspection."""

        return {"matched": self.matched, "overlap_ratio": self.overlap_ratio}
