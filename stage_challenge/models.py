from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

LatLon = Tuple[float, float]


@dataclass
class Challenge:
    id: int
    name: str
    starts_at: datetime
    ends_at: datetime
    is_active: bool = False
    slug: Optional[str] = None


@dataclass
class Route:
    id: int
    challenge_id: int
    stage_number: int
    corridor: List[LatLon]
    buffer_meters: float
    min_overlap_ratio: float


@dataclass
class Participant:
    user_id: str
    challenge_id: int
    # Set by admins; excluded participants never earn stage results
    excluded: bool = False
    id: Optional[int] = None


@dataclass
class Activity:
    id: int
    user_id: str
    polyline: str
    started_at: Optional[datetime]
    elapsed_seconds: int
    # None until the processor has looked at the activity
    processed_at: Optional[datetime] = None


@dataclass
class StageResult:
    user_id: str
    challenge_id: int
    stage_number: int
    best_time_seconds: int
    completed_at: Optional[datetime]
    activity_id: Optional[int] = None


@dataclass
class AuditLogEntry:
    action: str
    entity_type: str
    actor_id: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
