"""Batch processing of unprocessed activities against the active challenge.

One run snapshots the challenge routes, then walks the unprocessed queue in
start order. Each activity is handled on its own: a failure is logged and
counted, never allowed to stop the batch. Every activity that was looked at
gets its processed marker, so no activity is matched twice.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from ..config import POLYLINE_PRECISION, PROCESSOR_BATCH_LIMIT, STAGE_COMPLETED_ACTION
from ..eligibility import Eligibility, check_eligibility, within_window
from ..errors import MalformedPolyline, NoActiveChallenge
from ..matching import CorridorCache, MatchResult, match_route
from ..models import Activity, Challenge, LatLon, Participant, Route, StageResult
from ..polyline_codec import decode
from ..utils import utc_now
from .audit import write_audit_log

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..db import ChallengeStore

STATUS_OK = "ok"
STATUS_NO_ACTIVE_CHALLENGE = "no_active_challenge"
STATUS_NO_ROUTES = "no_routes"
STATUS_ABORTED = "aborted"


class ActivityOutcome(str, Enum):
    OUT_OF_WINDOW = "OUT_OF_WINDOW"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NO_MATCH = "NO_MATCH"
    MATCHED = "MATCHED"
    FAILED = "FAILED"


@dataclass
class ProcessingSummary:
    status: str
    challenge_id: Optional[int] = None
    total: int = 0
    processed: int = 0
    improved: int = 0
    outcomes: Counter = field(default_factory=Counter)
    mark_failures: int = 0

    @property
    def matched(self) -> int:
        return self.outcomes[ActivityOutcome.MATCHED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "challenge_id": self.challenge_id,
            "total": self.total,
            "processed": self.processed,
            "matched": self.matched,
            "improved": self.improved,
            "mark_failures": self.mark_failures,
            "outcomes": {
                outcome.value: self.outcomes[outcome] for outcome in ActivityOutcome
            },
        }


class ActivityProcessor:
    def __init__(
        self,
        store: "ChallengeStore",
        *,
        corridor_cache: CorridorCache | None = None,
        clock: Callable[[], datetime] | None = None,
        precision: int = POLYLINE_PRECISION,
        batch_limit: int | None = PROCESSOR_BATCH_LIMIT,
    ):
        if batch_limit is not None and batch_limit <= 0:
            raise ValueError("batch_limit must be positive or None")
        self.store = store
        self.corridor_cache = corridor_cache if corridor_cache is not None else CorridorCache()
        self.clock = clock or utc_now
        self.precision = precision
        self.batch_limit = batch_limit
        self._log = logging.getLogger(self.__class__.__name__)

    def run(self) -> ProcessingSummary:
        """Process the queue for whichever challenge is currently active."""

        try:
            challenge = self.active_challenge()
        except NoActiveChallenge:
            self._log.info("No active challenge; nothing to process")
            return ProcessingSummary(status=STATUS_NO_ACTIVE_CHALLENGE)
        except Exception:  # noqa: BLE001
            self._log.error("Unable to load the active challenge; aborting run", exc_info=True)
            return ProcessingSummary(status=STATUS_ABORTED)
        return self.process(challenge)

    def active_challenge(self) -> Challenge:
        """Return the active challenge.

        Raises:
            NoActiveChallenge: If no challenge is flagged active.
        """

        challenge = self.store.get_active_challenge()
        if challenge is None:
            raise NoActiveChallenge("No challenge is flagged active")
        return challenge

    def process(self, challenge: Challenge) -> ProcessingSummary:
        summary = ProcessingSummary(status=STATUS_OK, challenge_id=challenge.id)
        try:
            routes = self.store.list_routes(challenge.id)
        except Exception:  # noqa: BLE001
            self._log.error(
                "Unable to load routes for challenge %s; aborting run",
                challenge.id,
                exc_info=True,
            )
            summary.status = STATUS_ABORTED
            return summary
        if not routes:
            self._log.info("Challenge %s has no routes; nothing to match", challenge.id)
            summary.status = STATUS_NO_ROUTES
            return summary

        try:
            activities = self.store.list_unprocessed_activities(limit=self.batch_limit)
        except Exception:  # noqa: BLE001
            self._log.error("Unable to load unprocessed activities; aborting run", exc_info=True)
            summary.status = STATUS_ABORTED
            return summary

        summary.total = len(activities)
        self._log.info(
            "Processing %d activities for challenge %s against %d routes",
            summary.total,
            challenge.id,
            len(routes),
        )
        for activity in activities:
            outcome, improved = self._process_activity(activity, challenge, routes)
            summary.outcomes[outcome] += 1
            if improved:
                summary.improved += 1
            if self._mark_processed(activity):
                summary.processed += 1
            else:
                summary.mark_failures += 1

        self._log.info(
            "Challenge %s: processed=%d matched=%d improved=%d failed=%d mark_failures=%d",
            challenge.id,
            summary.processed,
            summary.matched,
            summary.improved,
            summary.outcomes[ActivityOutcome.FAILED],
            summary.mark_failures,
        )
        return summary

    def _process_activity(
        self,
        activity: Activity,
        challenge: Challenge,
        routes: Sequence[Route],
    ) -> Tuple[ActivityOutcome, bool]:
        try:
            eligibility = self._check_eligibility(activity, challenge)
            if eligibility is Eligibility.OUT_OF_WINDOW:
                self._log.debug("Activity %s outside challenge window", activity.id)
                return ActivityOutcome.OUT_OF_WINDOW, False
            if eligibility is Eligibility.NOT_ELIGIBLE:
                self._log.debug(
                    "Activity %s: user %s is not an eligible participant",
                    activity.id,
                    activity.user_id,
                )
                return ActivityOutcome.NOT_ELIGIBLE, False

            try:
                track = decode(activity.polyline, self.precision)
            except MalformedPolyline as exc:
                self._log.warning("Activity %s has an unreadable polyline: %s", activity.id, exc)
                return ActivityOutcome.NO_MATCH, False

            match = self._first_match(activity, track, routes)
            if match is None:
                return ActivityOutcome.NO_MATCH, False
            route, result = match
            improved = self._record_best_time(activity, challenge, route, result)
            return ActivityOutcome.MATCHED, improved
        except Exception:  # noqa: BLE001
            self._log.error("Unexpected failure processing activity %s", activity.id, exc_info=True)
            return ActivityOutcome.FAILED, False

    def _check_eligibility(self, activity: Activity, challenge: Challenge) -> Eligibility:
        if not within_window(activity, challenge):
            return Eligibility.OUT_OF_WINDOW
        participant: Optional[Participant]
        try:
            participant = self.store.get_participant(activity.user_id, challenge.id)
        except Exception:  # noqa: BLE001
            self._log.warning(
                "Participant lookup failed for user %s; treating as ineligible",
                activity.user_id,
                exc_info=True,
            )
            participant = None
        return check_eligibility(activity, challenge, participant)

    def _first_match(
        self,
        activity: Activity,
        track: List[LatLon],
        routes: Sequence[Route],
    ) -> Optional[Tuple[Route, MatchResult]]:
        # Routes arrive in ascending stage order; the first stage matched wins.
        for route in routes:
            try:
                result = match_route(route, track, cache=self.corridor_cache)
            except Exception:  # noqa: BLE001
                self._log.warning(
                    "Matching activity %s against route %s (stage %s) failed",
                    activity.id,
                    route.id,
                    route.stage_number,
                    exc_info=True,
                )
                continue
            if result.matched:
                self._log.info(
                    "Activity %s matched stage %s (overlap=%.3f)",
                    activity.id,
                    route.stage_number,
                    result.overlap_ratio,
                )
                return route, result
        return None

    def _record_best_time(
        self,
        activity: Activity,
        challenge: Challenge,
        route: Route,
        result: MatchResult,
    ) -> bool:
        improved = self.store.save_best_time(
            StageResult(
                user_id=activity.user_id,
                challenge_id=challenge.id,
                stage_number=route.stage_number,
                best_time_seconds=activity.elapsed_seconds,
                completed_at=activity.started_at,
                activity_id=activity.id,
            )
        )
        if not improved:
            self._log.debug(
                "Activity %s did not beat the stored stage %s time for user %s",
                activity.id,
                route.stage_number,
                activity.user_id,
            )
            return False
        write_audit_log(
            self.store,
            action=STAGE_COMPLETED_ACTION,
            entity_type="stage_result",
            actor_id=activity.user_id,
            metadata={
                "challenge_id": challenge.id,
                "stage_number": route.stage_number,
                "time_seconds": activity.elapsed_seconds,
                "activity_id": activity.id,
                "overlap_ratio": round(result.overlap_ratio, 4),
            },
        )
        return True

    def _mark_processed(self, activity: Activity) -> bool:
        try:
            written = self.store.mark_processed(activity.id, self.clock())
        except Exception:  # noqa: BLE001
            self._log.error(
                "Failed to mark activity %s processed; it will be retried next run",
                activity.id,
                exc_info=True,
            )
            return False
        if not written:
            self._log.debug("Activity %s was already marked processed", activity.id)
        return True


__all__ = [
    "ActivityOutcome",
    "ActivityProcessor",
    "ProcessingSummary",
    "STATUS_ABORTED",
    "STATUS_NO_ACTIVE_CHALLENGE",
    "STATUS_NO_ROUTES",
    "STATUS_OK",
]
