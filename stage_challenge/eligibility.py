"""Eligibility rules deciding whether an activity may be matched at all."""

from __future__ import annotations

from enum import Enum
import logging
from typing import Optional

from .models import Activity, Challenge, Participant

LOGGER = logging.getLogger(__name__)


class Eligibility(str, Enum):
    ELIGIBLE = "ELIGIBLE"
    OUT_OF_WINDOW = "OUT_OF_WINDOW"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"


def within_window(activity: Activity, challenge: Challenge) -> bool:
    """Return True when the activity started inside the inclusive challenge window."""

    started_at = activity.started_at
    if started_at is None:
        return False
    try:
        return challenge.starts_at <= started_at <= challenge.ends_at
    except TypeError:
        # Naive and aware datetimes cannot be ordered.
        LOGGER.warning(
            "Cannot compare activity %s start %r with challenge %s window",
            activity.id,
            started_at,
            challenge.id,
        )
        return False


def check_eligibility(
    activity: Activity,
    challenge: Challenge,
    participant: Optional[Participant],
) -> Eligibility:
    """Apply the window rule, then the participant rule.

    Missing or inconsistent data is ineligible, never an error.
    """

    if not within_window(activity, challenge):
        return Eligibility.OUT_OF_WINDOW
    if participant is None:
        return Eligibility.NOT_ELIGIBLE
    if participant.user_id != activity.user_id or participant.challenge_id != challenge.id:
        return Eligibility.NOT_ELIGIBLE
    if participant.excluded is not False:
        return Eligibility.NOT_ELIGIBLE
    return Eligibility.ELIGIBLE


def is_eligible(
    activity: Activity,
    challenge: Challenge,
    participant: Optional[Participant],
) -> bool:
    return check_eligibility(activity, challenge, participant) is Eligibility.ELIGIBLE


__all__ = ["Eligibility", "check_eligibility", "is_eligible", "within_window"]
