"""Tests for the batch activity processor."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import WINDOW_END, WINDOW_START, make_line, shift_east
from stage_challenge.db import ChallengeStore
from stage_challenge.errors import NoActiveChallenge, PersistenceError
from stage_challenge.polyline_codec import encode
from stage_challenge.services import ActivityOutcome, ActivityProcessor
from stage_challenge.services.activity_processor import (
    STATUS_ABORTED,
    STATUS_NO_ACTIVE_CHALLENGE,
    STATUS_NO_ROUTES,
    STATUS_OK,
)

PROCESSED_AT = datetime(2025, 2, 1, 6, 0, tzinfo=timezone.utc)
ON_ROUTE = encode(make_line(100))
OFF_ROUTE = encode(shift_east(make_line(100)))


def _processor(store, **kwargs) -> ActivityProcessor:
    return ActivityProcessor(store, clock=lambda: PROCESSED_AT, **kwargs)


def _add(store, elapsed: int, *, day: int = 2, user: str = "runner-1", polyline: str = ON_ROUTE):
    return store.add_activity(user, polyline, WINDOW_START + timedelta(days=day), elapsed)


@pytest.fixture
def seeded(store, challenge, stage_one_route, participant):
    return challenge


def test_improving_times_keep_the_fastest(store, seeded) -> None:
    _add(store, 4000, day=2)
    _add(store, 3500, day=3)

    summary = _processor(store).run()

    assert summary.status == STATUS_OK
    assert summary.outcomes[ActivityOutcome.MATCHED] == 2
    assert summary.improved == 2
    result = store.get_stage_result("runner-1", seeded.id, 1)
    assert result.best_time_seconds == 3500
    assert len(store.list_audit_logs("STAGE_COMPLETED")) == 2


def test_reversed_order_gives_same_best_time(store, seeded) -> None:
    _add(store, 3500, day=2)
    second = _add(store, 4000, day=3)

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.MATCHED] == 2
    assert summary.improved == 1
    assert store.get_stage_result("runner-1", seeded.id, 1).best_time_seconds == 3500
    assert len(store.list_audit_logs("STAGE_COMPLETED")) == 1
    assert store.get_activity(second.id).processed_at == PROCESSED_AT


def test_activity_before_window_is_only_marked(store, seeded) -> None:
    early = store.add_activity("runner-1", ON_ROUTE, WINDOW_START - timedelta(seconds=1), 3000)

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.OUT_OF_WINDOW] == 1
    assert store.get_activity(early.id).processed_at == PROCESSED_AT
    assert store.list_stage_results(seeded.id) == []
    assert store.list_audit_logs() == []


def test_ineligible_participants(store, seeded) -> None:
    store.add_participant("banned", seeded.id, excluded=True)
    _add(store, 3000, user="banned")
    _add(store, 3000, user="stranger")

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.NOT_ELIGIBLE] == 2
    assert summary.processed == 2
    assert store.list_stage_results(seeded.id) == []


def test_off_route_and_malformed_polylines_are_no_match(store, seeded) -> None:
    _add(store, 3000, polyline=OFF_ROUTE)
    broken = _add(store, 3000, polyline="_p~iF")

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.NO_MATCH] == 2
    assert store.get_activity(broken.id).processed_at == PROCESSED_AT
    assert store.list_stage_results(seeded.id) == []


def test_second_run_is_a_no_op(store, seeded) -> None:
    _add(store, 3600)
    first = _processor(store).run()
    before = store.list_stage_results(seeded.id)

    second = _processor(store).run()

    assert first.processed == 1
    assert second.total == 0
    assert store.list_stage_results(seeded.id) == before
    assert len(store.list_audit_logs()) == 1


def test_slower_time_never_replaces_best(store, seeded) -> None:
    _add(store, 3000)
    _processor(store).run()
    _add(store, 3100, day=4)

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.MATCHED] == 1
    assert summary.improved == 0
    assert store.get_stage_result("runner-1", seeded.id, 1).best_time_seconds == 3000


def test_audit_metadata(store, seeded) -> None:
    activity = _add(store, 2800)
    _processor(store).run()

    (entry,) = store.list_audit_logs("STAGE_COMPLETED")
    assert entry.entity_type == "stage_result"
    assert entry.actor_id == "runner-1"
    assert entry.metadata["challenge_id"] == seeded.id
    assert entry.metadata["stage_number"] == 1
    assert entry.metadata["time_seconds"] == 2800
    assert entry.metadata["activity_id"] == activity.id
    assert entry.metadata["overlap_ratio"] == pytest.approx(1.0)


def test_first_matching_stage_wins(store, challenge, participant) -> None:
    store.replace_routes(challenge.id, {1: (make_line(), 30.0, 0.8), 2: (make_line(), 30.0, 0.8)})
    _add(store, 3000)

    _processor(store).run()

    assert [r.stage_number for r in store.list_stage_results(challenge.id)] == [1]


def test_broken_route_is_skipped(store, challenge, participant) -> None:
    store.replace_routes(
        challenge.id,
        {1: ([(51.48, -3.18)], 30.0, 0.8), 2: (make_line(), 30.0, 0.8)},
    )
    _add(store, 3000)

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.MATCHED] == 1
    assert [r.stage_number for r in store.list_stage_results(challenge.id)] == [2]


def test_failure_is_isolated_and_still_marked(store, seeded, monkeypatch) -> None:
    bad = _add(store, 3000, day=2)
    good = _add(store, 3200, day=3)
    original = store.save_best_time

    def flaky_save(result):
        if result.activity_id == bad.id:
            raise PersistenceError("database unavailable")
        return original(result)

    monkeypatch.setattr(store, "save_best_time", flaky_save)

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.FAILED] == 1
    assert summary.outcomes[ActivityOutcome.MATCHED] == 1
    assert store.get_activity(bad.id).processed_at == PROCESSED_AT
    assert store.get_activity(good.id).processed_at == PROCESSED_AT
    assert store.get_stage_result("runner-1", seeded.id, 1).best_time_seconds == 3200


def test_participant_lookup_failure_fails_closed(store, seeded, monkeypatch) -> None:
    _add(store, 3000)

    def broken_lookup(user_id, challenge_id):
        raise PersistenceError("lookup failed")

    monkeypatch.setattr(store, "get_participant", broken_lookup)

    summary = _processor(store).run()

    assert summary.outcomes[ActivityOutcome.NOT_ELIGIBLE] == 1
    assert store.list_stage_results(seeded.id) == []


def test_marker_failure_leaves_activity_queued(store, seeded, monkeypatch) -> None:
    activity = _add(store, 3000)

    def broken_mark(activity_id, processed_at):
        raise PersistenceError("write failed")

    monkeypatch.setattr(store, "mark_processed", broken_mark)
    summary = _processor(store).run()
    monkeypatch.undo()

    assert summary.mark_failures == 1
    assert summary.processed == 0
    assert store.get_activity(activity.id).processed_at is None
    assert [a.id for a in store.list_unprocessed_activities()] == [activity.id]


def test_audit_failure_does_not_undo_result(store, seeded, monkeypatch) -> None:
    _add(store, 3000)

    def broken_audit(entry):
        raise PersistenceError("audit table locked")

    monkeypatch.setattr(store, "write_audit_log", broken_audit)

    summary = _processor(store).run()

    assert summary.improved == 1
    assert store.get_stage_result("runner-1", seeded.id, 1).best_time_seconds == 3000


def test_batch_limit_processes_oldest_first(store, seeded) -> None:
    later = _add(store, 3000, day=5)
    earlier = _add(store, 3100, day=1)

    summary = _processor(store, batch_limit=1).run()

    assert summary.total == 1
    assert store.get_activity(earlier.id).processed_at == PROCESSED_AT
    assert store.get_activity(later.id).processed_at is None


def test_no_active_challenge(store) -> None:
    summary = _processor(store).run()
    assert summary.status == STATUS_NO_ACTIVE_CHALLENGE
    assert summary.to_dict()["total"] == 0


def test_no_routes(store, challenge) -> None:
    activity = _add(store, 3000)
    summary = _processor(store).run()
    assert summary.status == STATUS_NO_ROUTES
    assert store.get_activity(activity.id).processed_at is None


def test_challenge_load_failure_aborts(store, monkeypatch) -> None:
    def broken():
        raise PersistenceError("no database")

    monkeypatch.setattr(store, "get_active_challenge", broken)
    assert _processor(store).run().status == STATUS_ABORTED


def test_summary_to_dict(store, seeded) -> None:
    _add(store, 3000)
    _add(store, 3000, polyline=OFF_ROUTE)

    payload = _processor(store).run().to_dict()

    assert payload["status"] == STATUS_OK
    assert payload["matched"] == 1
    assert payload["outcomes"]["NO_MATCH"] == 1
    assert payload["outcomes"]["FAILED"] == 0


def test_invalid_batch_limit(store) -> None:
    with pytest.raises(ValueError):
        ActivityProcessor(store, batch_limit=0)


def test_active_challenge_raises_when_none_flagged(store) -> None:
    store.add_challenge("Dormant", WINDOW_START, WINDOW_END, is_active=False)
    with pytest.raises(NoActiveChallenge):
        _processor(store).active_challenge()


def _seed_queue(store) -> int:
    challenge = store.add_challenge("Winter Stages", WINDOW_START, WINDOW_END, is_active=True)
    store.replace_routes(challenge.id, {1: (make_line(), 30.0, 0.8)})
    store.add_participant("runner-1", challenge.id)
    store.add_participant("runner-2", challenge.id)
    _add(store, 4000, day=2)
    _add(store, 3500, day=3)
    _add(store, 3700, day=4, user="runner-2")
    _add(store, 3000, day=5, polyline=OFF_ROUTE)
    return challenge.id


def _best_times(store, challenge_id: int):
    return [
        (r.user_id, r.stage_number, r.best_time_seconds, r.activity_id)
        for r in store.list_stage_results(challenge_id)
    ]


def test_overlapping_runs_match_a_single_run(store, tmp_path, monkeypatch) -> None:
    single_id = _seed_queue(store)
    _processor(store).run()
    expected_results = _best_times(store, single_id)
    expected_audits = len(store.list_audit_logs("STAGE_COMPLETED"))

    url = f"sqlite:///{tmp_path / 'shared.db'}"
    store_a = ChallengeStore.from_url(url, create_schema=True)
    store_b = ChallengeStore.from_url(url)
    try:
        challenge_id = _seed_queue(store_a)
        # Both runs read the queue before either of them marks anything.
        snapshot = store_b.list_unprocessed_activities()
        monkeypatch.setattr(store_b, "list_unprocessed_activities", lambda limit=None: snapshot)

        first = _processor(store_a).run()
        second = _processor(store_b).run()

        assert len(snapshot) == 4
        assert first.improved == 3
        assert second.total == 4
        assert second.improved == 0
        assert second.processed == 4
        assert _best_times(store_a, challenge_id) == expected_results
        assert len(store_a.list_audit_logs("STAGE_COMPLETED")) == expected_audits
        assert store_a.list_unprocessed_activities() == []
    finally:
        store_a.dispose()
        store_b.dispose()
