"""
Tests for WorkItem status transitions and model helpers.
"""

import json

import pytest
from datetime import datetime, timezone

from api.models import (
    InvalidTransition,
    TRANSITIONS,
    WorkItem,
    WorkItemStatus,
    WorkflowProgress,
    can_transition,
    format_ts,
    parse_ts,
    validate_transition,
)

S = WorkItemStatus


class TestTransitionTable:

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(WorkItemStatus)

    @pytest.mark.parametrize("terminal", [S.SUBMITTED, S.FAILED])
    def test_terminal_statuses_have_no_exits(self, terminal):
        for target in WorkItemStatus:
            assert not can_transition(terminal, target)

    @pytest.mark.parametrize("source", [S.PENDING, S.READY, S.RATE_LIMITED])
    def test_dispatchable_statuses_can_be_claimed(self, source):
        assert can_transition(source, S.SUBMITTING)

    @pytest.mark.parametrize("target", [S.SUBMITTED, S.RATE_LIMITED, S.PENDING, S.FAILED])
    def test_submitting_outcomes(self, target):
        validate_transition(S.SUBMITTING, target)

    @pytest.mark.parametrize("source,target", [
        (S.PENDING, S.SUBMITTED),
        (S.READY, S.SUBMITTED),
        (S.SUBMITTING, S.READY),
        (S.SUBMITTING, S.PAUSED),
        (S.PAUSED, S.SUBMITTING),
        (S.SUBMITTED, S.PENDING),
        (S.FAILED, S.PENDING),
    ])
    def test_rejected_transitions(self, source, target):
        with pytest.raises(InvalidTransition) as exc:
            validate_transition(source, target)
        assert exc.value.current == source
        assert exc.value.target == target

    @pytest.mark.parametrize("source", [S.PENDING, S.CUSTOMIZING, S.READY, S.RATE_LIMITED, S.PAUSED])
    def test_only_a_claimed_item_can_fail(self, source):
        assert not can_transition(source, S.FAILED)

    def test_paused_only_resumes_to_pending(self):
        assert [t for t in WorkItemStatus if can_transition(S.PAUSED, t)] == [S.PENDING]


class TestWorkItem:

    def _row(self, **overrides):
        row = {
            "id": "wi_1",
            "workflow_id": "wf_1",
            "user_id": "user-1",
            "job_external_id": "vac-1",
            "cv_reference": "cv-1",
            "cover_letter": None,
            "payload_json": json.dumps({"title": "Python Developer"}),
            "status": "rate_limited",
            "attempts": 2,
            "max_attempts": 5,
            "next_run_at": "2026-01-05T10:00:00.000000+00:00",
            "priority": 3,
            "last_error": json.dumps({"category": "rate_limited", "message": "slow down"}),
            "external_resource_id": None,
            "external_transaction_id": None,
            "fallback_used": 0,
            "idempotency_key": None,
            "submitted_at": None,
            "version": 4,
            "created_at": "2026-01-05T09:00:00.000000+00:00",
            "updated_at": "2026-01-05T09:30:00.000000+00:00",
        }
        row.update(overrides)
        return row

    def test_from_row(self):
        item = WorkItem.from_row(self._row())
        assert item.status == S.RATE_LIMITED
        assert item.payload == {"title": "Python Developer"}
        assert item.next_run_at == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
        assert item.priority == 3
        assert item.version == 4
        assert item.fallback_used is False
        assert not item.is_terminal
        assert not item.attempts_exhausted

    def test_last_error_cause(self):
        item = WorkItem.from_row(self._row())
        assert item.last_error_cause == {"category": "rate_limited", "message": "slow down"}

        plain = WorkItem.from_row(self._row(last_error="boom"))
        assert plain.last_error_cause == {"message": "boom"}

    def test_to_dict(self):
        data = WorkItem.from_row(self._row(attempts=5)).to_dict()
        assert data["status"] == "rate_limited"
        assert data["next_run_at"] == "2026-01-05T10:00:00.000000+00:00"
        assert data["last_error"]["category"] == "rate_limited"


class TestTimestamps:

    def test_naive_values_are_treated_as_utc(self):
        naive = datetime(2026, 1, 5, 9, 0)
        assert parse_ts(naive).tzinfo == timezone.utc
        assert format_ts(naive) == "2026-01-05T09:00:00.000000+00:00"

    def test_round_trip(self):
        value = datetime(2026, 1, 5, 9, 0, 0, 123456, tzinfo=timezone.utc)
        assert parse_ts(format_ts(value)) == value

    def test_empty_values(self):
        assert parse_ts(None) is None
        assert parse_ts("") is None
        assert format_ts(None) is None


def test_progress_totals():
    progress = WorkflowProgress(pending=2, ready=1, submitted=4, failed=1, rate_limited=3, paused=2)
    assert progress.total == 13
    assert progress.outstanding == 6
    assert progress.to_dict()["paused"] == 2
