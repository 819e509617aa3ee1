#!/usr/bin/env python3
"""
Data models for the submission pipeline.

WorkItem status is a closed enum with an explicit transition table. Every
status write goes through validate_transition, so a transition that is not in
the table is rejected instead of silently persisted.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    CUSTOMIZING = "customizing"
    READY = "ready"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    PAUSED = "paused"


S = WorkItemStatus

TRANSITIONS: Dict[WorkItemStatus, FrozenSet[WorkItemStatus]] = {
    S.PENDING: frozenset({S.CUSTOMIZING, S.READY, S.SUBMITTING, S.RATE_LIMITED, S.PAUSED}),
    S.CUSTOMIZING: frozenset({S.READY, S.PENDING, S.PAUSED}),
    S.READY: frozenset({S.SUBMITTING, S.RATE_LIMITED, S.PAUSED}),
    S.RATE_LIMITED: frozenset({S.SUBMITTING, S.RATE_LIMITED, S.PENDING, S.PAUSED}),
    S.SUBMITTING: frozenset({S.SUBMITTED, S.RATE_LIMITED, S.PENDING, S.FAILED}),
    S.PAUSED: frozenset({S.PENDING}),
    S.SUBMITTED: frozenset(),
    S.FAILED: frozenset(),
}

# Statuses the dispatcher may pick up once next_run_at has passed
DISPATCHABLE_STATUSES = (S.PENDING, S.READY, S.RATE_LIMITED)
TERMINAL_STATUSES = (S.SUBMITTED, S.FAILED)
PAUSABLE_STATUSES = (S.PENDING, S.READY, S.RATE_LIMITED)


class InvalidTransition(ValueError):
    """Raised when a status change is not in TRANSITIONS."""

    def __init__(self, current: WorkItemStatus, target: WorkItemStatus):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition {current.value} -> {target.value}")


def can_transition(current: WorkItemStatus, target: WorkItemStatus) -> bool:
    return WorkItemStatus(target) in TRANSITIONS[WorkItemStatus(current)]


def validate_transition(current: WorkItemStatus, target: WorkItemStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(WorkItemStatus(current), WorkItemStatus(target))


@dataclass
class WorkItem:
    """One queued application intent."""
    id: str
    workflow_id: str
    user_id: str
    job_external_id: str
    cv_reference: Optional[str] = None
    cover_letter: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    status: WorkItemStatus = WorkItemStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    next_run_at: Optional[datetime] = None
    priority: int = 0
    last_error: Optional[str] = None

    external_resource_id: Optional[str] = None
    external_transaction_id: Optional[str] = None
    fallback_used: bool = False
    idempotency_key: Optional[str] = None
    submitted_at: Optional[datetime] = None

    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @property
    def last_error_cause(self) -> Optional[Dict[str, Any]]:
        if not self.last_error:
            return None
        try:
            cause = json.loads(self.last_error)
        except json.JSONDecodeError:
            return {"message": self.last_error}
        return cause if isinstance(cause, dict) else {"message": str(cause)}

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WorkItem":
        data = dict(row)
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            user_id=data["user_id"],
            job_external_id=data["job_external_id"],
            cv_reference=data.get("cv_reference"),
            cover_letter=data.get("cover_letter"),
            payload=json.loads(data.get("payload_json") or "{}"),
            status=WorkItemStatus(data["status"]),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 5),
            next_run_at=parse_ts(data.get("next_run_at")),
            priority=int(data.get("priority") or 0),
            last_error=data.get("last_error"),
            external_resource_id=data.get("external_resource_id"),
            external_transaction_id=data.get("external_transaction_id"),
            fallback_used=bool(data.get("fallback_used")),
            idempotency_key=data.get("idempotency_key"),
            submitted_at=parse_ts(data.get("submitted_at")),
            version=int(data.get("version") or 0),
            created_at=parse_ts(data.get("created_at")),
            updated_at=parse_ts(data.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "user_id": self.user_id,
            "job_external_id": self.job_external_id,
            "cv_reference": self.cv_reference,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_run_at": format_ts(self.next_run_at),
            "priority": self.priority,
            "last_error": self.last_error_cause,
            "external_resource_id": self.external_resource_id,
            "external_transaction_id": self.external_transaction_id,
            "fallback_used": self.fallback_used,
            "idempotency_key": self.idempotency_key,
            "submitted_at": format_ts(self.submitted_at),
        }


@dataclass
class SubmissionAttemptResult:
    """Outcome of one successful submission cascade; folded into the WorkItem."""
    external_resource_id: str
    external_transaction_id: str
    idempotency_key: str
    fallback_used: bool = False
    message_attached: bool = False


@dataclass
class WorkflowProgress:
    """Per-status counts for one workflow."""
    pending: int = 0
    customizing: int = 0
    ready: int = 0
    submitting: int = 0
    submitted: int = 0
    failed: int = 0
    rate_limited: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return sum(self.to_dict().values())

    @property
    def outstanding(self) -> int:
        return self.pending + self.ready + self.rate_limited + self.customizing + self.submitting

    def to_dict(self) -> Dict[str, int]:
        return {status.value: getattr(self, status.value) for status in WorkItemStatus}
