"""
Database module for the submission pipeline.
Implements SQLite persistence of workflows and work items with async support.

update_status is the only per-item mutation path. It is a conditional UPDATE
keyed on the expected prior status, so two dispatchers racing on the same item
cannot both win. The bulk operations (pause, resume, stale-claim recovery)
check their transitions against the same table before writing.
"""

import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import aiosqlite

from api.models import (
    DISPATCHABLE_STATUSES,
    PAUSABLE_STATUSES,
    WorkItem,
    WorkItemStatus,
    WorkflowProgress,
    format_ts,
    parse_ts,
    utcnow,
    validate_transition,
)

logger = logging.getLogger(__name__)

# Database configuration
DB_PATH = Path(os.getenv("DATABASE_PATH", Path(__file__).parent.parent / "data" / "autoapply.db"))

# Columns update_status may write besides status
UPDATABLE_FIELDS = {
    "attempts",
    "next_run_at",
    "last_error",
    "priority",
    "payload",
    "external_resource_id",
    "external_transaction_id",
    "fallback_used",
    "idempotency_key",
    "submitted_at",
}


def _placeholders(values) -> str:
    return ",".join("?" for _ in values)


def _status_values(statuses) -> List[str]:
    return [WorkItemStatus(s).value for s in statuses]


class WorkItemStore:
    """Persisted queue of work items grouped into workflows."""

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], datetime] = utcnow,
        default_max_attempts: int = 5,
    ):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.clock = clock
        self.default_max_attempts = default_max_attempts

    @asynccontextmanager
    async def get_db(self):
        """Get a database connection."""
        db = await aiosqlite.connect(self.db_path, timeout=30)
        db.row_factory = aiosqlite.Row
        try:
            yield db
        finally:
            await db.close()

    async def init_database(self):
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self.get_db() as db:
            await db.execute("PRAGMA journal_mode=WAL")

            # Workflows: a batch of applications confirmed together by one user
            await db.execute("""
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    cv_reference TEXT,
                    status TEXT NOT NULL DEFAULT 'running',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Work items: one application intent each
            await db.execute("""
                CREATE TABLE IF NOT EXISTS work_items (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    job_external_id TEXT NOT NULL,
                    cv_reference TEXT,
                    cover_letter TEXT,
                    payload_json TEXT,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 5,
                    next_run_at TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    external_resource_id TEXT,
                    external_transaction_id TEXT,
                    fallback_used INTEGER NOT NULL DEFAULT 0,
                    idempotency_key TEXT,
                    submitted_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (workflow_id) REFERENCES workflows(id)
                )
            """)

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_items_workflow_status_next_run "
                "ON work_items(workflow_id, status, next_run_at)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_items_user_job ON work_items(user_id, job_external_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_items_status_updated ON work_items(status, updated_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_workflows_user_id ON workflows(user_id)")
            await db.commit()

    # Workflow operations

    async def create_workflow(
        self,
        user_id: str,
        cv_reference: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> str:
        """Create a new workflow and return its id."""
        workflow_id = workflow_id or f"wf_{uuid.uuid4().hex}"
        now = format_ts(self.clock())
        async with self.get_db() as db:
            await db.execute(
                """INSERT INTO workflows (id, user_id, cv_reference, status, created_at, updated_at)
                   VALUES (?, ?, ?, 'running', ?, ?)""",
                (workflow_id, user_id, cv_reference, now, now),
            )
            await db.commit()
        return workflow_id

    async def get_workflow(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        async with self.get_db() as db:
            cursor = await db.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,))
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def list_workflow_ids_with_work(self) -> List[str]:
        """Running workflows that still have dispatchable items."""
        statuses = _status_values(DISPATCHABLE_STATUSES)
        async with self.get_db() as db:
            cursor = await db.execute(
                f"""SELECT DISTINCT i.workflow_id
                    FROM work_items i
                    JOIN workflows w ON w.id = i.workflow_id
                    WHERE w.status = 'running'
                      AND i.status IN ({_placeholders(statuses)})""",
                statuses,
            )
            rows = await cursor.fetchall()
            return [row["workflow_id"] for row in rows]

    # Queue operations

    async def enqueue(
        self,
        workflow_id: str,
        items: List[Dict[str, Any]],
        *,
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> int:
        """
        Enqueue application intents for a workflow.

        Each item needs `job_external_id`; optional keys: cv_reference, cover_letter,
        payload, priority, status ('pending' or 'customizing').
        Jobs the user already has a live or submitted item for are skipped.
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            raise ValueError(f"Unknown workflow {workflow_id}")

        user_id = workflow["user_id"]
        now = format_ts(self.clock())
        limit = int(max_attempts or self.default_max_attempts)
        inserted = 0
        async with self.get_db() as db:
            for item in items:
                job_external_id = str(item.get("job_external_id") or item.get("job_id") or "").strip()
                if not job_external_id:
                    continue

                # De-dupe: skip if a non-failed item already exists for this job.
                cursor = await db.execute(
                    """SELECT id FROM work_items
                       WHERE user_id = ? AND job_external_id = ? AND status != 'failed'
                       LIMIT 1""",
                    (user_id, job_external_id),
                )
                if await cursor.fetchone():
                    logger.info(f"Skipping duplicate job {job_external_id} for user {user_id}")
                    continue

                status = WorkItemStatus(item.get("status") or WorkItemStatus.PENDING)
                if status not in (WorkItemStatus.PENDING, WorkItemStatus.CUSTOMIZING, WorkItemStatus.READY):
                    raise ValueError(f"Cannot enqueue an item with status {status.value}")

                payload = item.get("payload") if isinstance(item.get("payload"), dict) else {}
                await db.execute(
                    """INSERT INTO work_items
                       (id, workflow_id, user_id, job_external_id, cv_reference, cover_letter,
                        payload_json, status, attempts, max_attempts, next_run_at, priority,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
                    (
                        f"wi_{uuid.uuid4().hex}",
                        workflow_id,
                        user_id,
                        job_external_id,
                        item.get("cv_reference") or workflow.get("cv_reference"),
                        item.get("cover_letter"),
                        json.dumps(payload),
                        status.value,
                        limit,
                        now,
                        int(item["priority"] if item.get("priority") is not None else priority),
                        now,
                        now,
                    ),
                )
                inserted += 1
            await db.commit()
        return inserted

    async def get_item(self, item_id: str) -> Optional[WorkItem]:
        async with self.get_db() as db:
            cursor = await db.execute("SELECT * FROM work_items WHERE id = ?", (item_id,))
            row = await cursor.fetchone()
            return WorkItem.from_row(row) if row else None

    async def list_items(self, workflow_id: str, limit: int = 500) -> List[WorkItem]:
        async with self.get_db() as db:
            cursor = await db.execute(
                """SELECT * FROM work_items
                   WHERE workflow_id = ?
                   ORDER BY priority DESC, next_run_at ASC, created_at ASC
                   LIMIT ?""",
                (workflow_id, limit),
            )
            rows = await cursor.fetchall()
            return [WorkItem.from_row(row) for row in rows]

    async def next_ready(self, workflow_id: str, now: Optional[datetime] = None) -> Optional[WorkItem]:
        """Highest-priority dispatchable item whose next_run_at has passed."""
        statuses = _status_values(DISPATCHABLE_STATUSES)
        async with self.get_db() as db:
            cursor = await db.execute(
                f"""SELECT * FROM work_items
                    WHERE workflow_id = ?
                      AND status IN ({_placeholders(statuses)})
                      AND (next_run_at IS NULL OR next_run_at <= ?)
                    ORDER BY priority DESC, next_run_at ASC, created_at ASC
                    LIMIT 1""",
                (workflow_id, *statuses, format_ts(now or self.clock())),
            )
            row = await cursor.fetchone()
            return WorkItem.from_row(row) if row else None

    async def next_wake_at(self, workflow_id: str) -> Optional[datetime]:
        """Earliest next_run_at among dispatchable items, or None when nothing is queued."""
        statuses = _status_values(DISPATCHABLE_STATUSES)
        async with self.get_db() as db:
            cursor = await db.execute(
                f"""SELECT MIN(next_run_at) AS wake_at FROM work_items
                    WHERE workflow_id = ? AND status IN ({_placeholders(statuses)})""",
                (workflow_id, *statuses),
            )
            row = await cursor.fetchone()
        if not row or row["wake_at"] is None:
            return None
        return parse_ts(row["wake_at"])

    async def update_status(
        self,
        item_id: str,
        status: WorkItemStatus,
        *,
        expected: WorkItemStatus,
        expected_version: Optional[int] = None,
        **fields: Any,
    ) -> bool:
        """
        Move an item from `expected` to `status`, writing `fields` in the same statement.

        Returns True if this call performed the transition, False if the item was
        no longer in the expected state (another dispatcher got there first).
        Raises InvalidTransition for transitions outside the table.
        """
        status = WorkItemStatus(status)
        expected = WorkItemStatus(expected)
        validate_transition(expected, status)

        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown work item fields: {sorted(unknown)}")
        if status == WorkItemStatus.SUBMITTED and not fields.get("external_transaction_id"):
            raise ValueError("A submitted item requires an external_transaction_id")

        assignments = ["status = ?", "version = version + 1", "updated_at = ?"]
        params: List[Any] = [status.value, format_ts(self.clock())]
        for name, value in fields.items():
            if name == "payload":
                assignments.append("payload_json = ?")
                params.append(json.dumps(value or {}))
            elif isinstance(value, datetime):
                assignments.append(f"{name} = ?")
                params.append(format_ts(value))
            elif name == "fallback_used":
                assignments.append(f"{name} = ?")
                params.append(1 if value else 0)
            elif name == "last_error" and isinstance(value, dict):
                assignments.append(f"{name} = ?")
                params.append(json.dumps(value, ensure_ascii=True))
            else:
                assignments.append(f"{name} = ?")
                params.append(value)

        where = "id = ? AND status = ?"
        params.extend([item_id, expected.value])
        if expected_version is not None:
            where += " AND version = ?"
            params.append(int(expected_version))

        async with self.get_db() as db:
            cursor = await db.execute(
                f"UPDATE work_items SET {', '.join(assignments)} WHERE {where}",
                params,
            )
            await db.commit()
            won = cursor.rowcount == 1

        if not won:
            logger.debug(f"WorkItem {item_id}: {expected.value} -> {status.value} lost (state changed)")
        return won

    async def progress(self, workflow_id: str) -> WorkflowProgress:
        async with self.get_db() as db:
            cursor = await db.execute(
                """SELECT status, COUNT(*) as count
                   FROM work_items
                   WHERE workflow_id = ?
                   GROUP BY status""",
                (workflow_id,),
            )
            rows = await cursor.fetchall()
        progress = WorkflowProgress()
        for row in rows:
            setattr(progress, WorkItemStatus(row["status"]).value, int(row["count"]))
        return progress

    # Hand-off from CV customization

    async def mark_customizing(self, item_id: str) -> bool:
        return await self.update_status(item_id, WorkItemStatus.CUSTOMIZING, expected=WorkItemStatus.PENDING)

    async def attach_payload(self, item_id: str, payload: Dict[str, Any]) -> bool:
        """Store the customized CV snapshot and mark the item ready to submit."""
        item = await self.get_item(item_id)
        if item is None:
            return False
        if item.status not in (WorkItemStatus.PENDING, WorkItemStatus.CUSTOMIZING):
            return False
        return await self.update_status(
            item_id,
            WorkItemStatus.READY,
            expected=item.status,
            payload=payload,
            next_run_at=self.clock(),
        )

    # Pause / resume / recovery

    async def pause_workflow(self, workflow_id: str) -> int:
        """Hold every queued item of the workflow. In-flight items are left alone."""
        for status in PAUSABLE_STATUSES:
            validate_transition(status, WorkItemStatus.PAUSED)
        statuses = _status_values(PAUSABLE_STATUSES)
        now = format_ts(self.clock())
        async with self.get_db() as db:
            cursor = await db.execute(
                f"""UPDATE work_items
                    SET status = ?, version = version + 1, updated_at = ?
                    WHERE workflow_id = ? AND status IN ({_placeholders(statuses)})""",
                (WorkItemStatus.PAUSED.value, now, workflow_id, *statuses),
            )
            await db.execute(
                "UPDATE workflows SET status = 'paused', updated_at = ? WHERE id = ?",
                (now, workflow_id),
            )
            await db.commit()
            return cursor.rowcount

    async def resume_workflow(self, workflow_id: str) -> int:
        validate_transition(WorkItemStatus.PAUSED, WorkItemStatus.PENDING)
        now = format_ts(self.clock())
        async with self.get_db() as db:
            cursor = await db.execute(
                """UPDATE work_items
                   SET status = ?, version = version + 1, updated_at = ?
                   WHERE workflow_id = ? AND status = ?""",
                (WorkItemStatus.PENDING.value, now, workflow_id, WorkItemStatus.PAUSED.value),
            )
            await db.execute(
                "UPDATE workflows SET status = 'running', updated_at = ? WHERE id = ?",
                (now, workflow_id),
            )
            await db.commit()
            return cursor.rowcount

    async def requeue_stale_submitting(self, older_than: datetime) -> int:
        """
        Recover items stuck in 'submitting' (process died mid-claim).

        Items with attempts left go back to 'pending'; items that already used
        their last attempt are failed. Returns the number requeued.
        """
        validate_transition(WorkItemStatus.SUBMITTING, WorkItemStatus.FAILED)
        validate_transition(WorkItemStatus.SUBMITTING, WorkItemStatus.PENDING)
        now = format_ts(self.clock())
        cutoff = format_ts(older_than)
        cause = json.dumps({"category": "timeout", "message": "claim abandoned"})
        async with self.get_db() as db:
            failed = await db.execute(
                """UPDATE work_items
                   SET status = ?, next_run_at = NULL, last_error = ?,
                       version = version + 1, updated_at = ?
                   WHERE status = ? AND updated_at < ? AND attempts >= max_attempts""",
                (WorkItemStatus.FAILED.value, cause, now, WorkItemStatus.SUBMITTING.value, cutoff),
            )
            requeued = await db.execute(
                """UPDATE work_items
                   SET status = ?, next_run_at = ?, version = version + 1, updated_at = ?
                   WHERE status = ? AND updated_at < ?""",
                (WorkItemStatus.PENDING.value, now, now, WorkItemStatus.SUBMITTING.value, cutoff),
            )
            await db.commit()
            failed_count, count = failed.rowcount, requeued.rowcount
        if failed_count:
            logger.warning(f"Failed {failed_count} stale submitting items with no attempts left")
        if count:
            logger.warning(f"Requeued {count} stale submitting items")
        return count
