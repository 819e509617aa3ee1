#!/usr/bin/env python3
"""
Workflow Dispatcher

One lane (asyncio task) per running workflow:
- Picks the next ready WorkItem (priority desc, next_run_at asc)
- Asks the shared RateLimiter for a token for the item's user
- Denied: parks the item as rate_limited until the reported refill time and
  sleeps the lane until then (no polling)
- Granted: hands the item to the SubmissionOrchestrator, then moves straight
  on to the next ready item

Lanes for different workflows run in parallel, bounded by a worker pool.
Workflows of the same user share one bucket in the RateLimiter, which is the
only cross-lane synchronization point.

This dispatcher is designed to run inside the FastAPI lifespan task.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from adapters.errors import ErrorCategory
from api.database import WorkItemStore
from api.logging_config import log_rate_limit, logger
from api.models import WorkItemStatus, format_ts, utcnow
from api.rate_limiter import DEFAULT_ACTION, RateLimiter
from api.submission_orchestrator import SubmissionOrchestrator
from monitoring.notifications import ProgressNotifier


@dataclass
class DispatcherConfig:
    max_concurrency: int = 4
    max_idle_sleep_seconds: float = 300.0
    stale_submitting_seconds: float = 900.0
    error_backoff_seconds: float = 2.0
    action: str = DEFAULT_ACTION
    enabled: bool = True  # False: lanes never start, run_once/drain still work

    @classmethod
    def from_app_config(cls, cfg) -> "DispatcherConfig":
        return cls(
            max_concurrency=cfg.DISPATCHER_MAX_CONCURRENCY,
            max_idle_sleep_seconds=cfg.DISPATCHER_MAX_IDLE_SLEEP_SECONDS,
            stale_submitting_seconds=cfg.STALE_SUBMITTING_SECONDS,
            enabled=cfg.QUEUE_WORKER_ENABLED,
        )


class DispatchOutcome(str, Enum):
    DISPATCHED = "dispatched"      # item handed to the orchestrator
    CONFLICT = "conflict"          # another dispatcher claimed it first
    RATE_LIMITED = "rate_limited"  # local bucket empty, item parked
    IDLE = "idle"                  # nothing ready right now
    PAUSED = "paused"              # workflow is not running


@dataclass
class DispatchStep:
    outcome: DispatchOutcome
    item_id: Optional[str] = None
    status: Optional[WorkItemStatus] = None
    wake_at: Optional[datetime] = None

    @property
    def keep_going(self) -> bool:
        return self.outcome in (DispatchOutcome.DISPATCHED, DispatchOutcome.CONFLICT)


class WorkflowDispatcher:
    def __init__(
        self,
        store: WorkItemStore,
        limiter: RateLimiter,
        orchestrator: SubmissionOrchestrator,
        notifier: Optional[ProgressNotifier] = None,
        config: Optional[DispatcherConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.limiter = limiter
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.config = config or DispatcherConfig()
        self.clock = clock
        self._pool = asyncio.Semaphore(max(1, self.config.max_concurrency))
        self._lanes: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._stopping = False

    # --- lanes ---

    def is_running(self, workflow_id: str) -> bool:
        task = self._lanes.get(workflow_id)
        return bool(task and not task.done())

    def start_workflow(self, workflow_id: str) -> bool:
        """Start the lane for a workflow. Returns False if it is already running."""
        if self._stopping or not self.config.enabled:
            return False
        if self.is_running(workflow_id):
            self._wakeup(workflow_id).set()
            return False
        self._wakeup(workflow_id)
        self._lanes[workflow_id] = asyncio.create_task(
            self._run_lane(workflow_id), name=f"dispatcher:{workflow_id}"
        )
        logger.info(f"Dispatcher lane started: {workflow_id}")
        return True

    def notify_enqueued(self, workflow_id: str):
        """New or re-readied items: wake an idle lane or start one."""
        self.start_workflow(workflow_id)

    def _wakeup(self, workflow_id: str) -> asyncio.Event:
        event = self._wakeups.get(workflow_id)
        if event is None:
            event = asyncio.Event()
            self._wakeups[workflow_id] = event
        return event

    async def _run_lane(self, workflow_id: str):
        event = self._wakeup(workflow_id)
        while not self._stopping:
            event.clear()
            try:
                step = await self.run_once(workflow_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Dispatcher lane {workflow_id} error: {e}")
                await self._sleep(event, self.config.error_backoff_seconds)
                continue

            if step.keep_going:
                continue
            if step.outcome == DispatchOutcome.PAUSED:
                break
            if step.wake_at is None:
                # Idle with nothing scheduled; notify_enqueued restarts the lane.
                if event.is_set():
                    continue
                break
            delay = (step.wake_at - self.clock()).total_seconds()
            await self._sleep(event, delay)
        logger.info(f"Dispatcher lane stopped: {workflow_id}")

    async def _sleep(self, event: asyncio.Event, delay: float):
        delay = min(max(delay, 0.0), self.config.max_idle_sleep_seconds)
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # --- scheduling ---

    async def run_once(self, workflow_id: str) -> DispatchStep:
        """One scheduling step for a workflow."""
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None or workflow.get("status") != "running":
            return DispatchStep(DispatchOutcome.PAUSED)

        item = await self.store.next_ready(workflow_id, self.clock())
        if item is None:
            return DispatchStep(DispatchOutcome.IDLE, wake_at=await self.store.next_wake_at(workflow_id))

        async with self._pool:
            grant = await self.limiter.try_acquire(item.user_id, self.config.action)
            if not grant.granted:
                return await self._park(item, grant.retry_after)

            task = asyncio.create_task(self.orchestrator.process(item), name=f"submit:{item.id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            # A running cascade is never interrupted mid-step, even if the lane is cancelled.
            updated = await asyncio.shield(task)

        if updated is None:
            await self.limiter.refund(item.user_id, self.config.action)
            return DispatchStep(DispatchOutcome.CONFLICT, item_id=item.id)
        return DispatchStep(DispatchOutcome.DISPATCHED, item_id=item.id, status=updated.status)

    async def _park(self, item, retry_after: datetime) -> DispatchStep:
        parked = await self.store.update_status(
            item.id,
            WorkItemStatus.RATE_LIMITED,
            expected=item.status,
            expected_version=item.version,
            next_run_at=retry_after,
            last_error={
                "category": ErrorCategory.LOCAL_RATE_LIMITED.value,
                "message": f"rate limited until {format_ts(retry_after)}",
            },
        )
        log_rate_limit(item.user_id, self.config.action, retry_after)
        if parked and self.notifier is not None:
            try:
                status = await self.limiter.status(item.user_id, self.config.action)
                self.notifier.rate_limit_update(item.user_id, status.to_dict())
            except Exception as e:
                logger.warning(f"Rate limit notification failed for {item.user_id}: {e}")
        if not parked:
            return DispatchStep(DispatchOutcome.CONFLICT, item_id=item.id)
        return DispatchStep(
            DispatchOutcome.RATE_LIMITED,
            item_id=item.id,
            status=WorkItemStatus.RATE_LIMITED,
            wake_at=retry_after,
        )

    async def drain(self, workflow_id: str, max_steps: Optional[int] = None) -> List[DispatchStep]:
        """Run steps until the workflow has nothing dispatchable right now."""
        steps: List[DispatchStep] = []
        while max_steps is None or len(steps) < max_steps:
            step = await self.run_once(workflow_id)
            steps.append(step)
            if not step.keep_going:
                break
        return steps

    # --- control ---

    async def pause_workflow(self, workflow_id: str) -> int:
        held = await self.store.pause_workflow(workflow_id)
        if workflow_id in self._wakeups:
            self._wakeups[workflow_id].set()
        logger.info(f"Paused workflow {workflow_id}: {held} items held")
        return held

    async def resume_workflow(self, workflow_id: str) -> int:
        released = await self.store.resume_workflow(workflow_id)
        self.start_workflow(workflow_id)
        logger.info(f"Resumed workflow {workflow_id}: {released} items released")
        return released

    async def estimate_completion(self, workflow_id: str) -> Dict[str, Any]:
        """Rough ETA: items beyond the user's current tokens wait for refills."""
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise KeyError(workflow_id)

        progress = await self.store.progress(workflow_id)
        remaining = progress.outstanding + progress.paused
        bucket = await self.limiter.status(workflow["user_id"], self.config.action)
        interval = timedelta(seconds=self.limiter.config.refill_interval_seconds)

        backlog = max(0, remaining - bucket.tokens)
        if backlog == 0:
            eta = self.clock()
        else:
            refills = math.ceil(backlog / bucket.refill_rate)
            eta = bucket.next_refill_at + (refills - 1) * interval

        now = self.clock()
        return {
            "workflow_id": workflow_id,
            "remaining": remaining,
            "tokens_available": bucket.tokens,
            "estimated_hours": round(max(0.0, (eta - now).total_seconds()) / 3600, 2),
            "estimated_completion_at": format_ts(eta),
        }

    async def recover(self) -> List[str]:
        """Requeue claims abandoned by a crashed process and restart lanes with work."""
        cutoff = self.clock() - timedelta(seconds=self.config.stale_submitting_seconds)
        await self.store.requeue_stale_submitting(cutoff)
        workflow_ids = await self.store.list_workflow_ids_with_work()
        for workflow_id in workflow_ids:
            self.start_workflow(workflow_id)
        return workflow_ids

    async def stop(self):
        self._stopping = True
        for event in self._wakeups.values():
            event.set()
        lanes = list(self._lanes.values())
        for task in lanes:
            task.cancel()
        for task in lanes:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Dispatcher lane ended with error: {e}")
        self._lanes.clear()

        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight submissions")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("Dispatcher stopped")
