#!/usr/bin/env python3
"""
Submission Orchestrator

Drives one WorkItem through the platform's multi-step application flow:

1. Ensure a resume exists (reuse by id, reuse on duplicate title, create otherwise)
2. Publish it (best-effort)
3. Poll until the resume is resolvable (bounded, silent on give-up)
4. Create the negotiation with an idempotency key
   - rejected fields: retry once with the alternate encoding
   - resume not found: retry this step alone a bounded number of times
5. Still not found: fall back once to a fresh resume under a unique title
6. Attach the cover letter (best-effort)

The platform is eventually consistent, so a resume created in step 1 may not
be visible to step 4 for a while. Outcomes are folded back into the WorkItem
through conditional status updates.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from adapters.base import (
    ExternalSubmissionClient,
    RequestEncoding,
    ResourceRef,
    SubmissionClientFactory,
    TransactionRef,
    is_resource_complete,
)
from adapters.errors import ErrorCategory, SubmissionError, classify_exception
from api.database import WorkItemStore
from api.idempotency import make_idempotency_key
from api.logging_config import log_submission, logger
from api.models import (
    SubmissionAttemptResult,
    WorkItem,
    WorkItemStatus,
    utcnow,
)
from monitoring.notifications import ProgressNotifier

DEFAULT_RESOURCE_TITLE = "Resume"


@dataclass
class OrchestratorConfig:
    call_timeout_seconds: float = 20.0
    readiness_poll_attempts: int = 5
    readiness_poll_delay_seconds: float = 2.0
    transaction_retry_attempts: int = 3
    transaction_retry_delay_seconds: float = 3.0
    idempotency_window_seconds: int = 300
    base_retry_delay_seconds: float = 20.0
    max_retry_delay_seconds: float = 1800.0  # 30m
    platform_rate_limit_floor_seconds: float = 60.0

    @classmethod
    def from_app_config(cls, cfg) -> "OrchestratorConfig":
        return cls(
            call_timeout_seconds=cfg.HTTP_TIMEOUT_SECONDS,
            readiness_poll_attempts=cfg.READINESS_POLL_ATTEMPTS,
            readiness_poll_delay_seconds=cfg.READINESS_POLL_DELAY_SECONDS,
            transaction_retry_attempts=cfg.TRANSACTION_RETRY_ATTEMPTS,
            transaction_retry_delay_seconds=cfg.TRANSACTION_RETRY_DELAY_SECONDS,
            idempotency_window_seconds=cfg.IDEMPOTENCY_WINDOW_SECONDS,
            base_retry_delay_seconds=cfg.QUEUE_BASE_RETRY_DELAY_SECONDS,
            max_retry_delay_seconds=cfg.QUEUE_MAX_RETRY_DELAY_SECONDS,
            platform_rate_limit_floor_seconds=cfg.PLATFORM_RATE_LIMIT_FLOOR_SECONDS,
        )


@dataclass
class _Attempt:
    """Mutable state of one cascade run, kept so failures can persist partial progress."""
    idempotency_key: str
    resource_id: Optional[str] = None
    fallback_used: bool = False


class SubmissionOrchestrator:
    def __init__(
        self,
        clients: SubmissionClientFactory,
        store: WorkItemStore,
        notifier: Optional[ProgressNotifier] = None,
        config: Optional[OrchestratorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.clients = clients
        self.store = store
        self.notifier = notifier
        self.config = config or OrchestratorConfig()
        self.sleep = sleep
        self.clock = clock

    async def process(self, item: WorkItem) -> Optional[WorkItem]:
        """
        Claim `item` and run the submission cascade to an outcome.

        Returns the updated WorkItem, or None when another dispatcher claimed
        the item first (nothing was sent to the platform).
        """
        attempts = item.attempts + 1
        claimed = await self.store.update_status(
            item.id,
            WorkItemStatus.SUBMITTING,
            expected=item.status,
            expected_version=item.version,
            attempts=attempts,
        )
        if not claimed:
            logger.info(f"WorkItem {item.id} already claimed, skipping")
            return None

        item = replace(item, status=WorkItemStatus.SUBMITTING, attempts=attempts, version=item.version + 1)
        log_submission(item.id, item.user_id, item.job_external_id, WorkItemStatus.SUBMITTING.value)
        self._notify_progress(item, WorkItemStatus.SUBMITTING)

        attempt = _Attempt(
            idempotency_key=make_idempotency_key(
                item.user_id,
                item.job_external_id,
                self.clock(),
                window_seconds=self.config.idempotency_window_seconds,
            ),
            resource_id=item.external_resource_id,
        )

        try:
            result = await self._submit(item, attempt)
        except SubmissionError as e:
            await self._record_failure(item, attempt, e)
        except Exception as e:
            # Unknown failures are treated as transient.
            logger.error(f"Unexpected error submitting WorkItem {item.id}: {e}")
            await self._record_failure(item, attempt, classify_exception(e))
        else:
            await self._record_success(item, result)

        return await self.store.get_item(item.id)

    # --- cascade ---

    async def _submit(self, item: WorkItem, attempt: _Attempt) -> SubmissionAttemptResult:
        client = await self._call(self.clients.for_user(item.user_id))

        attempt.resource_id = await self._ensure_resource(client, item, attempt.resource_id)
        try:
            transaction = await self._apply_with_resource(client, item, attempt)
        except SubmissionError as e:
            if not e.is_resource_not_found:
                raise
            logger.warning(
                f"WorkItem {item.id}: resume {attempt.resource_id} still not found, "
                f"falling back to a fresh resume"
            )
            attempt.resource_id = await self._create_fallback_resource(client, item)
            attempt.fallback_used = True
            try:
                transaction = await self._apply_with_resource(client, item, attempt)
            except SubmissionError as fallback_error:
                if not fallback_error.is_resource_not_found:
                    raise
                raise SubmissionError(
                    f"resume not found after fallback: {fallback_error.message}",
                    ErrorCategory.NOT_FOUND,
                    status=fallback_error.status,
                    bad_arguments=fallback_error.bad_arguments,
                    error_values=fallback_error.error_values,
                    details=fallback_error.details,
                ) from fallback_error

        message_attached = await self._attach_cover_letter(client, item, transaction.id)
        return SubmissionAttemptResult(
            external_resource_id=attempt.resource_id,
            external_transaction_id=transaction.id,
            idempotency_key=attempt.idempotency_key,
            fallback_used=attempt.fallback_used,
            message_attached=message_attached,
        )

    async def _apply_with_resource(
        self,
        client: ExternalSubmissionClient,
        item: WorkItem,
        attempt: _Attempt,
    ) -> TransactionRef:
        await self._publish(client, attempt.resource_id)
        await self._wait_until_ready(client, attempt.resource_id)
        return await self._create_transaction(client, item, attempt.resource_id, attempt.idempotency_key)

    async def _ensure_resource(
        self,
        client: ExternalSubmissionClient,
        item: WorkItem,
        existing_id: Optional[str],
    ) -> str:
        payload = item.payload or {}
        existing_id = existing_id or payload.get("resume_id") or payload.get("external_resource_id")
        if existing_id:
            await self._complete_existing(client, str(existing_id), payload)
            return str(existing_id)

        return await self._create_resource(client, payload, self._resource_title(item))

    async def _complete_existing(self, client: ExternalSubmissionClient, resource_id: str, payload: Dict[str, Any]):
        """Best-effort: top up an incomplete resume, proceed whatever happens."""
        try:
            resource = await self._call(client.get_resource(resource_id))
        except SubmissionError as e:
            logger.warning(f"Could not verify resume {resource_id}: {e}")
            return
        if is_resource_complete(resource):
            return
        logger.info(f"Resume {resource_id} is incomplete, updating")
        try:
            await self._call(client.update_resource(resource_id, payload))
        except SubmissionError as e:
            logger.warning(f"Resume {resource_id} update failed, continuing: {e}")

    async def _create_resource(self, client: ExternalSubmissionClient, payload: Dict[str, Any], title: str) -> str:
        try:
            ref = await self._call(client.create_resource({**payload, "title": title}))
        except SubmissionError as e:
            if e.category != ErrorCategory.DUPLICATE:
                raise
            logger.info(f"Resume titled {title!r} already exists, reusing it")
            ref = ResourceRef(id=None, title=title)

        if ref.id:
            return ref.id

        found = await self._call(client.find_resource_by_title(title))
        if found is None or not found.id:
            raise SubmissionError(
                f"resume {title!r} has no identifiable id",
                ErrorCategory.RESOURCE_NOT_FOUND,
            )
        return found.id

    async def _create_fallback_resource(self, client: ExternalSubmissionClient, item: WorkItem) -> str:
        title = f"{self._resource_title(item)} ({uuid.uuid4().hex[:6]})"
        resource_id = await self._create_resource(client, item.payload or {}, title)
        logger.info(f"WorkItem {item.id}: fallback resume {resource_id} created as {title!r}")
        return resource_id

    async def _publish(self, client: ExternalSubmissionClient, resource_id: str) -> bool:
        try:
            await self._call(client.publish(resource_id))
            return True
        except SubmissionError as e:
            if e.category == ErrorCategory.CANNOT_PUBLISH:
                logger.debug(f"Resume {resource_id} cannot be published, continuing")
                return True
            logger.warning(f"Publishing resume {resource_id} failed, continuing: {e}")
            return False

    async def _wait_until_ready(self, client: ExternalSubmissionClient, resource_id: str) -> bool:
        attempts = max(1, self.config.readiness_poll_attempts)
        for n in range(1, attempts + 1):
            try:
                await self._call(client.get_resource(resource_id))
                return True
            except SubmissionError as e:
                logger.debug(f"Resume {resource_id} not ready ({n}/{attempts}): {e.category.value}")
            if n < attempts:
                await self.sleep(self.config.readiness_poll_delay_seconds)
        return False

    async def _create_transaction(
        self,
        client: ExternalSubmissionClient,
        item: WorkItem,
        resource_id: str,
        idempotency_key: str,
    ) -> TransactionRef:
        encoding = RequestEncoding.JSON
        switched_encoding = False
        not_found_retries = 0

        while True:
            try:
                return await self._call(
                    client.create_transaction(resource_id, item.job_external_id, idempotency_key, encoding)
                )
            except SubmissionError as e:
                if e.category == ErrorCategory.VALIDATION and e.rejected_fields and not switched_encoding:
                    logger.info(
                        f"WorkItem {item.id}: fields {e.rejected_fields} rejected, retrying as {RequestEncoding.FORM.value}"
                    )
                    encoding = RequestEncoding.FORM
                    switched_encoding = True
                    continue
                if e.is_resource_not_found and not_found_retries < self.config.transaction_retry_attempts:
                    not_found_retries += 1
                    logger.info(
                        f"WorkItem {item.id}: resume {resource_id} not visible yet "
                        f"(retry {not_found_retries}/{self.config.transaction_retry_attempts})"
                    )
                    await self.sleep(self.config.transaction_retry_delay_seconds)
                    continue
                raise

    async def _attach_cover_letter(self, client: ExternalSubmissionClient, item: WorkItem, transaction_id: str) -> bool:
        text = (item.cover_letter or "").strip()
        if not text:
            return False
        try:
            await self._call(client.attach_message(transaction_id, text))
            return True
        except SubmissionError as e:
            logger.warning(f"Cover letter for negotiation {transaction_id} not attached: {e}")
            return False

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        """Await one external call under the hard timeout, normalizing failures to SubmissionError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.call_timeout_seconds)
        except SubmissionError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

    def _resource_title(self, item: WorkItem) -> str:
        payload = item.payload or {}
        return str(payload.get("title") or DEFAULT_RESOURCE_TITLE).strip()

    # --- outcomes ---

    async def _record_success(self, item: WorkItem, result: SubmissionAttemptResult):
        won = await self.store.update_status(
            item.id,
            WorkItemStatus.SUBMITTED,
            expected=WorkItemStatus.SUBMITTING,
            external_resource_id=result.external_resource_id,
            external_transaction_id=result.external_transaction_id,
            fallback_used=result.fallback_used,
            idempotency_key=result.idempotency_key,
            submitted_at=self.clock(),
            next_run_at=None,
            last_error=None,
        )
        if not won:
            logger.error(f"WorkItem {item.id} submitted as {result.external_transaction_id} but its claim was lost")
            return
        log_submission(item.id, item.user_id, item.job_external_id, WorkItemStatus.SUBMITTED.value)
        self._notify_completed(
            item,
            WorkItemStatus.SUBMITTED,
            external_transaction_id=result.external_transaction_id,
            fallback_used=result.fallback_used,
            message_attached=result.message_attached,
        )

    async def _record_failure(self, item: WorkItem, attempt: _Attempt, error: SubmissionError):
        exhausted = item.attempts >= item.max_attempts
        now = self.clock()

        if error.retryable and not exhausted:
            if error.category == ErrorCategory.RATE_LIMITED:
                status = WorkItemStatus.RATE_LIMITED
                delay = max(error.retry_after or 0.0, self._compute_backoff_seconds(item.attempts, is_rate_limit=True))
            else:
                status = WorkItemStatus.PENDING
                delay = self._compute_backoff_seconds(item.attempts, is_rate_limit=False)
            next_run_at = now + timedelta(seconds=delay)
        else:
            status = WorkItemStatus.FAILED
            next_run_at = None

        fields: Dict[str, Any] = {
            "last_error": error.to_cause(),
            "next_run_at": next_run_at,
            "idempotency_key": attempt.idempotency_key,
        }
        if attempt.resource_id:
            fields["external_resource_id"] = attempt.resource_id
        if attempt.fallback_used:
            fields["fallback_used"] = True

        won = await self.store.update_status(item.id, status, expected=WorkItemStatus.SUBMITTING, **fields)
        if not won:
            logger.error(f"WorkItem {item.id} failed ({error.category.value}) but its claim was lost")
            return

        log_submission(item.id, item.user_id, item.job_external_id, status.value, error=str(error))
        if status == WorkItemStatus.FAILED:
            self._notify_completed(item, status, error=error.to_cause())
        else:
            self._notify_progress(item, status, next_run_at=next_run_at.isoformat(), error=error.category.value)

    def _compute_backoff_seconds(self, attempt_number: int, *, is_rate_limit: bool) -> float:
        base = self.config.base_retry_delay_seconds
        if is_rate_limit:
            base *= 3
        exp = min(self.config.max_retry_delay_seconds, base * (2 ** max(0, attempt_number - 1)))
        jitter = random.uniform(0, min(30.0, exp * 0.15))
        delay = min(self.config.max_retry_delay_seconds, exp + jitter)
        if is_rate_limit:
            delay = max(delay, self.config.platform_rate_limit_floor_seconds)
        return float(delay)

    # --- notifications ---

    def _notify_progress(self, item: WorkItem, status: WorkItemStatus, **extra: Any):
        if self.notifier is None:
            return
        try:
            self.notifier.application_progress(item, status.value, **extra)
        except Exception as e:
            logger.warning(f"Progress notification failed for {item.id}: {e}")

    def _notify_completed(self, item: WorkItem, status: WorkItemStatus, **extra: Any):
        if self.notifier is None:
            return
        try:
            self.notifier.application_completed(item, status.value, **extra)
        except Exception as e:
            logger.warning(f"Completion notification failed for {item.id}: {e}")
