"""
Tests for the aiosqlite WorkItem store.
"""

import asyncio

import pytest
from datetime import timedelta

from api.models import InvalidTransition, WorkItemStatus

S = WorkItemStatus


async def _workflow(store, user_id="user-1", jobs=("vac-1",), **kwargs):
    workflow_id = await store.create_workflow(user_id, "cv-1")
    await store.enqueue(workflow_id, [{"job_external_id": j} for j in jobs], **kwargs)
    return workflow_id


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_returns_count(self, store):
        workflow_id = await store.create_workflow("user-1", "cv-1")
        added = await store.enqueue(workflow_id, [
            {"job_external_id": "vac-1", "cover_letter": "Hello"},
            {"job_external_id": "vac-2", "payload": {"title": "Backend"}},
            {"job_external_id": ""},
        ])
        assert added == 2

        items = await store.list_items(workflow_id)
        assert {i.job_external_id for i in items} == {"vac-1", "vac-2"}
        assert all(i.status == S.PENDING for i in items)
        assert all(i.user_id == "user-1" and i.cv_reference == "cv-1" for i in items)
        assert all(i.max_attempts == 5 for i in items)

    @pytest.mark.asyncio
    async def test_duplicate_jobs_are_skipped(self, store):
        first = await _workflow(store, jobs=("vac-1",))
        second = await store.create_workflow("user-1", "cv-1")
        assert await store.enqueue(second, [{"job_external_id": "vac-1"}, {"job_external_id": "vac-2"}]) == 1

        # A different user may apply to the same job
        other = await store.create_workflow("user-2")
        assert await store.enqueue(other, [{"job_external_id": "vac-1"}]) == 1

        # Once the earlier attempt failed, the job can be queued again
        item = (await store.list_items(first))[0]
        await store.update_status(item.id, S.SUBMITTING, expected=S.PENDING, attempts=1)
        await store.update_status(item.id, S.FAILED, expected=S.SUBMITTING)
        assert await store.enqueue(second, [{"job_external_id": "vac-1"}]) == 1

    @pytest.mark.asyncio
    async def test_unknown_workflow_rejected(self, store):
        with pytest.raises(ValueError):
            await store.enqueue("wf_missing", [{"job_external_id": "vac-1"}])

    @pytest.mark.asyncio
    async def test_enqueue_customizing(self, store):
        workflow_id = await store.create_workflow("user-1")
        await store.enqueue(workflow_id, [{"job_external_id": "vac-1", "status": "customizing"}])
        item = (await store.list_items(workflow_id))[0]
        assert item.status == S.CUSTOMIZING
        assert await store.next_ready(workflow_id) is None

    @pytest.mark.asyncio
    async def test_enqueue_rejects_lifecycle_statuses(self, store):
        workflow_id = await store.create_workflow("user-1")
        with pytest.raises(ValueError):
            await store.enqueue(workflow_id, [{"job_external_id": "vac-1", "status": "submitted"}])


class TestNextReady:

    @pytest.mark.asyncio
    async def test_priority_then_next_run_at(self, store, mock_clock):
        workflow_id = await store.create_workflow("user-1")
        await store.enqueue(workflow_id, [{"job_external_id": "low"}], priority=0)
        mock_clock.advance(1)
        await store.enqueue(workflow_id, [{"job_external_id": "high-late"}], priority=5)
        mock_clock.advance(1)
        await store.enqueue(workflow_id, [{"job_external_id": "high-later"}], priority=5)

        order = []
        while True:
            item = await store.next_ready(workflow_id)
            if item is None:
                break
            order.append(item.job_external_id)
            await store.update_status(item.id, S.SUBMITTING, expected=item.status)
        assert order == ["high-late", "high-later", "low"]

    @pytest.mark.asyncio
    async def test_future_items_are_not_ready(self, store, mock_clock):
        workflow_id = await _workflow(store)
        item = (await store.list_items(workflow_id))[0]
        wake = mock_clock() + timedelta(minutes=10)
        await store.update_status(item.id, S.RATE_LIMITED, expected=S.PENDING, next_run_at=wake)

        assert await store.next_ready(workflow_id) is None
        assert await store.next_wake_at(workflow_id) == wake

        mock_clock.advance(600)
        ready = await store.next_ready(workflow_id)
        assert ready is not None and ready.status == S.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_next_wake_at_empty(self, store):
        workflow_id = await store.create_workflow("user-1")
        assert await store.next_wake_at(workflow_id) is None


class TestUpdateStatus:

    @pytest.mark.asyncio
    async def test_conditional_update_has_one_winner(self, store):
        workflow_id = await _workflow(store)
        item = (await store.list_items(workflow_id))[0]

        results = await asyncio.gather(*[
            store.update_status(item.id, S.SUBMITTING, expected=S.PENDING, expected_version=item.version)
            for _ in range(5)
        ])
        assert results.count(True) == 1

        updated = await store.get_item(item.id)
        assert updated.status == S.SUBMITTING
        assert updated.version == item.version + 1

    @pytest.mark.asyncio
    async def test_stale_version_loses(self, store):
        workflow_id = await _workflow(store)
        item = (await store.list_items(workflow_id))[0]
        await store.update_status(item.id, S.READY, expected=S.PENDING)
        await store.update_status(item.id, S.PAUSED, expected=S.READY)
        await store.update_status(item.id, S.PENDING, expected=S.PAUSED)

        # Status matches again but the version moved on
        assert not await store.update_status(
            item.id, S.SUBMITTING, expected=S.PENDING, expected_version=item.version
        )

    @pytest.mark.asyncio
    async def test_invalid_transition_raises(self, store):
        workflow_id = await _workflow(store)
        item = (await store.list_items(workflow_id))[0]
        with pytest.raises(InvalidTransition):
            await store.update_status(item.id, S.SUBMITTED, expected=S.PENDING, external_transaction_id="n1")

    @pytest.mark.asyncio
    async def test_submitted_requires_transaction_id(self, store):
        workflow_id = await _workflow(store)
        item = (await store.list_items(workflow_id))[0]
        await store.update_status(item.id, S.SUBMITTING, expected=S.PENDING)
        with pytest.raises(ValueError):
            await store.update_status(item.id, S.SUBMITTED, expected=S.SUBMITTING)

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, store):
        workflow_id = await _workflow(store)
        item = (await store.list_items(workflow_id))[0]
        with pytest.raises(ValueError):
            await store.update_status(item.id, S.READY, expected=S.PENDING, user_id="someone-else")

    @pytest.mark.asyncio
    async def test_fields_are_persisted(self, store, mock_clock):
        workflow_id = await _workflow(store)
        item = (await store.list_items(workflow_id))[0]
        await store.update_status(item.id, S.SUBMITTING, expected=S.PENDING, attempts=1)
        await store.update_status(
            item.id,
            S.SUBMITTED,
            expected=S.SUBMITTING,
            external_resource_id="res-1",
            external_transaction_id="neg-1",
            fallback_used=True,
            idempotency_key="abc",
            submitted_at=mock_clock(),
            last_error=None,
        )
        done = await store.get_item(item.id)
        assert done.status == S.SUBMITTED
        assert done.attempts == 1
        assert done.external_transaction_id == "neg-1"
        assert done.fallback_used is True
        assert done.submitted_at == mock_clock()
        assert done.is_terminal


class TestWorkflowControl:

    @pytest.mark.asyncio
    async def test_progress_counts(self, store):
        workflow_id = await _workflow(store, jobs=("a", "b", "c"))
        items = await store.list_items(workflow_id)
        await store.update_status(items[0].id, S.SUBMITTING, expected=S.PENDING, attempts=1)
        await store.update_status(items[0].id, S.FAILED, expected=S.SUBMITTING)

        progress = await store.progress(workflow_id)
        assert progress.pending == 2
        assert progress.failed == 1
        assert progress.total == 3

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, store):
        workflow_id = await _workflow(store, jobs=("a", "b", "c"))
        items = await store.list_items(workflow_id)
        await store.update_status(items[0].id, S.SUBMITTING, expected=S.PENDING)

        assert await store.pause_workflow(workflow_id) == 2
        assert (await store.get_workflow(workflow_id))["status"] == "paused"
        assert await store.next_ready(workflow_id) is None
        assert (await store.get_item(items[0].id)).status == S.SUBMITTING
        assert await store.list_workflow_ids_with_work() == []

        assert await store.resume_workflow(workflow_id) == 2
        assert (await store.get_workflow(workflow_id))["status"] == "running"
        assert (await store.progress(workflow_id)).pending == 2
        assert await store.list_workflow_ids_with_work() == [workflow_id]

    @pytest.mark.asyncio
    async def test_attach_payload_marks_ready(self, store):
        workflow_id = await store.create_workflow("user-1")
        await store.enqueue(workflow_id, [{"job_external_id": "vac-1"}])
        item = (await store.list_items(workflow_id))[0]

        assert await store.mark_customizing(item.id)
        assert await store.attach_payload(item.id, {"title": "Data Engineer"})

        ready = await store.get_item(item.id)
        assert ready.status == S.READY
        assert ready.payload == {"title": "Data Engineer"}

        # Only once
        assert not await store.attach_payload(item.id, {"title": "Other"})
        assert not await store.attach_payload("wi_missing", {})

    @pytest.mark.asyncio
    async def test_requeue_stale_submitting(self, store, mock_clock):
        workflow_id = await _workflow(store, jobs=("old", "fresh"))
        old, fresh = sorted(await store.list_items(workflow_id), key=lambda i: i.job_external_id == "fresh")
        await store.update_status(old.id, S.SUBMITTING, expected=S.PENDING)
        mock_clock.advance(1200)
        await store.update_status(fresh.id, S.SUBMITTING, expected=S.PENDING)

        assert await store.requeue_stale_submitting(mock_clock() - timedelta(seconds=900)) == 1
        assert (await store.get_item(old.id)).status == S.PENDING
        assert (await store.get_item(fresh.id)).status == S.SUBMITTING

    @pytest.mark.asyncio
    async def test_stale_claim_without_attempts_left_fails(self, store, mock_clock):
        workflow_id = await _workflow(store, jobs=("spent", "retry"), max_attempts=2)
        items = {i.job_external_id: i for i in await store.list_items(workflow_id)}
        await store.update_status(items["spent"].id, S.SUBMITTING, expected=S.PENDING, attempts=2)
        await store.update_status(items["retry"].id, S.SUBMITTING, expected=S.PENDING, attempts=1)
        mock_clock.advance(3600)

        assert await store.requeue_stale_submitting(mock_clock() - timedelta(seconds=900)) == 1

        spent = await store.get_item(items["spent"].id)
        assert spent.status == S.FAILED
        assert spent.attempts == 2
        assert spent.next_run_at is None
        assert spent.last_error_cause == {"category": "timeout", "message": "claim abandoned"}
        assert (await store.get_item(items["retry"].id)).status == S.PENDING
        assert (await store.next_ready(workflow_id)).id == items["retry"].id

    @pytest.mark.asyncio
    async def test_pause_checks_transition_table(self, store, monkeypatch):
        from api import models

        workflow_id = await _workflow(store, jobs=("a",))
        monkeypatch.setitem(models.TRANSITIONS, S.READY, frozenset({S.SUBMITTING}))

        with pytest.raises(InvalidTransition):
            await store.pause_workflow(workflow_id)
        assert (await store.progress(workflow_id)).pending == 1
