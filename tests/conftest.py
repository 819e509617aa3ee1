"""
Pytest fixtures and configuration for the submission pipeline test suite.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from adapters.base import (
    ExternalSubmissionClient,
    RequestEncoding,
    ResourceRef,
    SubmissionClientFactory,
    TransactionRef,
)
from adapters.errors import ErrorCategory, SubmissionError


# === Clock ===

class MockClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def mock_clock():
    return MockClock(datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc))


# === Fake platform ===

class FakeSubmissionClient(ExternalSubmissionClient):
    """In-memory platform with scriptable failures. Every call is recorded in `calls`."""

    def __init__(self):
        self.calls = []
        self.resources = {}
        self.transactions = []
        self._next_id = 1

        self.create_errors = []       # raised by create_resource, first to last
        self.create_without_id = False
        self.get_failures = 0         # get_resource fails this many times before working
        self.transaction_errors = []  # raised by create_transaction, first to last
        self.transaction_delay = 0.0
        self.update_error = None
        self.publish_error = None
        self.message_error = None

    def add_resource(self, resource_id, title="Resume", **fields):
        resource = {
            "id": resource_id,
            "title": title,
            "first_name": "Anna",
            "last_name": "Ivanova",
            "contact": [{"type": {"id": "email"}, "value": "anna@example.com"}],
        }
        resource.update(fields)
        self.resources[resource_id] = resource
        return resource

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    async def create_resource(self, payload):
        title = payload.get("title")
        self.calls.append(("create_resource", title))
        if self.create_errors:
            raise self.create_errors.pop(0)
        resource_id = f"res-{self._next_id}"
        self._next_id += 1
        self.add_resource(resource_id, title=title)
        return ResourceRef(id=None if self.create_without_id else resource_id, title=title)

    async def update_resource(self, resource_id, payload):
        self.calls.append(("update_resource", resource_id))
        if self.update_error:
            raise self.update_error

    async def get_resource(self, resource_id):
        self.calls.append(("get_resource", resource_id))
        if self.get_failures > 0:
            self.get_failures -= 1
            raise SubmissionError("resume not found", ErrorCategory.NOT_FOUND, status=404)
        if resource_id not in self.resources:
            raise SubmissionError("resume not found", ErrorCategory.NOT_FOUND, status=404)
        return dict(self.resources[resource_id])

    async def find_resource_by_title(self, title):
        self.calls.append(("find_resource_by_title", title))
        for resource in self.resources.values():
            if resource.get("title") == title:
                return ResourceRef(id=resource["id"], title=title)
        return None

    async def publish(self, resource_id):
        self.calls.append(("publish", resource_id))
        if self.publish_error:
            raise self.publish_error

    async def create_transaction(self, resource_id, target_id, idempotency_key, encoding=RequestEncoding.JSON):
        self.calls.append(("create_transaction", resource_id, target_id, idempotency_key, encoding))
        if self.transaction_delay:
            await asyncio.sleep(self.transaction_delay)
        if self.transaction_errors:
            raise self.transaction_errors.pop(0)
        transaction_id = f"neg-{len(self.transactions) + 1}"
        self.transactions.append((transaction_id, resource_id, target_id))
        return TransactionRef(id=transaction_id)

    async def attach_message(self, transaction_id, text):
        self.calls.append(("attach_message", transaction_id, text))
        if self.message_error:
            raise self.message_error


class FakeClientFactory(SubmissionClientFactory):
    def __init__(self, client):
        self.client = client
        self.users = []

    async def for_user(self, user_id):
        self.users.append(user_id)
        return self.client


@pytest.fixture
def fake_client():
    return FakeSubmissionClient()


@pytest.fixture
def client_factory(fake_client):
    return FakeClientFactory(fake_client)


# === Pipeline components ===

@pytest.fixture
async def store(tmp_path, mock_clock):
    from api.database import WorkItemStore

    s = WorkItemStore(tmp_path / "test.db", clock=mock_clock)
    await s.init_database()
    return s


@pytest.fixture
def make_item(store):
    """Create a workflow with a single queued item and return that item."""
    async def _make(job_external_id="vac-1", user_id="user-1", max_attempts=None, **fields):
        workflow_id = await store.create_workflow(user_id, "cv-1")
        await store.enqueue(workflow_id, [{"job_external_id": job_external_id, **fields}], max_attempts=max_attempts)
        items = await store.list_items(workflow_id)
        return items[0]
    return _make


@pytest.fixture
def notifier():
    from monitoring.notifications import NotificationConfig, ProgressNotifier

    return ProgressNotifier(NotificationConfig(webhook_url=""))


@pytest.fixture
def orchestrator_config():
    from api.submission_orchestrator import OrchestratorConfig

    return OrchestratorConfig(
        call_timeout_seconds=5.0,
        readiness_poll_attempts=2,
        readiness_poll_delay_seconds=0.0,
        transaction_retry_attempts=3,
        transaction_retry_delay_seconds=0.0,
        base_retry_delay_seconds=20.0,
        max_retry_delay_seconds=1800.0,
        platform_rate_limit_floor_seconds=60.0,
    )


@pytest.fixture
def orchestrator(client_factory, store, notifier, orchestrator_config, mock_clock):
    from api.submission_orchestrator import SubmissionOrchestrator

    return SubmissionOrchestrator(
        client_factory,
        store,
        notifier,
        orchestrator_config,
        sleep=AsyncMock(),
        clock=mock_clock,
    )


@pytest.fixture
def limiter(mock_clock):
    from api.rate_limiter import RateLimitConfig, RateLimiter

    return RateLimiter(RateLimitConfig(capacity=20, refill_rate=8, refill_interval_seconds=3600), clock=mock_clock)


@pytest.fixture
def dispatcher(store, limiter, orchestrator, notifier, mock_clock):
    from api.dispatcher import DispatcherConfig, WorkflowDispatcher

    return WorkflowDispatcher(
        store,
        limiter,
        orchestrator,
        notifier,
        DispatcherConfig(max_concurrency=4, enabled=False),
        clock=mock_clock,
    )


# === Markers ===

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "resilience: Failure mode and recovery scenarios")
