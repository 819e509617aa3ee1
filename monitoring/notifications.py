#!/usr/bin/env python3
"""
Progress notifications for application workflows.

publish() is fire-and-forget:
- In-process subscribers get events through bounded asyncio queues.
- An optional webhook receives the same events (best-effort, background task).
- Nothing raised by a listener or the webhook reaches the submission pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp

from api.models import WorkItem, format_ts, utcnow

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]


def user_topic(user_id: str) -> str:
    return f"user:{user_id}:applications"


@dataclass
class NotificationConfig:
    webhook_url: str = os.getenv("NOTIFY_WEBHOOK_URL", "")
    webhook_timeout_seconds: float = 12.0
    queue_size: int = 100


class ProgressNotifier:
    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or NotificationConfig()
        self._queues: Dict[str, List[asyncio.Queue]] = {}
        self._listeners: List[Listener] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._queues.setdefault(topic, []).append(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue):
        queues = self._queues.get(topic) or []
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._queues.pop(topic, None)

    def add_listener(self, listener: Listener):
        """Register a synchronous callback that sees every event on every topic."""
        self._listeners.append(listener)

    def publish(self, topic: str, event: Dict[str, Any]) -> None:
        event = dict(event)
        event.setdefault("timestamp", format_ts(utcnow()))

        for queue in list(self._queues.get(topic) or []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.get('event')} for slow subscriber on {topic}")

        for listener in list(self._listeners):
            try:
                listener(topic, event)
            except Exception as e:
                logger.warning(f"Notification listener failed on {topic}: {e}")

        if self.config.webhook_url:
            self._schedule_webhook(topic, event)

    def _schedule_webhook(self, topic: str, event: Dict[str, Any]):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, webhook notification skipped")
            return
        task = loop.create_task(self._post_json(self.config.webhook_url, {"topic": topic, **event}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post_json(self, url: str, payload: dict) -> bool:
        if not url:
            return False
        try:
            timeout = aiohttp.ClientTimeout(total=self.config.webhook_timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as resp:
                    if 200 <= resp.status < 300:
                        return True
                    text = await resp.text()
                    logger.warning(f"Webhook failed ({resp.status}): {text[:200]}")
                    return False
        except Exception as e:
            logger.warning(f"Webhook error: {e}")
            return False

    async def drain(self):
        """Wait for in-flight webhook posts. Used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- events ---

    def application_progress(self, item: WorkItem, status: str, **extra: Any):
        event = {
            "event": "application_progress",
            "workflow_id": item.workflow_id,
            "item_id": item.id,
            "job_external_id": item.job_external_id,
            "status": status,
            "attempts": item.attempts,
        }
        event.update(extra)
        self.publish(user_topic(item.user_id), event)

    def application_completed(self, item: WorkItem, status: str, **extra: Any):
        event = {
            "event": "application_completed",
            "workflow_id": item.workflow_id,
            "item_id": item.id,
            "job_external_id": item.job_external_id,
            "status": status,
        }
        event.update(extra)
        self.publish(user_topic(item.user_id), event)
        logger.info(f"Notification event: {json.dumps(event, ensure_ascii=True, default=str)[:800]}")

    def rate_limit_update(self, user_id: str, status: Dict[str, Any]):
        self.publish(user_topic(user_id), {"event": "rate_limit_update", **status})
