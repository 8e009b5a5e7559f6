from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx

from inbox_threads.services.retry import RetryPolicy, with_retry

if TYPE_CHECKING:
    from inbox_threads.config import Settings

logger = logging.getLogger(__name__)


class NotificationService:
    """Best-effort webhook for lifecycle events; delivery failures never propagate."""

    def __init__(self, settings: "Settings", *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self.policy = RetryPolicy.from_settings(settings)
        self._transport = transport

    async def notify(
        self,
        *,
        event_type: str,
        summary: str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        payload = {
            "event": "thread_notification",
            "event_type": event_type,
            "summary": summary,
            "context": context or {},
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("Thread notification", extra=payload)

        if not self.settings.notification_webhook_url:
            return False

        async def _post() -> httpx.Response:
            async with httpx.AsyncClient(timeout=20.0, transport=self._transport) as client:
                return await client.post(self.settings.notification_webhook_url, json=payload)

        try:
            await with_retry(_post, operation="notification_webhook_post", policy=self.policy, logger=logger)
        except Exception as exc:
            logger.error(
                "Failed to deliver notification webhook",
                extra={"event": "notification_delivery_failed", "event_type": event_type, "error": repr(exc)},
            )
            return False
        return True


_pending: set[asyncio.Task] = set()


def _finished(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Notification task failed",
            extra={"event": "notification_task_failed", "error": repr(exc)},
        )


def schedule_notification(notifier: "NotificationService", **kwargs: Any) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(notifier.notify(**kwargs))
    _pending.add(task)
    task.add_done_callback(_finished)
    return task
