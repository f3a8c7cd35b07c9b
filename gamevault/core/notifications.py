"""Best-effort notification fan-out.

The escrow core emits one structured event per meaningful transition and
hands it to whichever sink the process configured. Delivery happens on a
background task: a failing sink is logged and otherwise ignored, so it can
never roll back the transition that produced the event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    type: str
    user_id: str
    related_id: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSink(Protocol):
    async def notify(self, event: NotificationEvent) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes the event to the log and nothing else."""

    async def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "notification %s -> user=%s related=%s data=%s",
            event.type, event.user_id, event.related_id, event.data,
        )


_sink: NotificationSink = LoggingNotificationSink()
_PENDING_TASKS: set[asyncio.Task[Any]] = set()


def configure_notification_sink(sink: NotificationSink | None) -> None:
    """Install the process-wide sink. ``None`` restores the logging sink."""
    global _sink
    _sink = sink if sink is not None else LoggingNotificationSink()


def get_notification_sink() -> NotificationSink:
    return _sink


async def _deliver(sink: NotificationSink, event: NotificationEvent) -> None:
    try:
        await sink.notify(event)
    except Exception:
        logger.exception(
            "Notification delivery failed: %s for user %s", event.type, event.user_id
        )


def notify(
    event_type: str,
    user_id: str,
    related_id: str,
    data: dict[str, Any] | None = None,
) -> asyncio.Task[Any] | None:
    """Schedule delivery of one event. Must be called after the commit."""
    event = NotificationEvent(
        type=event_type, user_id=user_id, related_id=related_id, data=data or {}
    )
    coro = _deliver(_sink, event)
    try:
        task = asyncio.create_task(coro, name=f"notify_{event_type}")
    except RuntimeError:
        # No running loop (e.g. during shutdown); notifications are best-effort.
        coro.close()
        logger.warning("Dropped notification %s: no running event loop", event_type)
        return None
    _PENDING_TASKS.add(task)
    task.add_done_callback(_PENDING_TASKS.discard)
    return task


async def drain_notifications(timeout_seconds: float = 1.0) -> None:
    """Wait for in-flight deliveries to finish.

    Used by tests and by the entry point on shutdown.
    """
    pending = {task for task in _PENDING_TASKS if not task.done()}
    if not pending:
        return

    _, still_pending = await asyncio.wait(pending, timeout=timeout_seconds)
    for task in still_pending:
        task.cancel()

    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)
