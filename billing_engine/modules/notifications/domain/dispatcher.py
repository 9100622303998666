"""
Notification Dispatcher

Best-effort delivery of tenant notifications, decoupled from the billing
transaction through a bounded in-process queue. Producers enqueue only
after their transaction has committed; a slow or failing sender can delay
emails but never a state transition.
"""

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import structlog

from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.metrics import NOTIFICATIONS_SENT

logger = structlog.get_logger()


class NotificationSender(Protocol):
    async def send(self, contact: Optional[str], kind: str, context: Dict[str, Any]) -> bool:
        ...


@dataclass(frozen=True)
class Notification:
    kind: str
    contact: Optional[str]
    context: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher:
    """Single worker draining a bounded asyncio.Queue into a NotificationSender."""

    def __init__(self, sender: NotificationSender, maxsize: Optional[int] = None):
        self.sender = sender
        self.queue: asyncio.Queue[Notification] = asyncio.Queue(
            maxsize=maxsize or get_settings().NOTIFICATION_QUEUE_SIZE
        )
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, notification: Notification) -> bool:
        try:
            self.queue.put_nowait(notification)
            return True
        except asyncio.QueueFull:
            NOTIFICATIONS_SENT.labels(kind=notification.kind, outcome="dropped").inc()
            logger.warning(
                "notification_queue_full",
                kind=notification.kind,
                tenant_id=notification.context.get("tenant_id"),
            )
            return False

    async def _deliver(self, notification: Notification) -> bool:
        try:
            delivered = await self.sender.send(
                notification.contact, notification.kind, notification.context
            )
        except Exception as e:
            logger.error("notification_send_error", kind=notification.kind, error=str(e))
            delivered = False

        NOTIFICATIONS_SENT.labels(
            kind=notification.kind,
            outcome="sent" if delivered else "failed",
        ).inc()
        if not delivered:
            logger.warning(
                "notification_not_delivered",
                kind=notification.kind,
                tenant_id=notification.context.get("tenant_id"),
            )
        return delivered

    async def _run(self) -> None:
        while True:
            notification = await self.queue.get()
            try:
                await self._deliver(notification)
            finally:
                self.queue.task_done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
            logger.info("notification_dispatcher_started")

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        if self.running:
            await self.queue.join()
            return
        while not self.queue.empty():
            notification = self.queue.get_nowait()
            try:
                await self._deliver(notification)
            finally:
                self.queue.task_done()

    async def stop(self, drain: bool = True) -> None:
        if drain:
            await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
            logger.info("notification_dispatcher_stopped")
