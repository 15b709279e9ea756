"""
Notification Service - best-effort dispatch of movement notifications
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from movement_ledger.schemas.movement import NotificationMessage

# Failures land here and nowhere else
logger = logging.getLogger("movement_ledger.notifications")

Publisher = Callable[[str, bytes], Awaitable[None]]


class NotificationDispatcher:
    """
    Sends notifications without ever blocking or failing the caller.
    Each send runs as its own task with a bounded timeout.
    """

    def __init__(self, publisher: Optional[Publisher], routing_key: str, timeout: float = 5.0):
        self.publisher = publisher
        self.routing_key = routing_key
        self.timeout = timeout
        self.sent_count: int = 0
        self.failed_count: int = 0
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, notification: NotificationMessage) -> Optional[asyncio.Task]:
        """Schedule a notification; returns the task so callers may await it in tests"""
        if self.publisher is None:
            logger.debug(f"No publisher configured, notification dropped: {notification.type}")
            return None

        task = asyncio.create_task(self._send(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, notification: NotificationMessage):
        body = notification.model_dump_json().encode("utf-8")
        try:
            await asyncio.wait_for(self.publisher(self.routing_key, body), timeout=self.timeout)
            self.sent_count += 1
        except asyncio.TimeoutError:
            self.failed_count += 1
            logger.warning(
                f"Notification {notification.type} for product {notification.product_id} timed out after {self.timeout}s"
            )
        except Exception as e:
            self.failed_count += 1
            logger.error(f"Notification {notification.type} for product {notification.product_id} failed: {e}")

    async def drain(self):
        """Wait for notifications still in flight (used at shutdown)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
