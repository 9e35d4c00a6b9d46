"""Fire-and-forget notification dispatch.

``notify`` only enqueues; a background worker delivers events to the
registered sinks. Delivery failures are logged and never reach the caller.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from spendguard.notifications.events import NotificationEvent

logger = logging.getLogger(__name__)

Sink = Callable[[NotificationEvent], Awaitable[None]]


async def log_sink(event: NotificationEvent) -> None:
    """Sink that records events in the application log."""
    logger.info(
        f"Notification for account {event.account_id}: {event.type.value} "
        f"amount={event.amount_usd} {event.details}"
    )


class NotificationDispatcher:
    """Bounded queue plus a single delivery worker."""

    def __init__(self, sinks: Optional[list[Sink]] = None, max_queue_size: int = 1000):
        self.sinks: list[Sink] = list(sinks) if sinks is not None else [log_sink]
        self._queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    def notify(self, event: NotificationEvent) -> bool:
        """Enqueue an event without waiting. Returns False if the queue is full."""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Notification queue full, dropping {event.type.value} for account {event.account_id}"
            )
            return False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def deliver(self, event: NotificationEvent) -> None:
        """Hand one event to every sink."""
        for sink in self.sinks:
            try:
                await sink(event)
            except Exception as e:
                logger.error(f"Notification sink failed for {event.type.value}: {e}")

    async def drain(self) -> None:
        """Deliver everything currently queued (used by tests and shutdown)."""
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self.deliver(event)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
            logger.info("Notification dispatcher started")

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker after delivering queued events (bounded by ``timeout``)."""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self._queue.qsize()} undelivered notifications on shutdown")
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Notification dispatcher stopped")
