"""
Event Bus

One-way push notifications for the control panel (new log entries, OAuth
progress, proxy status changes). Publishing never blocks: a subscriber whose
queue is full simply misses the event.

Publishers may run on worker threads (sync FastAPI routes); each event is
handed to the subscriber's own event loop.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LOG_APPENDED = "logs:new"
OAUTH_PROGRESS = "oauth:progress"
PROXY_STATUS_CHANGED = "proxy:status"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class EventBus:
    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: List[Tuple[asyncio.Queue, asyncio.AbstractEventLoop]] = []

    def subscribe(self) -> asyncio.Queue:
        """Must be called from the event loop that will read the queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append((queue, asyncio.get_running_loop()))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers = [(q, loop) for q, loop in self._subscribers if q is not queue]

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        message = {"event": event, "data": payload}
        current = _running_loop()
        for queue, loop in list(self._subscribers):
            if loop is current:
                self._deliver(queue, event, message)
                continue
            try:
                loop.call_soon_threadsafe(self._deliver, queue, event, message)
            except RuntimeError:
                # The subscriber's loop is closed; nobody will read this queue again.
                self.unsubscribe(queue)

    @staticmethod
    def _deliver(queue: asyncio.Queue, event: str, message: Dict[str, Any]) -> None:
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.debug("Dropping %s event for slow subscriber", event)
