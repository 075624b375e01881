"""
Progress publish/subscribe.

The pipeline publishes ProgressEvents keyed by subscriber id; transports
(the WebSocket endpoint) attach a queue per connection and drain it. Delivery
is best effort: publishing never waits, and events for absent or lagging
subscribers are dropped.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .logging import get_logger

logger = get_logger("progress")


class Phase(str, Enum):
    """Stage of a relay job as reported to subscribers."""
    VERIFYING = "verifying"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    subscriber_id: str
    phase: Phase
    percent: float
    message: str = ""
    bytes_transferred: int = 0

    def to_dict(self) -> dict:
        return {
            "type": "progress",
            "job_id": self.job_id,
            "phase": self.phase.value,
            "percent": round(self.percent, 2),
            "message": self.message,
            "bytes_transferred": self.bytes_transferred,
        }


class ProgressChannel:
    """Fan-out of progress events to per-subscriber queues."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self, subscriber_id: str) -> asyncio.Queue:
        """Attach a new listener. Each attachment gets its own FIFO queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(subscriber_id, []).append(queue)
        logger.debug(f"Subscriber {subscriber_id} attached")
        return queue

    def unsubscribe(self, subscriber_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(subscriber_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[subscriber_id]
        logger.debug(f"Subscriber {subscriber_id} detached")

    def has_subscriber(self, subscriber_id: str) -> bool:
        return bool(self._subscribers.get(subscriber_id))

    def publish(self, subscriber_id: Optional[str], event: ProgressEvent) -> bool:
        """Deliver without waiting. Returns True if at least one queue took it."""
        if not subscriber_id:
            return False
        delivered = False
        for queue in list(self._subscribers.get(subscriber_id, ())):
            try:
                queue.put_nowait(event)
                delivered = True
            except asyncio.QueueFull:
                logger.debug(f"Dropping {event.phase.value} event for slow subscriber {subscriber_id}")
        return delivered
