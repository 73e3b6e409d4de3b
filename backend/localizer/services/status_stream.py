import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set

from localizer.schemas.video import StatusEvent

logger = logging.getLogger(__name__)


class StatusBroadcaster:
    """In-process fan-out of video status changes, keyed by video id."""

    def __init__(self, queue_size: int = 100):
        self._subscribers: Dict[int, Set[asyncio.Queue]] = defaultdict(set)
        self.queue_size = queue_size

    def publish(self, event: StatusEvent) -> None:
        for queue in list(self._subscribers.get(event.video_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # slow consumer: drop the oldest event, the newest status wins
                queue.get_nowait()
                queue.put_nowait(event)

    @asynccontextmanager
    async def subscribe(self, video_id: int) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[video_id].add(queue)
        logger.debug("Status subscriber added for video %s", video_id)
        try:
            yield queue
        finally:
            subs = self._subscribers.get(video_id)
            if subs is not None:
                subs.discard(queue)
                if not subs:
                    del self._subscribers[video_id]

    def subscriber_count(self, video_id: int) -> int:
        return len(self._subscribers.get(video_id, ()))
