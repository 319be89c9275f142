"""
Per-session progress event channel.

Each session keeps a monotonically increasing sequence number and a bounded
backlog, so a subscriber that connects late still sees the history. Live
subscribers each get their own asyncio.Queue.
"""

import asyncio
from collections import deque
from typing import AsyncIterator, Optional

import structlog

from app.models.enums import EventType
from app.schemas.imports import ProgressEvent

logger = structlog.get_logger(__name__)

BACKLOG_SIZE = 500


class EventChannel:

    def __init__(self, session_id: str, backlog_size: int = BACKLOG_SIZE):
        self.session_id = session_id
        self.sequence = 0
        self.backlog: deque[ProgressEvent] = deque(maxlen=backlog_size)
        self.subscribers: list[asyncio.Queue] = []
        self.closed = False

    def publish(
        self,
        type: EventType,
        step: str,
        percentage: float = 0.0,
        message: str = "",
        data: Optional[dict] = None,
    ) -> ProgressEvent:
        self.sequence += 1
        event = ProgressEvent(
            session_id=self.session_id,
            sequence=self.sequence,
            type=type,
            step=step,
            percentage=percentage,
            message=message,
            data=data or {},
        )
        self.backlog.append(event)
        for queue in self.subscribers:
            queue.put_nowait(event)
        return event

    def close(self) -> None:
        """Signal end-of-stream to every subscriber."""
        self.closed = True
        for queue in self.subscribers:
            queue.put_nowait(None)

    async def subscribe(self, replay: bool = True) -> AsyncIterator[ProgressEvent]:
        """
        Yield events in sequence order until the channel closes.
        With replay, the backlog is delivered first.
        """
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in self.backlog:
                queue.put_nowait(event)
        if self.closed:
            queue.put_nowait(None)
        else:
            self.subscribers.append(queue)

        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if queue in self.subscribers:
                self.subscribers.remove(queue)
