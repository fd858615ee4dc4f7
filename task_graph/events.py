"""
Progress events.
Immutable events published by the executor and consumed by subscription.
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .dag import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event type"""
    GRAPH_STARTED = "graph_started"
    NODE_STARTED = "node_started"
    NODE_PROGRESS = "node_progress"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    FEEDBACK_REQUESTED = "feedback_requested"
    FEEDBACK_RECEIVED = "feedback_received"
    PERSISTENCE_FAILED = "persistence_failed"
    GRAPH_CANCELLED = "graph_cancelled"
    GRAPH_COMPLETED = "graph_completed"
    GRAPH_FAILED = "graph_failed"

    @property
    def ends_run(self) -> bool:
        return self in (EventType.GRAPH_COMPLETED, EventType.GRAPH_FAILED)


@dataclass(frozen=True)
class ProgressEvent:
    """One progress event"""
    type: EventType
    session_id: str
    node_id: Optional[str] = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "node_id": self.node_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


_CLOSED = object()


class EventSubscription:
    """Async iterator over the events published after subscribing."""

    def __init__(self, stream: "EventStream", queue: asyncio.Queue):
        self._stream = stream
        self._queue = queue

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None once the stream is closed."""
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        return None if item is _CLOSED else item

    def unsubscribe(self) -> None:
        self._stream._remove(self._queue)


class EventStream:
    """
    Fan-out channel of ProgressEvents.

    publish() never blocks, so the executor is never held up by a slow
    consumer. Recent events are kept for late subscribers (replay).

    Example:
        stream = EventStream()
        subscription = stream.subscribe()
        ...
        async for event in subscription:
            print(event.type, event.node_id)
    """

    def __init__(self, history_size: int = 1000):
        self._subscribers: List[asyncio.Queue] = []
        self._history: Deque[ProgressEvent] = deque(maxlen=history_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping {event.type.value} on closed stream")
            return
        self._history.append(event)
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def emit(self, event_type: EventType, session_id: str, node_id: Optional[str] = None,
             message: str = "", **data) -> ProgressEvent:
        """Build and publish an event."""
        event = ProgressEvent(
            type=event_type,
            session_id=session_id,
            node_id=node_id,
            message=message,
            data=data,
        )
        self.publish(event)
        return event

    def subscribe(self, replay: bool = False) -> EventSubscription:
        """
        Subscribe to events.

        Args:
            replay: Deliver the retained history first
        """
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in self._history:
                queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._subscribers.append(queue)
        return EventSubscription(self, queue)

    def history(self, session_id: Optional[str] = None) -> List[ProgressEvent]:
        return [
            event for event in self._history
            if session_id is None or event.session_id == session_id
        ]

    def close(self) -> None:
        """End every subscription."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)
        self._subscribers.clear()

    def _remove(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)
