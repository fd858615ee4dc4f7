"""
Human feedback channel.
Prompt text in, free-form answer text out. Only the asking task waits.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class FeedbackRequest:
    session_id: str
    node_id: str
    agent: str
    prompt: str
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "node_id": self.node_id,
            "agent": self.agent,
            "prompt": self.prompt,
            "requested_at": self.requested_at.isoformat(),
        }


class FeedbackChannel(ABC):
    """Request/response boundary to a human."""

    @abstractmethod
    async def request(self, request: FeedbackRequest) -> str:
        """Ask and wait for the answer."""


class CallbackFeedbackChannel(FeedbackChannel):
    """
    Wraps a synchronous callable (e.g. console input).

    The callable runs in a daemon thread so the event loop keeps scheduling
    other tasks while the human answers. A blocking read cannot be
    interrupted, so when the asking task is cancelled the read stays open
    and the next request takes its answer instead of starting a second read.
    """

    def __init__(self, callback: Callable[[FeedbackRequest], str]):
        self._callback = callback
        self._lock = asyncio.Lock()
        self._open_read: Optional[asyncio.Future] = None

    async def request(self, request: FeedbackRequest) -> str:
        # one question on the console at a time
        async with self._lock:
            pending = self._open_read
            if pending is None or pending.get_loop() is not asyncio.get_running_loop():
                pending = self._open_read = self._start_read(request)
            else:
                logger.warning(
                    f"An earlier question is still open; its answer goes to "
                    f"{request.node_id}: {request.prompt}"
                )
            answer = await asyncio.shield(pending)
        return "" if answer is None else str(answer)

    def _start_read(self, request: FeedbackRequest) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(self._read_finished)

        def settle(answer, error) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(answer)

        def worker() -> None:
            try:
                answer, error = self._callback(request), None
            except Exception as e:
                answer, error = None, e
            try:
                loop.call_soon_threadsafe(settle, answer, error)
            except RuntimeError:
                logger.debug(f"Event loop closed before the answer for {request.node_id} arrived")

        threading.Thread(target=worker, name=f"feedback-{request.node_id}", daemon=True).start()
        return future

    def _read_finished(self, future: asyncio.Future) -> None:
        if self._open_read is future:
            self._open_read = None
        if not future.cancelled() and future.exception() is not None:
            logger.debug(f"Feedback callback failed: {future.exception()}")


def console_prompt(request: FeedbackRequest) -> str:
    print(f"\n[{request.agent}:{request.node_id}] needs input")
    print(f"  {request.prompt}")
    return input("> ")


class QueueFeedbackChannel(FeedbackChannel):
    """
    Answers are pushed in by another component (UI, API handler, test).

    Example:
        channel = QueueFeedbackChannel()
        ...
        for request in channel.pending():
            channel.respond(request.node_id, "Use PostgreSQL")
    """

    def __init__(self):
        self._waiting: Dict[Tuple[str, str], Tuple[FeedbackRequest, asyncio.Future]] = {}
        self._changed = asyncio.Event()

    async def request(self, request: FeedbackRequest) -> str:
        key = (request.session_id, request.node_id)
        if key in self._waiting:
            raise RuntimeError(f"Node {request.node_id} already waits for feedback")

        future = asyncio.get_running_loop().create_future()
        self._waiting[key] = (request, future)
        self._changed.set()
        logger.info(f"Feedback requested by {request.node_id}: {request.prompt}")
        try:
            return await future
        finally:
            self._waiting.pop(key, None)

    def pending(self) -> List[FeedbackRequest]:
        return [request for request, _ in self._waiting.values()]

    async def wait_for_request(self, timeout: float = None) -> FeedbackRequest:
        """Wait until at least one request is pending and return the oldest."""
        async def _wait():
            while not self._waiting:
                self._changed.clear()
                await self._changed.wait()
            return self.pending()[0]

        return await asyncio.wait_for(_wait(), timeout=timeout)

    def respond(self, node_id: str, answer: str, session_id: str = None) -> bool:
        """
        Answer a pending request.

        Returns:
            False if no matching request is waiting
        """
        for (waiting_session, waiting_node), (_, future) in list(self._waiting.items()):
            if waiting_node != node_id:
                continue
            if session_id is not None and waiting_session != session_id:
                continue
            if not future.done():
                future.set_result(answer)
                return True
        return False
