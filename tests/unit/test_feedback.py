"""
Feedback Channel Unit Tests
"""

import asyncio
import threading
import time

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from agents.feedback import CallbackFeedbackChannel, FeedbackRequest, QueueFeedbackChannel


def make_request(node_id: str = "db", session_id: str = "s1") -> FeedbackRequest:
    return FeedbackRequest(session_id=session_id, node_id=node_id, agent="architect", prompt="Which database?")


class TestQueueFeedbackChannel:
    """QueueFeedbackChannel tests"""

    @pytest.mark.asyncio
    async def test_request_waits_for_response(self):
        channel = QueueFeedbackChannel()
        pending = asyncio.create_task(channel.request(make_request()))

        waiting = await channel.wait_for_request(timeout=1)
        assert waiting.prompt == "Which database?"
        assert [r.node_id for r in channel.pending()] == ["db"]

        assert channel.respond("db", "PostgreSQL") is True
        assert await asyncio.wait_for(pending, timeout=1) == "PostgreSQL"
        assert channel.pending() == []

    @pytest.mark.asyncio
    async def test_respond_without_request(self):
        channel = QueueFeedbackChannel()
        assert channel.respond("db", "anything") is False

    @pytest.mark.asyncio
    async def test_respond_matches_session(self):
        channel = QueueFeedbackChannel()
        pending = asyncio.create_task(channel.request(make_request(session_id="s2")))
        await channel.wait_for_request(timeout=1)

        assert channel.respond("db", "x", session_id="s1") is False
        assert channel.respond("db", "y", session_id="s2") is True
        assert await asyncio.wait_for(pending, timeout=1) == "y"

    @pytest.mark.asyncio
    async def test_duplicate_request_rejected(self):
        channel = QueueFeedbackChannel()
        first = asyncio.create_task(channel.request(make_request()))
        await channel.wait_for_request(timeout=1)

        with pytest.raises(RuntimeError):
            await channel.request(make_request())

        channel.respond("db", "done")
        await first

    @pytest.mark.asyncio
    async def test_cancelled_request_is_cleaned_up(self):
        channel = QueueFeedbackChannel()
        pending = asyncio.create_task(channel.request(make_request()))
        await channel.wait_for_request(timeout=1)

        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

        assert channel.pending() == []


class TestCallbackFeedbackChannel:
    """CallbackFeedbackChannel tests"""

    @pytest.mark.asyncio
    async def test_callback_runs_off_loop(self):
        seen = []

        def answer(request):
            seen.append(request.node_id)
            return "MySQL"

        channel = CallbackFeedbackChannel(answer)

        assert await channel.request(make_request()) == "MySQL"
        assert seen == ["db"]

    @pytest.mark.asyncio
    async def test_none_answer_becomes_empty(self):
        channel = CallbackFeedbackChannel(lambda request: None)
        assert await channel.request(make_request()) == ""

    def test_request_to_dict(self):
        data = make_request().to_dict()
        assert data["node_id"] == "db"
        assert data["requested_at"].endswith("+00:00")

    def test_abandoned_request_does_not_block_loop_shutdown(self):
        release = threading.Event()
        channel = CallbackFeedbackChannel(lambda request: release.wait(30) and "late")

        async def ask():
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(channel.request(make_request()), timeout=0.05)

        started = time.monotonic()
        try:
            asyncio.run(ask())
            assert time.monotonic() - started < 5
        finally:
            release.set()

    @pytest.mark.asyncio
    async def test_later_request_takes_the_open_answer(self):
        release = threading.Event()
        calls = []

        def answer(request):
            calls.append(request.node_id)
            release.wait(5)
            return "Redis"

        channel = CallbackFeedbackChannel(answer)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(channel.request(make_request("cache")), timeout=0.05)

        second = asyncio.create_task(channel.request(make_request("queue")))
        await asyncio.sleep(0.05)
        release.set()

        assert await asyncio.wait_for(second, timeout=5) == "Redis"
        assert calls == ["cache"]

    @pytest.mark.asyncio
    async def test_callback_error_propagates(self):
        def broken(request):
            raise RuntimeError("console closed")

        channel = CallbackFeedbackChannel(broken)

        with pytest.raises(RuntimeError, match="console closed"):
            await channel.request(make_request())
        assert await CallbackFeedbackChannel(lambda request: "ok").request(make_request()) == "ok"
