"""
Unit tests for BaseAgent

Tests the shared streaming plumbing:
- fragments forwarded to the token sink
- cancellation before the request, between fragments and while the stream
  is waiting for the next fragment
- stream cleanup
"""

import asyncio

import pytest

from sqlstudio.agents.base import BaseAgent, raise_if_cancelled
from sqlstudio.llm.models import LLMMessage, LLMStreamChunk
from sqlstudio.models.agent import ExecutionCancelled


def _messages():
    return [LLMMessage(role="user", content="How many users?")]


class TestStreamCompletion:
    """Test _stream_completion()."""

    async def test_returns_concatenated_text(self, scripted_llm):
        llm = scripted_llm("SELECT COUNT(*) FROM users;", chunk_size=5)
        agent = BaseAgent(name="StreamAgent", llm=llm)
        tokens = []

        text = await agent._stream_completion(_messages(), on_token=tokens.append)

        assert text == "SELECT COUNT(*) FROM users;"
        assert "".join(tokens) == text
        assert len(tokens) == 6

    async def test_passes_sampling_options(self, scripted_llm):
        llm = scripted_llm("ok")
        agent = BaseAgent(name="StreamAgent", llm=llm)

        await agent._stream_completion(_messages(), temperature=0.0, max_tokens=50)

        request = llm.requests[0]
        assert request.temperature == 0.0
        assert request.max_tokens == 50
        assert request.stream is True

    async def test_cancel_before_request(self, scripted_llm):
        llm = scripted_llm("never sent")
        agent = BaseAgent(name="StreamAgent", llm=llm)
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(ExecutionCancelled):
            await agent._stream_completion(_messages(), cancel_event=cancel_event)

        assert llm.requests == []

    async def test_cancel_between_fragments(self, scripted_llm):
        llm = scripted_llm("SELECT * FROM users", chunk_size=4)
        agent = BaseAgent(name="StreamAgent", llm=llm)
        cancel_event = asyncio.Event()
        tokens = []

        def on_token(token):
            tokens.append(token)
            cancel_event.set()

        with pytest.raises(ExecutionCancelled) as exc_info:
            await agent._stream_completion(_messages(), on_token=on_token, cancel_event=cancel_event)

        assert tokens == ["SELE"]
        assert exc_info.value.message == "Stopped by user"

    async def test_cancel_while_stream_is_stalled(self, scripted_llm):
        llm = scripted_llm()
        agent = BaseAgent(name="StreamAgent", llm=llm)
        cancel_event = asyncio.Event()
        closed = []

        async def stalled_stream(request):
            try:
                yield LLMStreamChunk(content="SELECT")
                await asyncio.sleep(5)
                yield LLMStreamChunk(content=" never")
            finally:
                closed.append(True)

        llm.stream = stalled_stream
        tokens = []
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel_event.set)
        started = loop.time()

        with pytest.raises(ExecutionCancelled):
            await agent._stream_completion(
                _messages(), on_token=tokens.append, cancel_event=cancel_event
            )

        assert loop.time() - started < 1
        assert tokens == ["SELECT"]
        assert closed == [True]

    async def test_provider_errors_propagate(self, scripted_llm):
        agent = BaseAgent(name="StreamAgent", llm=scripted_llm(RuntimeError("rate limited")))

        with pytest.raises(RuntimeError, match="rate limited"):
            await agent._stream_completion(_messages())


class TestRaiseIfCancelled:
    def test_none_event_is_ignored(self):
        raise_if_cancelled(None)

    def test_unset_event_is_ignored(self):
        raise_if_cancelled(asyncio.Event())

    def test_cancelled_error_subclass(self):
        event = asyncio.Event()
        event.set()

        with pytest.raises(asyncio.CancelledError):
            raise_if_cancelled(event)
