"""
Base Agent

Shared plumbing for the LLM-backed agents: prompt rendering, streamed
completions with a per-fragment token sink, and cooperative cancellation.

Usage:
    class MyAgent(BaseAgent):
        def __init__(self, llm):
            super().__init__(name="MyAgent", llm=llm)

        async def run(self, question, on_token=None, cancel_event=None):
            messages = [LLMMessage(role="user", content=question)]
            return await self._stream_completion(
                messages, on_token=on_token, cancel_event=cancel_event
            )
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.models import LLMMessage, LLMRequest
from sqlstudio.models.agent import ExecutionCancelled
from sqlstudio.prompts.loader import PromptLoader

logger = logging.getLogger(__name__)

TokenSink = Callable[[str], None]
T = TypeVar("T")


def raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    """Raise ExecutionCancelled when the cancel signal is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise ExecutionCancelled()


async def wait_or_cancel(awaitable: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """
    Await an operation, abandoning it as soon as the cancel signal is set.

    The operation is cancelled and awaited before ExecutionCancelled is
    raised, so async generators behind it can be closed afterwards.
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise ExecutionCancelled()

    operation = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({operation, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_waiter.cancel()
        if not operation.done():
            operation.cancel()
            await asyncio.wait({operation})

    if operation.cancelled():
        raise ExecutionCancelled()
    return operation.result()


class BaseAgent:
    """
    Base class for agents that talk to a completion provider.

    Attributes:
        name: Identifier used in logs and errors
        llm: Completion provider
        prompts: Template loader
    """

    def __init__(
        self,
        name: str,
        llm: BaseLLMProvider,
        prompts: PromptLoader | None = None,
    ):
        self.name = name
        self.llm = llm
        self.prompts = prompts or PromptLoader()

        logger.info(
            f"Initialized {self.name}",
            extra={"agent": self.name, "provider": llm.provider_name},
        )

    async def _stream_completion(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        on_token: TokenSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """
        Stream a completion and return the concatenated text.

        Each fragment is handed to on_token as it arrives. Waiting for the
        next fragment races the cancel signal, so a stalled stream is
        abandoned as soon as it is set; the stream is then closed and
        ExecutionCancelled is raised.
        """
        raise_if_cancelled(cancel_event)

        request = LLMRequest(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
        )
        start_time = time.perf_counter()
        parts: list[str] = []

        stream = self.llm.stream(request)
        try:
            while True:
                chunk = await wait_or_cancel(anext(stream, None), cancel_event)
                if chunk is None:
                    break
                if chunk.content:
                    parts.append(chunk.content)
                    if on_token is not None:
                        on_token(chunk.content)
                raise_if_cancelled(cancel_event)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        text = "".join(parts)
        logger.debug(
            f"{self.name} completion finished",
            extra={
                "agent": self.name,
                "duration_ms": (time.perf_counter() - start_time) * 1000,
                "characters": len(text),
            },
        )
        return text
