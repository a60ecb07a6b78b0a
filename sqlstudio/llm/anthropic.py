"""
Anthropic LLM Provider

BaseLLMProvider implementation for Claude models using the anthropic SDK.
"""

import logging
from collections.abc import AsyncIterator

from anthropic import AsyncAnthropic

from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.models import (
    LLMRequest,
    LLMResponse,
    LLMStreamChunk,
    LLMUsage,
    ModelInfo,
)

logger = logging.getLogger(__name__)


class AnthropicProvider(BaseLLMProvider):
    """Anthropic (Claude) provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-sonnet-20241022",
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout: int = 60,
    ):
        super().__init__(
            provider_name="anthropic",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        self.model = model
        self.client = AsyncAnthropic(api_key=api_key, timeout=float(timeout))

        logger.info(f"Anthropic provider initialized with model: {model}", extra={"model": model})

    def _split_messages(self, request: LLMRequest) -> tuple[str | None, list[dict[str, str]]]:
        """Anthropic takes the system prompt separately from the turns."""
        system_parts = []
        messages = []
        for msg in request.messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            else:
                messages.append({"role": msg.role, "content": msg.content})
        return ("\n\n".join(system_parts) or None), messages

    def _call_kwargs(self, request: LLMRequest) -> dict:
        system, messages = self._split_messages(request)
        kwargs = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def generate(self, request: LLMRequest) -> LLMResponse:
        request = self._apply_defaults(request)
        self._log_request(request)

        response = await self.client.messages.create(**self._call_kwargs(request))

        text = "".join(block.text for block in response.content if block.type == "text")
        llm_response = LLMResponse(
            content=text,
            model=response.model,
            usage=LLMUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
            ),
            finish_reason="length" if response.stop_reason == "max_tokens" else "stop",
            provider="anthropic",
            metadata={"id": response.id},
        )
        self._log_response(llm_response)
        return llm_response

    async def stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        request = self._apply_defaults(request)
        self._log_request(request)

        async with self.client.messages.stream(**self._call_kwargs(request)) as stream:
            async for text in stream.text_stream:
                if text:
                    yield LLMStreamChunk(content=text)

    def count_tokens(self, text: str) -> int:
        """Rough approximation: about four characters per token."""
        return len(text) // 4

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        return ModelInfo(
            name=model_name or self.model,
            provider="anthropic",
            context_window=200000,
            max_output=8192,
            capabilities=["streaming"],
        )
