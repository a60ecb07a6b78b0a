"""
OpenAI LLM Provider

BaseLLMProvider implementation on the official openai SDK. A custom
base_url makes it usable with any OpenAI-compatible gateway.
"""

import logging
from collections.abc import AsyncIterator

import openai
import tiktoken
from openai import AsyncOpenAI

from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.models import (
    LLMRequest,
    LLMResponse,
    LLMStreamChunk,
    LLMUsage,
    ModelInfo,
)

logger = logging.getLogger(__name__)

AUTO_MODEL = "auto"

_KNOWN_MODELS = {
    "gpt-4o": (128000, 16384),
    "gpt-4o-mini": (128000, 16384),
    "gpt-4.1": (1047576, 32768),
    "gpt-4.1-mini": (1047576, 32768),
}


class OpenAIProvider(BaseLLMProvider):
    """OpenAI chat completions provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout: int = 60,
    ):
        super().__init__(
            provider_name="openai",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

        self.model = model
        self.base_url = base_url
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=float(timeout),
        )

        logger.info(
            f"OpenAI provider initialized with model: {model}",
            extra={"model": model, "base_url": base_url},
        )

    def _messages(self, request: LLMRequest) -> list[dict[str, str]]:
        return [{"role": msg.role, "content": msg.content} for msg in request.messages]

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """
        Generate completion using the chat completions API.

        Raises:
            openai.APIError: On API errors
            openai.APITimeoutError: On timeout
        """
        request = self._apply_defaults(request)
        self._log_request(request)

        try:
            response = await self.client.chat.completions.create(
                model=request.model or self.model,
                messages=self._messages(request),
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                **request.metadata,
            )
        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise

        usage = response.usage
        llm_response = LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            usage=LLMUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
            ),
            finish_reason=self._map_finish_reason(response.choices[0].finish_reason),
            provider="openai",
            metadata={"id": response.id},
        )
        self._log_response(llm_response)
        return llm_response

    async def stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        """
        Stream completion fragments.

        Raises:
            openai.APIError: On API errors
        """
        request = self._apply_defaults(request).model_copy(update={"stream": True})
        self._log_request(request)

        try:
            stream = await self.client.chat.completions.create(
                model=request.model or self.model,
                messages=self._messages(request),
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                stream=True,
                **request.metadata,
            )
            async with stream:
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    if choice.delta.content:
                        yield LLMStreamChunk(
                            content=choice.delta.content,
                            finish_reason=self._map_finish_reason(choice.finish_reason)
                            if choice.finish_reason
                            else None,
                        )
        except openai.APIError as e:
            logger.error(f"OpenAI streaming error: {e}")
            raise

    def count_tokens(self, text: str) -> int:
        """Count tokens using tiktoken."""
        try:
            try:
                encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                encoding = tiktoken.get_encoding("cl100k_base")
            return len(encoding.encode(text))
        except Exception as exc:
            # Encodings are downloaded on first use; offline hosts get an estimate.
            logger.debug(f"tiktoken unavailable, estimating tokens: {exc}")
            return len(text) // 4

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        model = model_name or self.model
        context_window, max_output = _KNOWN_MODELS.get(model, (128000, 4096))
        return ModelInfo(
            name=model,
            provider="openai",
            context_window=context_window,
            max_output=max_output,
            capabilities=["streaming"],
        )

    def _map_finish_reason(self, reason: str | None) -> str:
        if reason in ("stop", "length", "content_filter"):
            return reason
        return "stop"


async def list_models(
    api_key: str,
    base_url: str | None = None,
    timeout: int = 30,
) -> list[str]:
    """
    List model ids served by an OpenAI-compatible endpoint.

    The result always starts with "auto"; the remaining ids are sorted.
    Errors are logged and yield just ["auto"].
    """
    models = [AUTO_MODEL]
    try:
        client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=float(timeout))
        page = await client.models.list()
        ids = sorted({model.id for model in page.data if model.id != AUTO_MODEL})
    except Exception as exc:
        logger.warning(f"Failed to list models: {exc}", extra={"base_url": base_url})
        return models
    return models + ids
