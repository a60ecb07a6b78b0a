"""
Local LLM Provider

BaseLLMProvider for local model servers over httpx. Tries the Ollama chat
API first and falls back to an OpenAI-compatible /v1/chat/completions
endpoint (vLLM, llama.cpp server, LM Studio).
"""

import json
import logging
from collections.abc import AsyncIterator

import httpx

from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.models import (
    LLMRequest,
    LLMResponse,
    LLMStreamChunk,
    LLMUsage,
    ModelInfo,
)

logger = logging.getLogger(__name__)


class LocalProvider(BaseLLMProvider):
    """Local model server provider."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout: int = 60,
    ):
        super().__init__(
            provider_name="local",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.client = httpx.AsyncClient(timeout=float(timeout))

        logger.info(
            f"Local provider initialized: {base_url} with model: {model}",
            extra={"base_url": base_url, "model": model},
        )

    def _payload(self, request: LLMRequest, stream: bool) -> dict:
        return {
            "model": request.model or self.model,
            "messages": [{"role": msg.role, "content": msg.content} for msg in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "options": {"temperature": request.temperature, "num_predict": request.max_tokens},
            "stream": stream,
        }

    async def generate(self, request: LLMRequest) -> LLMResponse:
        request = self._apply_defaults(request)
        self._log_request(request)
        payload = self._payload(request, stream=False)

        try:
            data = await self._post(f"{self.base_url}/api/chat", payload)
            content = data.get("message", {}).get("content", "")
            prompt_tokens = data.get("prompt_eval_count", 0)
            completion_tokens = data.get("eval_count", 0)
        except httpx.HTTPError as exc:
            logger.debug(f"Ollama endpoint unavailable, using OpenAI-compatible API: {exc}")
            data = await self._post(f"{self.base_url}/v1/chat/completions", payload)
            content = data.get("choices", [{}])[0].get("message", {}).get("content", "")
            prompt_tokens = data.get("usage", {}).get("prompt_tokens", 0)
            completion_tokens = data.get("usage", {}).get("completion_tokens", 0)

        llm_response = LLMResponse(
            content=content,
            model=data.get("model", self.model),
            usage=LLMUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            provider="local",
            metadata={"base_url": self.base_url},
        )
        self._log_response(llm_response)
        return llm_response

    async def stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        request = self._apply_defaults(request)
        self._log_request(request)
        payload = self._payload(request, stream=True)

        yielded = False
        try:
            async with self.client.stream("POST", f"{self.base_url}/api/chat", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    content = json.loads(line).get("message", {}).get("content")
                    if content:
                        yielded = True
                        yield LLMStreamChunk(content=content)
            return
        except httpx.HTTPError as exc:
            if yielded:
                raise
            logger.debug(f"Ollama streaming unavailable, using OpenAI-compatible API: {exc}")

        async with self.client.stream(
            "POST", f"{self.base_url}/v1/chat/completions", json=payload
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data: ") or line.endswith("[DONE]"):
                    continue
                choices = json.loads(line[6:]).get("choices") or [{}]
                content = choices[0].get("delta", {}).get("content")
                if content:
                    yield LLMStreamChunk(content=content)

    def count_tokens(self, text: str) -> int:
        """Rough approximation for local models."""
        return len(text) // 4

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        return ModelInfo(
            name=model_name or self.model,
            provider="local",
            context_window=8192,
            max_output=2048,
            capabilities=["streaming"],
        )

    async def _post(self, url: str, payload: dict) -> dict:
        response = await self.client.post(url, json=payload)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self.client.aclose()
