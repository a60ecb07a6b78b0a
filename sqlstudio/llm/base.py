"""
Base LLM Provider

Abstract interface shared by every completion backend. The agents only
depend on this contract: a streamed sequence of text fragments for a list
of role-tagged messages.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from sqlstudio.llm.models import (
    LLMRequest,
    LLMResponse,
    LLMStreamChunk,
    ModelInfo,
)

logger = logging.getLogger(__name__)


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Attributes:
        provider_name: Unique identifier for this provider
        temperature: Default sampling temperature
        max_tokens: Default maximum tokens to generate
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        provider_name: str,
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout: int = 60,
    ):
        self.provider_name = provider_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

        logger.info(
            f"Initialized {provider_name} provider",
            extra={
                "provider": provider_name,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

    @abstractmethod
    async def generate(self, request: LLMRequest) -> LLMResponse:
        """
        Generate a complete response.

        Raises:
            Exception: Provider-specific errors (API errors, timeouts, etc.)
        """
        pass  # pragma: no cover - abstract method

    @abstractmethod
    def stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        """
        Stream a response as text fragments, in order.

        Implementations are async generators. Closing the generator early
        (for example on cancellation) must release the underlying request.

        Raises:
            Exception: Provider-specific errors
        """
        pass  # pragma: no cover - abstract method

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass  # pragma: no cover - abstract method

    @abstractmethod
    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        pass  # pragma: no cover - abstract method

    def _apply_defaults(self, request: LLMRequest) -> LLMRequest:
        """Fill temperature and max_tokens from provider defaults when unset."""
        updates = {}
        if request.temperature is None:
            updates["temperature"] = self.temperature
        if request.max_tokens is None:
            updates["max_tokens"] = self.max_tokens
        return request.model_copy(update=updates) if updates else request

    def _log_request(self, request: LLMRequest) -> None:
        logger.debug(
            f"{self.provider_name} request",
            extra={
                "provider": self.provider_name,
                "message_count": len(request.messages),
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "stream": request.stream,
            },
        )

    def _log_response(self, response: LLMResponse) -> None:
        logger.debug(
            f"{self.provider_name} response",
            extra={
                "provider": self.provider_name,
                "model": response.model,
                "total_tokens": response.usage.total_tokens,
                "finish_reason": response.finish_reason,
            },
        )
