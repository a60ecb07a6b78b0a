"""
LLM Provider Module

Completion streaming abstraction over OpenAI, Anthropic and local model servers.

Usage:
    from sqlstudio.config import get_settings
    from sqlstudio.llm import LLMMessage, LLMProviderFactory, LLMRequest

    provider = LLMProviderFactory.create_default_provider(get_settings().llm)
    request = LLMRequest(messages=[LLMMessage(role="user", content="Hello!")])

    async for chunk in provider.stream(request):
        print(chunk.content, end="")
"""

from sqlstudio.llm.anthropic import AnthropicProvider
from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.factory import LLMProviderFactory
from sqlstudio.llm.local import LocalProvider
from sqlstudio.llm.models import (
    LLMMessage,
    LLMRequest,
    LLMResponse,
    LLMStreamChunk,
    LLMUsage,
    ModelInfo,
)
from sqlstudio.llm.openai import OpenAIProvider, list_models

__all__ = [
    "BaseLLMProvider",
    "LLMMessage",
    "LLMRequest",
    "LLMResponse",
    "LLMStreamChunk",
    "LLMUsage",
    "ModelInfo",
    "LLMProviderFactory",
    "OpenAIProvider",
    "AnthropicProvider",
    "LocalProvider",
    "list_models",
]
