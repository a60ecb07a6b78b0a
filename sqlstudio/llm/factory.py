"""
LLM Provider Factory

Creates provider instances from LLMSettings.
"""

import logging

from sqlstudio.config import LLMSettings, ProviderName
from sqlstudio.llm.anthropic import AnthropicProvider
from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.local import LocalProvider
from sqlstudio.llm.openai import OpenAIProvider

logger = logging.getLogger(__name__)


class LLMProviderFactory:
    """Factory for creating LLM provider instances."""

    PROVIDERS = {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "local": LocalProvider,
    }

    @staticmethod
    def create_provider(
        provider_type: ProviderName,
        config: LLMSettings,
        model: str | None = None,
    ) -> BaseLLMProvider:
        """
        Create an LLM provider instance.

        Args:
            provider_type: Type of provider to create
            config: LLM configuration settings
            model: Model override ("auto" or None keeps the configured model)

        Raises:
            ValueError: If provider type is unknown or required config is missing
        """
        if provider_type not in LLMProviderFactory.PROVIDERS:
            raise ValueError(
                f"Unknown provider type: {provider_type}. "
                f"Available providers: {list(LLMProviderFactory.PROVIDERS.keys())}"
            )
        if model == "auto":
            model = None

        logger.info(f"Creating {provider_type} provider", extra={"provider": provider_type})

        if provider_type == "openai":
            if not config.openai_api_key:
                raise ValueError("OpenAI API key is required but not configured")
            return OpenAIProvider(
                api_key=config.openai_api_key,
                model=model or config.openai_model,
                base_url=config.openai_base_url,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout=config.timeout,
            )

        if provider_type == "anthropic":
            if not config.anthropic_api_key:
                raise ValueError("Anthropic API key is required but not configured")
            return AnthropicProvider(
                api_key=config.anthropic_api_key,
                model=model or config.anthropic_model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout=config.timeout,
            )

        return LocalProvider(
            base_url=config.local_base_url,
            model=model or config.local_model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
        )

    @staticmethod
    def create_default_provider(config: LLMSettings, model: str | None = None) -> BaseLLMProvider:
        """Create provider using default_provider from config."""
        return LLMProviderFactory.create_provider(config.default_provider, config, model)
