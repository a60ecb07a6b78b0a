"""
Tests for LLM Provider Factory.

Tests provider creation from configuration and model overrides.
"""

import pytest

from sqlstudio.config import LLMSettings
from sqlstudio.llm.anthropic import AnthropicProvider
from sqlstudio.llm.factory import LLMProviderFactory
from sqlstudio.llm.local import LocalProvider
from sqlstudio.llm.openai import OpenAIProvider


@pytest.fixture
def mock_config():
    """LLM configuration with all providers configured."""
    return LLMSettings(
        default_provider="openai",
        openai_api_key="sk-test-openai-key-1234567890",
        openai_model="gpt-4o",
        anthropic_api_key="sk-ant-REDACTED",
        anthropic_model="claude-3-5-sonnet-20241022",
        local_base_url="http://localhost:11434",
        local_model="llama3.1:8b",
        temperature=0.0,
        max_tokens=2000,
        timeout=30,
    )


class TestProviderRegistry:
    def test_provider_classes(self):
        assert LLMProviderFactory.PROVIDERS == {
            "openai": OpenAIProvider,
            "anthropic": AnthropicProvider,
            "local": LocalProvider,
        }


class TestCreateProvider:
    def test_create_openai(self, mock_config):
        provider = LLMProviderFactory.create_provider("openai", mock_config)

        assert isinstance(provider, OpenAIProvider)
        assert provider.model == "gpt-4o"
        assert provider.temperature == 0.0
        assert provider.timeout == 30

    def test_create_anthropic(self, mock_config):
        provider = LLMProviderFactory.create_provider("anthropic", mock_config)

        assert isinstance(provider, AnthropicProvider)
        assert provider.model == "claude-3-5-sonnet-20241022"

    def test_create_local(self, mock_config):
        provider = LLMProviderFactory.create_provider("local", mock_config)

        assert isinstance(provider, LocalProvider)
        assert provider.base_url == "http://localhost:11434"

    def test_model_override(self, mock_config):
        provider = LLMProviderFactory.create_provider("openai", mock_config, model="gpt-4.1")

        assert provider.model == "gpt-4.1"

    def test_auto_keeps_configured_model(self, mock_config):
        provider = LLMProviderFactory.create_provider("openai", mock_config, model="auto")

        assert provider.model == "gpt-4o"

    def test_unknown_provider(self, mock_config):
        with pytest.raises(ValueError, match="Unknown provider type"):
            LLMProviderFactory.create_provider("google", mock_config)

    def test_missing_key(self, mock_config):
        config = mock_config.model_copy(update={"anthropic_api_key": None})

        with pytest.raises(ValueError, match="Anthropic API key is required"):
            LLMProviderFactory.create_provider("anthropic", config)

    def test_create_default_provider(self, mock_config):
        provider = LLMProviderFactory.create_default_provider(mock_config)

        assert isinstance(provider, OpenAIProvider)
