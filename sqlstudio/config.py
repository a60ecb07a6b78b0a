"""
Application Configuration

Pydantic-based settings management using environment variables.
Settings are grouped by concern (llm, database, agent, knowledge, logging)
and cached for the lifetime of the process.

Usage:
    from sqlstudio.config import get_settings

    settings = get_settings()
    print(settings.llm.default_provider)
    print(settings.database.db_type)
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["openai", "anthropic", "local"]
DatabaseTypeName = Literal["mysql", "postgresql", "clickhouse", "sqlserver", "sqlite"]


class LLMSettings(BaseSettings):
    """LLM provider configuration."""

    default_provider: ProviderName = Field(
        default="openai", description="Default LLM provider"
    )

    # OpenAI (and OpenAI-compatible endpoints such as Azure or vLLM gateways)
    openai_api_key: str | None = Field(None, description="OpenAI API key")
    openai_base_url: str | None = Field(
        None, description="Custom OpenAI-compatible endpoint (None = api.openai.com)"
    )
    openai_model: str = Field(default="gpt-4o", description="OpenAI model name")

    # Anthropic
    anthropic_api_key: str | None = Field(None, description="Anthropic API key")
    anthropic_model: str = Field(
        default="claude-3-5-sonnet-20241022", description="Anthropic model name"
    )

    # Local model server
    local_base_url: str = Field(
        default="http://localhost:11434",
        description="Base URL for local model server (Ollama, vLLM, etc.)",
    )
    local_model: str = Field(default="llama3.1:8b", description="Local model name")

    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=2.0,
        description="Temperature for SQL generation",
    )
    max_tokens: int = Field(
        default=2000,
        gt=0,
        le=16000,
        description="Maximum tokens per LLM response",
    )
    timeout: int = Field(
        default=60,
        gt=0,
        description="Request timeout in seconds",
    )

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("openai_api_key", "anthropic_api_key", "openai_base_url", mode="before")
    @classmethod
    def blank_as_missing(cls, v: str | None) -> str | None:
        """Treat empty strings as missing."""
        if v == "":
            return None
        return v

    @field_validator("anthropic_api_key")
    @classmethod
    def validate_anthropic_key(cls, v: str | None) -> str | None:
        """Validate Anthropic API key format."""
        if v and not v.startswith("sk-ant-"):
            raise ValueError("Anthropic API key must start with 'sk-ant-'")
        return v


class DatabaseSettings(BaseSettings):
    """Target database connection configuration."""

    db_type: DatabaseTypeName = Field(
        default="mysql",
        description="Database engine to connect to",
        validation_alias="DATABASE_TYPE",
    )
    host: str = Field(default="localhost", description="Database host (file path for SQLite)")
    port: int | None = Field(
        default=None,
        gt=0,
        le=65535,
        description="Database port (None = engine default)",
    )
    name: str | None = Field(default=None, description="Initial database/catalog")
    username: str = Field(default="", description="Login user")
    password: str = Field(default="", description="Login password")
    extra_params: dict[str, str] = Field(
        default_factory=dict,
        description="Driver-specific connection parameters (JSON object)",
    )
    pool_size: int = Field(
        default=5,
        gt=0,
        le=20,
        description="Connection pool size; also bounds concurrent schema reads",
    )
    timeout: int = Field(
        default=300,
        gt=0,
        description="Statement timeout in seconds",
    )

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, v: str | None) -> str | None:
        """Treat empty strings as missing."""
        if v == "":
            return None
        return v


class AgentSettings(BaseSettings):
    """SQL agent behaviour."""

    max_retries: int = Field(
        default=3,
        gt=0,
        le=10,
        description="Maximum generate/execute attempts per question",
    )
    analysis_temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="Temperature for table analysis",
    )
    analysis_max_tokens: int = Field(
        default=2000,
        gt=0,
        description="Maximum tokens for table analysis",
    )
    knowledge_max_results: int = Field(
        default=5,
        gt=0,
        description="Knowledge items injected into the prompt",
    )

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        extra="ignore",
    )


class KnowledgeSettings(BaseSettings):
    """Knowledge retrieval configuration."""

    api_url: str | None = Field(
        default=None,
        description="Base URL of the remote knowledge retrieval service",
    )
    knowledge_db_ids: list[str] = Field(
        default_factory=list,
        description="Knowledge base ids to search",
    )
    top_k: int = Field(default=10, gt=0, description="Items requested from the service")
    score_threshold: float = Field(
        default=0.0,
        ge=0.0,
        description="Minimum similarity score",
    )
    timeout: int = Field(default=30, gt=0, description="HTTP timeout in seconds")
    scenario_file: Path | None = Field(
        default=None,
        description="Local JSON file with scenario knowledge entries",
    )

    model_config = SettingsConfigDict(
        env_prefix="KNOWLEDGE_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def is_remote_configured(self) -> bool:
        """Remote retrieval needs an endpoint and at least one knowledge base."""
        return bool(self.api_url) and len(self.knowledge_db_ids) > 0


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Application log level",
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format",
    )
    date_format: str = Field(
        default="%Y-%m-%d %H:%M:%S",
        description="Log timestamp format",
    )
    file: Path | None = Field(
        default=None,
        description="Optional log file path (None = stderr only)",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )

    def configure(self) -> None:
        """Configure Python logging with these settings."""
        handlers: list[logging.Handler] = [logging.StreamHandler()]

        if self.file:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.file))

        logging.basicConfig(
            level=getattr(logging, self.level),
            format=self.format,
            datefmt=self.date_format,
            handlers=handlers,
            force=True,
        )


class Settings(BaseSettings):
    """
    Main application settings.

    Environment Variables:
        APP_NAME: Application name used in logs
        LLM_*: LLM provider configuration (see LLMSettings)
        DATABASE_*: Target database configuration (see DatabaseSettings)
        AGENT_*: Retry and analysis behaviour (see AgentSettings)
        KNOWLEDGE_*: Knowledge retrieval (see KnowledgeSettings)
        LOG_*: Logging configuration (see LoggingSettings)

    Example:
        >>> settings = get_settings()
        >>> settings.agent.max_retries
        3
    """

    app_name: str = Field(default="SQLStudio", description="Application name")
    configure_logging_on_load: bool = Field(
        default=True,
        description="Apply LoggingSettings when settings are loaded",
    )

    llm: LLMSettings = Field(default_factory=LLMSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    knowledge: KnowledgeSettings = Field(default_factory=KnowledgeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def configure_logging(self) -> "Settings":
        """Configure logging when settings are loaded."""
        if self.configure_logging_on_load:
            self.logging.configure()
        return self

    def model_post_init(self, __context) -> None:
        """Log configuration on initialization."""
        logger = logging.getLogger(__name__)
        logger.info(
            f"Settings loaded for {self.app_name}",
            extra={
                "llm_provider": self.llm.default_provider,
                "database_type": self.database.db_type,
                "max_retries": self.agent.max_retries,
            },
        )


_DOTENV_PATH = Path.cwd() / ".env"


def _apply_dotenv_precedence() -> None:
    env_source = os.getenv("SQLSTUDIO_ENV_SOURCE", "dotenv").lower()
    if env_source not in {"dotenv", "envfile", "file"}:
        return
    if _DOTENV_PATH.exists():
        load_dotenv(_DOTENV_PATH, override=True)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Singleton settings instance
    """
    _apply_dotenv_precedence()
    return Settings()


def clear_settings_cache() -> None:
    """
    Clear the settings cache.

    Useful for testing when you need to reload settings with different
    environment variables.
    """
    get_settings.cache_clear()
