"""
Agent Models

Pydantic request/result models shared by the table analyzer, the SQL
generator and the agent executor, plus the agent exception hierarchy.
Results are frozen so they can be handed to event listeners as snapshots.
"""

import asyncio
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from sqlstudio.connectors.base import DatabaseSchema, SqlExecutionResult


class ExecutionStep(str, Enum):
    """Progress of one agent run."""

    FETCHING_SCHEMA = "fetching_schema"
    ANALYZING_TABLES = "analyzing_tables"
    GENERATING_SQL = "generating_sql"
    EXECUTING_SQL = "executing_sql"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ============================================================================
# Generation
# ============================================================================


class SqlGenerationHistory(BaseModel):
    """One prior conversation turn replayed into the prompt."""

    role: Literal["user", "assistant", "system"] = Field(..., description="Turn author")
    content: str = Field(..., description="Turn text")

    model_config = ConfigDict(frozen=True)


class SqlGenerationRequest(BaseModel):
    """Input for SQL generation. The schema is already narrowed to relevant tables."""

    user_query: str = Field(..., description="Natural-language request")
    database_schema: DatabaseSchema = Field(..., description="Tables the model may use")
    database_type: str = Field(..., description="Dialect display name, e.g. MySQL")
    additional_context: str | None = Field(None, description="Knowledge or notes")
    history: list[SqlGenerationHistory] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class SqlGenerationResult(BaseModel):
    """Outcome of one generation call. Transport errors are reported here."""

    success: bool
    generated_sql: str | None = None
    explanation: str | None = None
    error_message: str | None = None
    tokens_used: int = 0

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Table analysis
# ============================================================================


class TableAnalysisRequest(BaseModel):
    """Input for table selection."""

    user_query: str
    full_schema: DatabaseSchema
    database_type: str
    additional_context: str | None = None

    model_config = ConfigDict(frozen=True)


class TableAnalysisResult(BaseModel):
    """Selected tables, canonical casing, deduplicated, in selection order."""

    success: bool
    required_tables: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    error_message: str | None = None

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Agent run
# ============================================================================


class SqlAttempt(BaseModel):
    """One generate-then-execute cycle."""

    attempt_number: int = Field(..., ge=1)
    generated_sql: str | None = None
    explanation: str | None = None
    generation_error: str | None = None
    execution_result: SqlExecutionResult | None = None
    success: bool = False

    model_config = ConfigDict(frozen=True)


class SqlAgentResult(BaseModel):
    """Final outcome of an agent run."""

    success: bool
    final_sql: str | None = None
    final_explanation: str | None = None
    execution_result: SqlExecutionResult | None = None
    error_message: str | None = None
    attempts: list[SqlAttempt] = Field(default_factory=list)
    total_attempts: int = 0
    analyzed_tables: list[str] = Field(default_factory=list)
    table_analysis_reasoning: str | None = None
    cancelled: bool = False

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Errors
# ============================================================================


class AgentError(Exception):
    """
    Custom exception for agent errors.

    Attributes:
        agent: Name of the component that raised the error
        message: Error description
        recoverable: Whether the caller can retry or continue
        context: Additional context for debugging
    """

    def __init__(
        self,
        agent: str,
        message: str,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ):
        self.agent = agent
        self.message = message
        self.recoverable = recoverable
        self.context = context or {}
        super().__init__(f"[{agent}] {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
            "type": self.__class__.__name__,
        }


class ConfigurationError(AgentError):
    """Missing or invalid wiring (no AI provider, unknown connection)."""

    def __init__(self, agent: str, message: str, context: dict[str, Any] | None = None):
        super().__init__(agent, message, recoverable=False, context=context)


class ExecutionCancelled(asyncio.CancelledError):
    """
    Raised when an agent run is stopped by its cancel signal.

    Subclasses CancelledError so generic exception handlers never swallow it.
    Carries the attempts recorded before the stop.
    """

    def __init__(self, message: str = "Stopped by user", attempts: list[SqlAttempt] | None = None):
        super().__init__(message)
        self.message = message
        self.attempts = list(attempts or [])
