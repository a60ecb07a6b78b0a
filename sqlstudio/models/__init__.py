"""Request, result and error models for the SQL agents."""

from sqlstudio.models.agent import (
    AgentError,
    ConfigurationError,
    ExecutionCancelled,
    ExecutionStep,
    SqlAgentResult,
    SqlAttempt,
    SqlGenerationHistory,
    SqlGenerationRequest,
    SqlGenerationResult,
    TableAnalysisRequest,
    TableAnalysisResult,
)

__all__ = [
    "AgentError",
    "ConfigurationError",
    "ExecutionCancelled",
    "ExecutionStep",
    "SqlAgentResult",
    "SqlAttempt",
    "SqlGenerationHistory",
    "SqlGenerationRequest",
    "SqlGenerationResult",
    "TableAnalysisRequest",
    "TableAnalysisResult",
]
