"""
Agent Events

Immutable notifications emitted by SqlAgentExecutor while a question is
processed. Listeners receive them synchronously, in registration order.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal, Union

from sqlstudio.connectors.base import SqlExecutionResult
from sqlstudio.models.agent import ExecutionStep

StreamPhase = Literal["TableAnalysis", "SqlGeneration"]


@dataclass(frozen=True)
class StepChanged:
    step: ExecutionStep
    message: str


@dataclass(frozen=True)
class TableAnalysisStarted:
    user_query: str
    total_tables: int


@dataclass(frozen=True)
class TableAnalysisCompleted:
    user_query: str
    total_tables: int
    selected_tables: tuple[str, ...] = field(default_factory=tuple)
    reasoning: str | None = None


@dataclass(frozen=True)
class PromptSending:
    """The exact prompts of the first generation attempt."""

    user_query: str
    system_prompt: str
    user_prompt: str
    attempt_number: int
    filtered_table_count: int
    total_table_count: int


@dataclass(frozen=True)
class StreamingToken:
    token: str
    attempt_number: int
    phase: StreamPhase


@dataclass(frozen=True)
class SqlGenerated:
    sql: str
    explanation: str | None
    attempt_number: int


@dataclass(frozen=True)
class SqlExecuted:
    sql: str
    execution_result: SqlExecutionResult
    attempt_number: int


@dataclass(frozen=True)
class Retrying:
    attempt_number: int
    max_attempts: int
    previous_sql: str
    error_message: str


AgentEvent = Union[
    StepChanged,
    TableAnalysisStarted,
    TableAnalysisCompleted,
    PromptSending,
    StreamingToken,
    SqlGenerated,
    SqlExecuted,
    Retrying,
]

EventListener = Callable[[AgentEvent], None]
