"""
SQLStudio Agents Module

Natural language to SQL conversion with self-correction.

Available Agents:
    - BaseAgent: Streaming completion plumbing shared by the agents
    - TableAnalyzer: Selects the tables a question needs
    - SqlGenerator: Generates SQL and corrects it from engine errors
    - SqlAgentExecutor: Schema, analysis, knowledge, generate/execute/retry loop

Usage:
    from sqlstudio.agents import SqlAgentExecutor, SqlGenerator

    executor = SqlAgentExecutor(connector, SqlGenerator(llm))
    executor.add_listener(print)
    result = await executor.execute_query("Total order amount per user")
"""

from sqlstudio.agents.base import BaseAgent, raise_if_cancelled
from sqlstudio.agents.events import (
    AgentEvent,
    EventListener,
    PromptSending,
    Retrying,
    SqlExecuted,
    SqlGenerated,
    StepChanged,
    StreamingToken,
    TableAnalysisCompleted,
    TableAnalysisStarted,
)
from sqlstudio.agents.executor import SqlAgentExecutor, combine_context
from sqlstudio.agents.sql_generator import SqlGenerator, extract_sql, format_schema
from sqlstudio.agents.table_analyzer import TableAnalyzer, parse_table_analysis

__all__ = [
    "BaseAgent",
    "TableAnalyzer",
    "SqlGenerator",
    "SqlAgentExecutor",
    "AgentEvent",
    "EventListener",
    "StepChanged",
    "TableAnalysisStarted",
    "TableAnalysisCompleted",
    "PromptSending",
    "StreamingToken",
    "SqlGenerated",
    "SqlExecuted",
    "Retrying",
    "combine_context",
    "extract_sql",
    "format_schema",
    "parse_table_analysis",
    "raise_if_cancelled",
]
