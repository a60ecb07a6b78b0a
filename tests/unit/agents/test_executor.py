"""
Unit tests for SqlAgentExecutor.

Drives the full loop with a scripted provider and the in-memory connector:
table selection, knowledge injection, the bounded retry loop with error
feedback, events and cancellation.
"""

import asyncio
import logging

import pytest

from sqlstudio.agents.events import (
    PromptSending,
    Retrying,
    SqlExecuted,
    SqlGenerated,
    StepChanged,
    StreamingToken,
    TableAnalysisCompleted,
    TableAnalysisStarted,
)
from sqlstudio.agents.executor import NO_DATABASE_MESSAGE, SqlAgentExecutor, combine_context
from sqlstudio.agents.sql_generator import NO_SQL_MESSAGE, SqlGenerator
from sqlstudio.connectors.base import ConnectionConfig, QueryResult
from sqlstudio.knowledge.retriever import (
    KNOWLEDGE_CONTEXT_HEADER,
    KnowledgeRetriever,
    ScenarioKnowledge,
    ScenarioKnowledgeRetriever,
)
from sqlstudio.models.agent import ExecutionCancelled, ExecutionStep, SqlGenerationHistory

ANALYSIS = "TABLES: users, orders\nREASON: names and amounts"
ENGINE_ERROR = "Unknown column 'emial' in 'field list'"


def sql_block(sql: str) -> str:
    return f"```sql\n{sql}\n```"


def totals_result() -> QueryResult:
    return QueryResult(columns=["name", "total"], rows=[{"name": "Al", "total": 80}], row_count=1)


def make_executor(connector, llm, **kwargs) -> SqlAgentExecutor:
    return SqlAgentExecutor(connector, SqlGenerator(llm), **kwargs)


def steps_of(events):
    return [(event.step, event.message) for event in events if isinstance(event, StepChanged)]


class FailingRetriever(KnowledgeRetriever):
    async def search(self, query, max_results=5):
        raise RuntimeError("knowledge service down")


class TestCombineContext:
    def test_both_blank(self):
        assert combine_context(None, "  ") is None

    def test_joins_non_blank_parts(self):
        assert combine_context("notes", "rules") == "notes\n\nrules"
        assert combine_context("", "rules") == "rules"


class TestConstruction:
    async def test_rejects_zero_retries(self, fake_connector, scripted_llm):
        with pytest.raises(ValueError, match="max_retries"):
            make_executor(fake_connector, scripted_llm(), max_retries=0)

    async def test_default_analyzer_shares_provider(self, fake_connector, scripted_llm):
        llm = scripted_llm()
        executor = make_executor(fake_connector, llm)

        assert executor.analyzer.llm is llm
        assert executor.step is None


class TestSuccess:
    async def test_first_attempt_success(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT name, SUM(amount) AS total FROM orders"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)

        result = await executor.execute_query("Total order amount per customer")

        assert result.success is True
        assert result.final_sql == "SELECT name, SUM(amount) AS total FROM orders"
        assert result.total_attempts == 1
        assert result.attempts[0].success is True
        assert result.execution_result.data.rows == [{"name": "Al", "total": 80}]
        assert result.analyzed_tables == ["users", "orders"]
        assert result.table_analysis_reasoning == "names and amounts"
        assert fake_connector.executed == ["SELECT name, SUM(amount) AS total FROM orders"]
        assert executor.step == ExecutionStep.COMPLETED

    async def test_event_order(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        await executor.execute_query("Total order amount per customer")

        kinds = [type(event) for event in events if not isinstance(event, StreamingToken)]
        assert kinds == [
            StepChanged,
            StepChanged,
            TableAnalysisStarted,
            TableAnalysisCompleted,
            StepChanged,
            PromptSending,
            StepChanged,
            SqlGenerated,
            SqlExecuted,
            StepChanged,
        ]
        assert steps_of(events) == [
            (ExecutionStep.FETCHING_SCHEMA, "Fetching database schema"),
            (ExecutionStep.ANALYZING_TABLES, "Analyzing required tables"),
            (ExecutionStep.GENERATING_SQL, "Generating SQL (using 2 tables)"),
            (ExecutionStep.EXECUTING_SQL, "Executing SQL"),
            (ExecutionStep.COMPLETED, "Execution completed"),
        ]

    async def test_tokens_are_tagged_by_phase(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        await executor.execute_query("Totals")

        tokens = [event for event in events if isinstance(event, StreamingToken)]
        analysis = "".join(t.token for t in tokens if t.phase == "TableAnalysis")
        generation = "".join(t.token for t in tokens if t.phase == "SqlGeneration")
        assert analysis == ANALYSIS
        assert generation == sql_block("SELECT 1")
        assert {t.attempt_number for t in tokens if t.phase == "TableAnalysis"} == {0}
        assert {t.attempt_number for t in tokens if t.phase == "SqlGeneration"} == {1}

    async def test_prompt_sending_reports_table_counts(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        await executor.execute_query("Totals")

        sending = next(event for event in events if isinstance(event, PromptSending))
        assert sending.attempt_number == 1
        assert sending.filtered_table_count == 2
        assert sending.total_table_count == 3
        assert "Table: products" not in sending.system_prompt
        assert sending.system_prompt == llm.requests[1].messages[0].content
        assert sending.user_prompt == llm.requests[1].messages[-1].content


class TestRetry:
    async def test_engine_error_is_fed_back_verbatim(self, fake_connector, scripted_llm):
        llm = scripted_llm(
            ANALYSIS,
            sql_block("SELECT emial FROM users"),
            sql_block("SELECT email FROM users"),
        )
        fake_connector.outcomes = [Exception(ENGINE_ERROR), totals_result()]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        result = await executor.execute_query("List user emails")

        assert result.success is True
        assert result.total_attempts == 2
        assert result.final_sql == "SELECT email FROM users"
        assert result.attempts[0].success is False
        assert result.attempts[0].execution_result.error_message == ENGINE_ERROR

        correction = llm.requests[2].messages
        assert correction[2].content == sql_block("SELECT emial FROM users")
        assert f"**Error message:** {ENGINE_ERROR}" in correction[3].content

        retrying = [event for event in events if isinstance(event, Retrying)]
        assert retrying == [
            Retrying(
                attempt_number=2,
                max_attempts=3,
                previous_sql="SELECT emial FROM users",
                error_message=ENGINE_ERROR,
            )
        ]
        assert (ExecutionStep.RETRYING, "SQL failed, retrying (2/3)") in steps_of(events)

    async def test_attempts_are_bounded(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT a"), sql_block("SELECT b"))
        fake_connector.outcomes = [Exception("boom1"), Exception("boom2")]
        executor = make_executor(fake_connector, llm, max_retries=2)
        events = []
        executor.add_listener(events.append)

        result = await executor.execute_query("Anything")

        assert result.success is False
        assert result.error_message == "Failed after 2 attempts. Last error: boom2"
        assert result.total_attempts == 2
        assert len(result.attempts) == 2
        assert len(llm.requests) == 3
        assert fake_connector.executed == ["SELECT a", "SELECT b"]
        assert executor.step == ExecutionStep.FAILED
        assert steps_of(events)[-2:] == [
            (ExecutionStep.EXECUTING_SQL, "Executing SQL"),
            (ExecutionStep.FAILED, "Execution failed"),
        ]

    async def test_single_attempt_does_not_retry(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT a"))
        fake_connector.outcomes = [Exception("boom")]
        executor = make_executor(fake_connector, llm, max_retries=1)
        events = []
        executor.add_listener(events.append)

        result = await executor.execute_query("Anything")

        assert result.success is False
        assert not any(isinstance(event, Retrying) for event in events)
        assert ExecutionStep.RETRYING not in [step for step, _ in steps_of(events)]

    async def test_generation_failure_starts_over(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, "```sql\n```", sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        result = await executor.execute_query("Totals")

        assert result.success is True
        assert result.total_attempts == 2
        assert result.attempts[0].generation_error == NO_SQL_MESSAGE
        assert result.attempts[0].execution_result is None
        assert [message.role for message in llm.requests[2].messages] == ["system", "user"]
        retrying = next(event for event in events if isinstance(event, Retrying))
        assert retrying.previous_sql == ""
        assert retrying.error_message == NO_SQL_MESSAGE
        assert fake_connector.executed == ["SELECT 1"]

    async def test_generation_errors_only(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, RuntimeError("quota"), RuntimeError("quota"))
        executor = make_executor(fake_connector, llm, max_retries=2)

        result = await executor.execute_query("Totals")

        assert result.success is False
        assert result.error_message == (
            "Failed after 2 attempts. Last error: Failed to generate SQL: quota"
        )
        assert fake_connector.executed == []


class TestTableSelection:
    async def test_specified_tables_skip_analysis(self, fake_connector, scripted_llm):
        llm = scripted_llm(sql_block("SELECT email FROM users"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        result = await executor.execute_query("Emails", specified_tables=["USERS"])

        assert result.analyzed_tables == ["users"]
        assert len(llm.requests) == 1
        system_prompt = llm.requests[0].messages[0].content
        assert "Table: users" in system_prompt
        assert "Table: orders" not in system_prompt
        assert not any(isinstance(event, TableAnalysisStarted) for event in events)
        assert (ExecutionStep.ANALYZING_TABLES, "Using 1 user-specified tables") in steps_of(events)

    async def test_failed_analysis_uses_full_schema(self, fake_connector, scripted_llm):
        llm = scripted_llm("No idea.", sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        result = await executor.execute_query("Totals")

        assert result.success is True
        assert result.analyzed_tables == []
        completed = next(event for event in events if isinstance(event, TableAnalysisCompleted))
        assert completed.selected_tables == ()
        assert completed.total_tables == 3
        system_prompt = llm.requests[1].messages[0].content
        assert all(f"Table: {name}" in system_prompt for name in ("users", "orders", "products"))


class TestKnowledge:
    async def test_knowledge_reaches_generation_prompt(self, fake_connector, scripted_llm):
        knowledge = ScenarioKnowledgeRetriever(
            [
                ScenarioKnowledge(
                    title="Order totals",
                    content="Totals exclude cancelled orders",
                    keywords=["total"],
                )
            ]
        )
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm, knowledge=knowledge)
        events = []
        executor.add_listener(events.append)

        await executor.execute_query("total per customer", additional_context="Only 2024")

        analysis_prompt = llm.requests[0].messages[1].content
        generation_prompt = llm.requests[1].messages[-1].content
        assert "Totals exclude cancelled orders" not in analysis_prompt
        assert "Only 2024" in analysis_prompt
        assert "## Business rules and scenario knowledge (follow strictly)" in generation_prompt
        assert "Totals exclude cancelled orders" in generation_prompt
        assert "Only 2024" in generation_prompt
        assert KNOWLEDGE_CONTEXT_HEADER not in generation_prompt
        assert (ExecutionStep.GENERATING_SQL, "Retrieving relevant knowledge") in steps_of(events)

    async def test_knowledge_failure_is_not_fatal(self, fake_connector, scripted_llm, caplog):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm, knowledge=FailingRetriever())

        result = await executor.execute_query("Totals")

        assert result.success is True
        assert "Knowledge retrieval failed" in caplog.text


class TestHistory:
    async def test_history_reaches_generation(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        history = [
            SqlGenerationHistory(role="user", content="Show users"),
            SqlGenerationHistory(role="assistant", content="SELECT * FROM users;"),
        ]

        await executor.execute_query("Only names", conversation_history=history)

        roles = [message.role for message in llm.requests[1].messages]
        assert roles == ["system", "user", "assistant", "user"]


class TestPreconditions:
    async def test_no_database_selected(self, fake_connector_class, shop_tables, scripted_llm):
        connector = fake_connector_class(shop_tables)
        await connector.connect(ConnectionConfig(host="localhost"))
        llm = scripted_llm()
        executor = make_executor(connector, llm)

        result = await executor.execute_query("Totals")

        assert result.success is False
        assert result.error_message == NO_DATABASE_MESSAGE
        assert llm.requests == []

    async def test_schema_failure(self, fake_connector, scripted_llm, monkeypatch):
        async def broken_tables():
            raise RuntimeError("Lost connection")

        monkeypatch.setattr(fake_connector, "_list_tables", broken_tables)
        executor = make_executor(fake_connector, scripted_llm())

        result = await executor.execute_query("Totals")

        assert result.success is False
        assert result.error_message == "Failed to load schema: Failed to list tables: Lost connection"
        assert executor.step == ExecutionStep.FAILED


class TestNonQuery:
    async def test_uses_full_schema_and_affected_rows(self, fake_connector, scripted_llm):
        llm = scripted_llm(sql_block("UPDATE users SET name = 'Bo' WHERE id = 1"))
        fake_connector.outcomes = [1]
        executor = make_executor(fake_connector, llm)
        events = []
        executor.add_listener(events.append)

        result = await executor.execute_non_query("Rename user 1 to Bo")

        assert result.success is True
        assert result.execution_result.affected_rows == 1
        assert result.analyzed_tables == []
        assert len(llm.requests) == 1
        assert not any(isinstance(event, TableAnalysisStarted) for event in events)
        assert (ExecutionStep.GENERATING_SQL, "Generating SQL (using 3 tables)") in steps_of(events)

    async def test_retries_with_error(self, fake_connector, scripted_llm):
        llm = scripted_llm(
            sql_block("UPDATE users SET nmae = 'Bo'"),
            sql_block("UPDATE users SET name = 'Bo'"),
        )
        fake_connector.outcomes = [Exception("Unknown column 'nmae'"), 3]
        executor = make_executor(fake_connector, llm)

        result = await executor.execute_non_query("Rename everyone to Bo")

        assert result.success is True
        assert result.total_attempts == 2
        assert "Unknown column 'nmae'" in llm.requests[1].messages[3].content


class TestCancellation:
    async def test_cancel_during_generation(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT name FROM users"))
        executor = make_executor(fake_connector, llm)
        cancel_event = asyncio.Event()
        events = []

        def listener(event):
            events.append(event)
            if isinstance(event, StreamingToken) and event.phase == "SqlGeneration":
                cancel_event.set()

        executor.add_listener(listener)

        with pytest.raises(ExecutionCancelled) as exc_info:
            await executor.execute_query("Names", cancel_event=cancel_event)

        assert exc_info.value.attempts == []
        assert fake_connector.executed == []
        assert steps_of(events)[-1] == (ExecutionStep.CANCELLED, "Stopped by user")
        assert executor.step == ExecutionStep.CANCELLED

    async def test_cancel_between_attempts_keeps_attempts(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT emial FROM users"), sql_block("SELECT 1"))
        fake_connector.outcomes = [Exception(ENGINE_ERROR), totals_result()]
        executor = make_executor(fake_connector, llm)
        cancel_event = asyncio.Event()

        def listener(event):
            if isinstance(event, SqlExecuted):
                cancel_event.set()

        executor.add_listener(listener)

        with pytest.raises(ExecutionCancelled) as exc_info:
            await executor.execute_query("Emails", cancel_event=cancel_event)

        assert len(exc_info.value.attempts) == 1
        assert exc_info.value.attempts[0].generated_sql == "SELECT emial FROM users"
        assert len(llm.requests) == 2

    async def test_cancel_before_start(self, fake_connector, scripted_llm):
        llm = scripted_llm()
        executor = make_executor(fake_connector, llm)
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(ExecutionCancelled):
            await executor.execute_non_query("Delete everything", cancel_event=cancel_event)

        assert llm.requests == []

    async def test_cancel_while_statement_runs(self, fake_connector, scripted_llm, monkeypatch):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT SLEEP(5)"))
        executor = make_executor(fake_connector, llm)
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        async def slow_fetch(sql):
            fake_connector.executed.append(sql)
            await asyncio.sleep(5)
            return totals_result()

        monkeypatch.setattr(fake_connector, "_fetch", slow_fetch)

        def listener(event):
            if isinstance(event, SqlGenerated):
                loop.call_later(0.05, cancel_event.set)

        executor.add_listener(listener)
        started = loop.time()

        with pytest.raises(ExecutionCancelled) as exc_info:
            await executor.execute_query("Slow totals", cancel_event=cancel_event)

        assert loop.time() - started < 1
        assert fake_connector.executed == ["SELECT SLEEP(5)"]
        assert exc_info.value.attempts == []
        assert executor.step == ExecutionStep.CANCELLED


class TestListeners:
    async def test_executed_event_is_a_snapshot(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)

        def tamper(event):
            if isinstance(event, SqlExecuted):
                event.execution_result.data.rows.clear()

        executor.add_listener(tamper)

        result = await executor.execute_query("Totals")

        assert result.execution_result.data.rows == [{"name": "Al", "total": 80}]
        assert result.attempts[0].execution_result.data.rows == [{"name": "Al", "total": 80}]

    async def test_listener_errors_are_logged(self, fake_connector, scripted_llm, caplog):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        executor.add_listener(broken)
        executor.add_listener(seen.append)

        with caplog.at_level(logging.ERROR):
            result = await executor.execute_query("Totals")

        assert result.success is True
        assert seen
        assert "Event listener failed on StepChanged" in caplog.text

    async def test_remove_listener(self, fake_connector, scripted_llm):
        llm = scripted_llm(ANALYSIS, sql_block("SELECT 1"))
        fake_connector.outcomes = [totals_result()]
        executor = make_executor(fake_connector, llm)
        seen = []
        executor.add_listener(seen.append)
        executor.remove_listener(seen.append)
        executor.remove_listener(seen.append)

        await executor.execute_query("Totals")

        assert seen == []
