"""
SQL Agent Executor

Drives one question end to end against a connected database:

1. Load the schema of the current database
2. Narrow it to the relevant tables (user selection or model analysis)
3. Retrieve business knowledge for the prompt
4. Generate SQL, execute it, and on failure feed the engine error back to
   the model, up to max_retries attempts in total

Progress is published as events (see sqlstudio.agents.events) to listeners
registered with add_listener(), and the current step can be polled through
the step property. Once cancel_event is set the run stops, abandoning any
stalled model stream or running statement, and raises ExecutionCancelled.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

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
from sqlstudio.agents.base import raise_if_cancelled, wait_or_cancel
from sqlstudio.agents.sql_generator import SqlGenerator
from sqlstudio.agents.table_analyzer import TableAnalyzer
from sqlstudio.connectors.base import (
    BaseConnector,
    ConnectorError,
    DatabaseSchema,
    SqlExecutionResult,
)
from sqlstudio.knowledge.retriever import KnowledgeRetriever
from sqlstudio.models.agent import (
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

logger = logging.getLogger(__name__)

NO_DATABASE_MESSAGE = "Please select a database first"


def combine_context(additional_context: str | None, knowledge_context: str | None) -> str | None:
    """Join user-supplied notes and retrieved knowledge, skipping blank parts."""
    parts = [part for part in (additional_context, knowledge_context) if part and part.strip()]
    if not parts:
        return None
    return "\n\n".join(parts)


class SqlAgentExecutor:
    """
    Retrying NL-to-SQL loop over one connector.

    Usage:
        executor = SqlAgentExecutor(connector, SqlGenerator(llm), TableAnalyzer(llm))
        executor.add_listener(lambda event: print(event))
        result = await executor.execute_query("Total order amount per user")
        if result.success:
            print(result.final_sql, result.execution_result.data.rows)
    """

    def __init__(
        self,
        connector: BaseConnector,
        generator: SqlGenerator,
        analyzer: TableAnalyzer | None = None,
        knowledge: KnowledgeRetriever | None = None,
        max_retries: int = 3,
        knowledge_max_results: int = 5,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.connector = connector
        self.generator = generator
        self.analyzer = analyzer or TableAnalyzer(generator.llm, prompts=generator.prompts)
        self.knowledge = knowledge
        self.max_retries = max_retries
        self.knowledge_max_results = knowledge_max_results
        self._listeners: list[EventListener] = []
        self._step: ExecutionStep | None = None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def step(self) -> ExecutionStep | None:
        """Most recent step of the current or last run."""
        return self._step

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: AgentEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"Event listener failed on {type(event).__name__}",
                    extra={"event": type(event).__name__},
                )

    def _set_step(self, step: ExecutionStep, message: str) -> None:
        self._step = step
        logger.debug(f"{step.value}: {message}")
        self._emit(StepChanged(step=step, message=message))

    def _token_sink(self, attempt_number: int, phase: str) -> Callable[[str], None]:
        def sink(token: str) -> None:
            self._emit(StreamingToken(token=token, attempt_number=attempt_number, phase=phase))

        return sink

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def execute_query(
        self,
        user_query: str,
        additional_context: str | None = None,
        conversation_history: list[SqlGenerationHistory] | None = None,
        specified_tables: list[str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SqlAgentResult:
        """
        Answer a question with a row-returning query.

        Args:
            user_query: Natural-language question
            additional_context: Extra notes for the prompt
            conversation_history: Earlier turns replayed to the model
            specified_tables: Tables chosen by the user; skips model analysis
            cancel_event: Set to stop the run

        Returns:
            SqlAgentResult; generation and execution failures are reported in
            it, never raised

        Raises:
            ExecutionCancelled: If cancel_event was set during the run
        """
        attempts: list[SqlAttempt] = []
        try:
            return await self._execute_query(
                user_query,
                additional_context,
                conversation_history or [],
                specified_tables,
                cancel_event,
                attempts,
            )
        except asyncio.CancelledError as exc:
            self._on_cancelled(exc, attempts)
            raise

    async def execute_non_query(
        self,
        user_query: str,
        additional_context: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SqlAgentResult:
        """
        Carry out a data-modifying request.

        Uses the full schema without table analysis or knowledge retrieval,
        and runs statements through execute_non_query().

        Raises:
            ExecutionCancelled: If cancel_event was set during the run
        """
        attempts: list[SqlAttempt] = []
        try:
            if not self.connector.current_database:
                return SqlAgentResult(success=False, error_message=NO_DATABASE_MESSAGE)

            schema = await self._load_schema(cancel_event)
            if isinstance(schema, SqlAgentResult):
                return schema

            request = SqlGenerationRequest(
                user_query=user_query,
                database_schema=schema,
                database_type=self.connector.database_type,
                additional_context=additional_context,
            )
            self._set_step(
                ExecutionStep.GENERATING_SQL,
                f"Generating SQL (using {len(schema.tables)} tables)",
            )
            return await self._run_attempts(
                request,
                total_tables=len(schema.tables),
                execute=self.connector.execute_non_query,
                analysis=None,
                cancel_event=cancel_event,
                attempts=attempts,
            )
        except asyncio.CancelledError as exc:
            self._on_cancelled(exc, attempts)
            raise

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _execute_query(
        self,
        user_query: str,
        additional_context: str | None,
        conversation_history: list[SqlGenerationHistory],
        specified_tables: list[str] | None,
        cancel_event: asyncio.Event | None,
        attempts: list[SqlAttempt],
    ) -> SqlAgentResult:
        if not self.connector.current_database:
            return SqlAgentResult(success=False, error_message=NO_DATABASE_MESSAGE)

        full_schema = await self._load_schema(cancel_event)
        if isinstance(full_schema, SqlAgentResult):
            return full_schema

        analysis, filtered_schema = await self._select_tables(
            user_query, additional_context, full_schema, specified_tables, cancel_event
        )

        knowledge_context = await self._retrieve_knowledge(user_query, cancel_event)

        self._set_step(
            ExecutionStep.GENERATING_SQL,
            f"Generating SQL (using {len(filtered_schema.tables)} tables)",
        )
        request = SqlGenerationRequest(
            user_query=user_query,
            database_schema=filtered_schema,
            database_type=self.connector.database_type,
            additional_context=combine_context(additional_context, knowledge_context),
            history=conversation_history,
        )
        return await self._run_attempts(
            request,
            total_tables=len(full_schema.tables),
            execute=self.connector.execute_query,
            analysis=analysis,
            cancel_event=cancel_event,
            attempts=attempts,
        )

    async def _load_schema(
        self, cancel_event: asyncio.Event | None
    ) -> DatabaseSchema | SqlAgentResult:
        raise_if_cancelled(cancel_event)
        self._set_step(ExecutionStep.FETCHING_SCHEMA, "Fetching database schema")
        try:
            return await wait_or_cancel(self.connector.get_schema(), cancel_event)
        except ConnectorError as exc:
            logger.error(f"Schema load failed: {exc}")
            self._set_step(ExecutionStep.FAILED, "Failed to load schema")
            return SqlAgentResult(success=False, error_message=f"Failed to load schema: {exc}")

    async def _select_tables(
        self,
        user_query: str,
        additional_context: str | None,
        full_schema: DatabaseSchema,
        specified_tables: list[str] | None,
        cancel_event: asyncio.Event | None,
    ) -> tuple[TableAnalysisResult, DatabaseSchema]:
        raise_if_cancelled(cancel_event)
        total_tables = len(full_schema.tables)

        if specified_tables:
            self._set_step(
                ExecutionStep.ANALYZING_TABLES,
                f"Using {len(specified_tables)} user-specified tables",
            )
            analysis = TableAnalyzer.from_selection(specified_tables, full_schema)
        else:
            self._set_step(ExecutionStep.ANALYZING_TABLES, "Analyzing required tables")
            self._emit(TableAnalysisStarted(user_query=user_query, total_tables=total_tables))
            analysis = await self.analyzer.analyze(
                TableAnalysisRequest(
                    user_query=user_query,
                    full_schema=full_schema,
                    database_type=self.connector.database_type,
                    additional_context=additional_context,
                ),
                on_token=self._token_sink(0, "TableAnalysis"),
                cancel_event=cancel_event,
            )

        if analysis.success and analysis.required_tables:
            filtered_schema = full_schema.filter_tables(analysis.required_tables)
        else:
            logger.info(
                "No tables selected, generating against the full schema",
                extra={"error": analysis.error_message},
            )
            filtered_schema = full_schema

        self._emit(
            TableAnalysisCompleted(
                user_query=user_query,
                total_tables=total_tables,
                selected_tables=tuple(analysis.required_tables),
                reasoning=analysis.reasoning,
            )
        )
        return analysis, filtered_schema

    async def _retrieve_knowledge(
        self, user_query: str, cancel_event: asyncio.Event | None
    ) -> str | None:
        if self.knowledge is None:
            return None
        raise_if_cancelled(cancel_event)
        self._set_step(ExecutionStep.GENERATING_SQL, "Retrieving relevant knowledge")
        try:
            items = await wait_or_cancel(
                self.knowledge.search(user_query, max_results=self.knowledge_max_results),
                cancel_event,
            )
            context = self.knowledge.format_as_context(items) if items else None
        except Exception as exc:
            logger.warning(f"Knowledge retrieval failed, continuing without it: {exc}")
            return None
        logger.debug(
            f"Knowledge context has {len(context or '')} characters",
            extra={"items": len(items)},
        )
        return context or None

    async def _run_attempts(
        self,
        request: SqlGenerationRequest,
        total_tables: int,
        execute: Callable[[str], Awaitable[SqlExecutionResult]],
        analysis: TableAnalysisResult | None,
        cancel_event: asyncio.Event | None,
        attempts: list[SqlAttempt],
    ) -> SqlAgentResult:
        start_time = time.perf_counter()
        analyzed_tables = list(analysis.required_tables) if analysis else []
        reasoning = analysis.reasoning if analysis else None

        generation: SqlGenerationResult | None = None
        last_execution: SqlExecutionResult | None = None

        for attempt in range(self.max_retries):
            attempt_number = attempt + 1
            raise_if_cancelled(cancel_event)
            sink = self._token_sink(attempt_number, "SqlGeneration")

            if attempt == 0 or last_execution is None:
                if attempt == 0:
                    system_prompt, user_prompt = self.generator.get_prompts(request)
                    self._emit(
                        PromptSending(
                            user_query=request.user_query,
                            system_prompt=system_prompt,
                            user_prompt=user_prompt,
                            attempt_number=attempt_number,
                            filtered_table_count=len(request.database_schema.tables),
                            total_table_count=total_tables,
                        )
                    )
                else:
                    # Nothing executed yet, so start over rather than correct.
                    self._emit(
                        Retrying(
                            attempt_number=attempt_number,
                            max_attempts=self.max_retries,
                            previous_sql=generation.generated_sql or "",
                            error_message=generation.error_message or "",
                        )
                    )
                generation = await self.generator.generate_sql_streaming(
                    request, sink, cancel_event
                )
            else:
                previous_sql = last_execution.executed_sql
                error_message = last_execution.error_message or ""
                self._emit(
                    Retrying(
                        attempt_number=attempt_number,
                        max_attempts=self.max_retries,
                        previous_sql=previous_sql,
                        error_message=error_message,
                    )
                )
                generation = await self.generator.regenerate_sql_with_error_streaming(
                    request, previous_sql, error_message, sink, cancel_event
                )

            raise_if_cancelled(cancel_event)
            self._set_step(ExecutionStep.EXECUTING_SQL, "Executing SQL")

            if not generation.success or not generation.generated_sql:
                attempts.append(
                    SqlAttempt(
                        attempt_number=attempt_number,
                        generated_sql=generation.generated_sql,
                        explanation=generation.explanation,
                        generation_error=generation.error_message,
                        success=False,
                    )
                )
                logger.warning(
                    f"Attempt {attempt_number} produced no SQL: {generation.error_message}"
                )
                continue

            self._emit(
                SqlGenerated(
                    sql=generation.generated_sql,
                    explanation=generation.explanation,
                    attempt_number=attempt_number,
                )
            )
            raise_if_cancelled(cancel_event)
            last_execution = await wait_or_cancel(execute(generation.generated_sql), cancel_event)
            self._emit(
                SqlExecuted(
                    sql=generation.generated_sql,
                    execution_result=last_execution.model_copy(deep=True),
                    attempt_number=attempt_number,
                )
            )
            attempts.append(
                SqlAttempt(
                    attempt_number=attempt_number,
                    generated_sql=generation.generated_sql,
                    explanation=generation.explanation,
                    execution_result=last_execution,
                    success=last_execution.success,
                )
            )

            if last_execution.success:
                self._set_step(ExecutionStep.COMPLETED, "Execution completed")
                logger.info(
                    f"Query succeeded on attempt {attempt_number}",
                    extra={
                        "attempts": attempt_number,
                        "duration_ms": (time.perf_counter() - start_time) * 1000,
                    },
                )
                return SqlAgentResult(
                    success=True,
                    final_sql=generation.generated_sql,
                    final_explanation=generation.explanation,
                    execution_result=last_execution,
                    attempts=attempts,
                    total_attempts=attempt_number,
                    analyzed_tables=analyzed_tables,
                    table_analysis_reasoning=reasoning,
                )

            if attempt_number < self.max_retries:
                self._set_step(
                    ExecutionStep.RETRYING,
                    f"SQL failed, retrying ({attempt_number + 1}/{self.max_retries})",
                )

        self._set_step(ExecutionStep.FAILED, "Execution failed")
        if last_execution is not None:
            last_error = last_execution.error_message
        else:
            last_error = generation.error_message if generation else None
        logger.warning(
            f"Query failed after {self.max_retries} attempts",
            extra={"last_error": last_error},
        )
        return SqlAgentResult(
            success=False,
            final_sql=generation.generated_sql if generation else None,
            final_explanation=generation.explanation if generation else None,
            execution_result=last_execution,
            error_message=f"Failed after {self.max_retries} attempts. Last error: {last_error}",
            attempts=attempts,
            total_attempts=self.max_retries,
            analyzed_tables=analyzed_tables,
            table_analysis_reasoning=reasoning,
        )

    def _on_cancelled(self, exc: asyncio.CancelledError, attempts: list[SqlAttempt]) -> None:
        if isinstance(exc, ExecutionCancelled):
            exc.attempts = list(attempts)
        logger.info(f"Run cancelled after {len(attempts)} attempts")
        self._set_step(ExecutionStep.CANCELLED, "Stopped by user")
