"""
SQL Generator

Produces SQL for a question from a (narrowed) schema, and corrected SQL
after an execution error.

Prompts are rendered from Markdown templates:
- sql_system.md: dialect rules, output format and the formatted schema
- sql_user.md: the request plus knowledge or supplementary context
- sql_correction.md: engine error message and failing SQL

Responses are expected to hold one ```sql fenced block; the text around it
becomes the explanation.
"""

import asyncio
import logging
import re

from sqlstudio.agents.base import BaseAgent, TokenSink
from sqlstudio.agents.table_analyzer import split_context
from sqlstudio.connectors.base import DatabaseSchema
from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.models import LLMMessage
from sqlstudio.models.agent import SqlGenerationRequest, SqlGenerationResult
from sqlstudio.prompts.loader import PromptLoader

logger = logging.getLogger(__name__)

NO_SQL_MESSAGE = "Could not extract SQL from the response"

_SQL_FENCE = re.compile(r"```sql", re.IGNORECASE)
_FENCE = "```"


def format_schema(schema: DatabaseSchema) -> str:
    """
    Render a schema as prompt text.

    Example:
        Database: shop

        Table: users
          Comment: registered customers
          Columns:
            - id: int [PK, NOT NULL]
            - email: varchar(255) -- login address
          Sample Data:
            - id=1, email=al@example.com
    """
    lines = [f"Database: {schema.database_name}", ""]
    for table in schema.tables:
        lines.append(f"Table: {table.table_name}")
        if table.table_comment:
            lines.append(f"  Comment: {table.table_comment}")
        lines.append("  Columns:")
        for column in table.columns:
            flags = []
            if column.is_primary_key:
                flags.append("PK")
            if not column.is_nullable:
                flags.append("NOT NULL")
            if column.default_value:
                flags.append(f"DEFAULT: {column.default_value}")
            flag_text = f" [{', '.join(flags)}]" if flags else ""
            comment_text = f" -- {column.comment}" if column.comment else ""
            lines.append(f"    - {column.column_name}: {column.data_type}{flag_text}{comment_text}")
        if table.sample_data:
            lines.append("  Sample Data:")
            for row in table.sample_data:
                values = ", ".join(
                    f"{column.column_name}={row.get(column.column_name, 'NULL')}"
                    for column in table.columns
                )
                lines.append(f"    - {values}")
        lines.append("")
    return "\n".join(lines).rstrip()


def _find_fence(text: str) -> tuple[int, int, int] | None:
    """Locate the first SQL fence: (fence_start, body_start, body_end or -1)."""
    match = _SQL_FENCE.search(text)
    if match is not None:
        start, body_start = match.span()
    else:
        start = text.find(_FENCE)
        if start == -1:
            return None
        body_start = start + len(_FENCE)
    return start, body_start, text.find(_FENCE, body_start)


def extract_sql(text: str) -> str:
    """
    Pull the SQL out of a model response.

    Takes the body of the first ```sql fence (case-insensitive), else of the
    first bare ``` fence. Without any fence the whole trimmed text is used;
    an unterminated fence yields the rest of the text.
    """
    fence = _find_fence(text)
    if fence is None:
        return text.strip()
    _, body_start, body_end = fence
    if body_end == -1:
        return text[body_start:].strip()
    return text[body_start:body_end].strip()


def parse_sql_response(text: str) -> SqlGenerationResult:
    """Split a response into SQL and explanation."""
    sql = extract_sql(text)
    if not sql:
        return SqlGenerationResult(success=False, error_message=NO_SQL_MESSAGE, explanation=text)

    fence = _find_fence(text)
    if fence is None:
        explanation = ""
    else:
        fence_start, _, body_end = fence
        fence_end = len(text) if body_end == -1 else body_end + len(_FENCE)
        explanation = (text[:fence_start] + text[fence_end:]).strip()
    return SqlGenerationResult(success=True, generated_sql=sql, explanation=explanation)


class SqlGenerator(BaseAgent):
    """
    Generates and corrects SQL through a streaming completion provider.

    Usage:
        generator = SqlGenerator(llm)
        result = await generator.generate_sql_streaming(request, on_token=print)
        if result.success:
            execution = await connector.execute_query(result.generated_sql)
            if not execution.success:
                result = await generator.regenerate_sql_with_error_streaming(
                    request, result.generated_sql, execution.error_message, on_token=print
                )
    """

    def __init__(
        self,
        llm: BaseLLMProvider,
        prompts: PromptLoader | None = None,
        temperature: float = 0.1,
        max_tokens: int = 2000,
    ):
        super().__init__(name="SqlGenerator", llm=llm, prompts=prompts)
        self.temperature = temperature
        self.max_tokens = max_tokens

    def get_prompts(self, request: SqlGenerationRequest) -> tuple[str, str]:
        """Return (system_prompt, user_prompt) for a request."""
        system_prompt = self.prompts.render(
            "sql_system.md",
            database_type=request.database_type,
            schema_text=format_schema(request.database_schema),
        )
        knowledge_context, supplementary_context = split_context(request.additional_context)
        user_prompt = self.prompts.render(
            "sql_user.md",
            user_query=request.user_query,
            knowledge_context=knowledge_context,
            supplementary_context=supplementary_context,
        )
        return system_prompt, user_prompt

    def build_correction_prompt(self, previous_sql: str, error_message: str) -> str:
        return self.prompts.render(
            "sql_correction.md",
            previous_sql=previous_sql,
            error_message=error_message,
        )

    async def generate_sql(
        self,
        request: SqlGenerationRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> SqlGenerationResult:
        return await self.generate_sql_streaming(request, None, cancel_event)

    async def generate_sql_streaming(
        self,
        request: SqlGenerationRequest,
        on_token: TokenSink | None,
        cancel_event: asyncio.Event | None = None,
    ) -> SqlGenerationResult:
        """
        Generate SQL, streaming fragments to on_token.

        Prior conversation turns are replayed between the system and user
        prompts; only user and assistant turns are kept.
        """
        try:
            system_prompt, user_prompt = self.get_prompts(request)
            messages = [LLMMessage(role="system", content=system_prompt)]
            for turn in request.history:
                if turn.role in ("user", "assistant") and turn.content:
                    messages.append(LLMMessage(role=turn.role, content=turn.content))
            messages.append(LLMMessage(role="user", content=user_prompt))

            response = await self._stream_completion(
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                on_token=on_token,
                cancel_event=cancel_event,
            )
        except Exception as exc:
            logger.error(f"SQL generation failed: {exc}", extra={"agent": self.name})
            return SqlGenerationResult(success=False, error_message=f"Failed to generate SQL: {exc}")

        return self._finish(response)

    async def regenerate_sql_with_error(
        self,
        request: SqlGenerationRequest,
        previous_sql: str,
        error_message: str,
        cancel_event: asyncio.Event | None = None,
    ) -> SqlGenerationResult:
        return await self.regenerate_sql_with_error_streaming(
            request, previous_sql, error_message, None, cancel_event
        )

    async def regenerate_sql_with_error_streaming(
        self,
        request: SqlGenerationRequest,
        previous_sql: str,
        error_message: str,
        on_token: TokenSink | None,
        cancel_event: asyncio.Event | None = None,
    ) -> SqlGenerationResult:
        """
        Ask for corrected SQL after a failed execution.

        The conversation is: system prompt, user prompt, the failing SQL as the
        assistant's answer, then a correction request quoting the engine error.
        """
        try:
            system_prompt, user_prompt = self.get_prompts(request)
            messages = [
                LLMMessage(role="system", content=system_prompt),
                LLMMessage(role="user", content=user_prompt),
                LLMMessage(role="assistant", content=f"```sql\n{previous_sql}\n```"),
                LLMMessage(
                    role="user",
                    content=self.build_correction_prompt(previous_sql, error_message),
                ),
            ]
            response = await self._stream_completion(
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                on_token=on_token,
                cancel_event=cancel_event,
            )
        except Exception as exc:
            logger.error(f"SQL regeneration failed: {exc}", extra={"agent": self.name})
            return SqlGenerationResult(
                success=False, error_message=f"Failed to regenerate SQL: {exc}"
            )

        return self._finish(response)

    def _finish(self, response: str) -> SqlGenerationResult:
        result = parse_sql_response(response)
        if result.success:
            result = result.model_copy(update={"tokens_used": self.llm.count_tokens(response)})
        else:
            logger.warning(NO_SQL_MESSAGE, extra={"agent": self.name, "response": response[:200]})
        return result
