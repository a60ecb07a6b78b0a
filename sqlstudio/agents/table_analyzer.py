"""
Table Analyzer

Asks the model which tables a question needs, so that SQL generation only
sees a relevant slice of a possibly large schema.

The model answers in a fixed ANALYSIS / MAPPING / CHECK / TABLES / REASON
layout. Table names are recovered from the TABLES line and from
"entity -> table" mapping lines, matched case-insensitively against the
schema. If neither yields a known table, the whole response is scanned for
table names as a last resort.
"""

import asyncio
import logging
import re

from sqlstudio.agents.base import BaseAgent, TokenSink
from sqlstudio.connectors.base import DatabaseSchema
from sqlstudio.knowledge.retriever import KNOWLEDGE_CONTEXT_HEADER
from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.models import LLMMessage
from sqlstudio.models.agent import TableAnalysisRequest, TableAnalysisResult
from sqlstudio.prompts.loader import PromptLoader

logger = logging.getLogger(__name__)

NO_TABLES_MESSAGE = "Could not identify required tables from the response"
USER_SELECTION_REASONING = "Tables specified by the user"

_TABLES_LINE = re.compile(r"TABLES[：:]\s*(.+?)(?:\n|REASON|$)", re.IGNORECASE | re.DOTALL)
_MAPPING_TARGET = re.compile(r"->\s*(?:表\s*)?([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)
_REASON_LINE = re.compile(r"REASON[：:]\s*(.+?)$", re.IGNORECASE | re.DOTALL)
_DECORATION = re.compile(r"[`\[\]*\"]")
_SEPARATORS = re.compile(r"[,、\n;]")


def split_context(additional_context: str | None) -> tuple[str | None, str | None]:
    """
    Split prompt context into (knowledge_context, supplementary_context).

    Context carrying the knowledge header is returned as knowledge with the
    header removed; anything else is plain supplementary notes.
    """
    if not additional_context or not additional_context.strip():
        return None, None
    if KNOWLEDGE_CONTEXT_HEADER in additional_context:
        return additional_context.replace(KNOWLEDGE_CONTEXT_HEADER, "").strip(), None
    return None, additional_context


def parse_table_analysis(response: str, schema: DatabaseSchema) -> TableAnalysisResult:
    """Recover the selected tables from a model response."""
    canonical = {name.lower(): name for name in schema.table_names}
    tables: list[str] = []

    def add_table(candidate: str) -> None:
        name = canonical.get(candidate.lower())
        if name is not None and name not in tables:
            tables.append(name)

    tables_match = _TABLES_LINE.search(response)
    if tables_match:
        cleaned = _DECORATION.sub("", tables_match.group(1))
        for part in _SEPARATORS.split(cleaned):
            candidate = part.strip().strip(".- ")
            if len(candidate) > 1:
                add_table(candidate)

    for match in _MAPPING_TARGET.finditer(response):
        add_table(match.group(1).strip())

    reason_match = _REASON_LINE.search(response)
    reasoning = reason_match.group(1).strip() if reason_match else None

    if not tables:
        # Longest names first so "order_items" is found before "orders".
        for name in sorted(schema.table_names, key=len, reverse=True):
            if re.search(rf"\b{re.escape(name)}\b", response, re.IGNORECASE) and name not in tables:
                tables.append(name)

    return TableAnalysisResult(
        success=len(tables) > 0,
        required_tables=tables,
        reasoning=reasoning or response,
        error_message=None if tables else NO_TABLES_MESSAGE,
    )


class TableAnalyzer(BaseAgent):
    """
    Selects the tables relevant to a question.

    Usage:
        analyzer = TableAnalyzer(llm)
        result = await analyzer.analyze(
            TableAnalysisRequest(user_query=q, full_schema=schema, database_type="MySQL"),
            on_token=print,
        )
        narrowed = schema.filter_tables(result.required_tables)
    """

    def __init__(
        self,
        llm: BaseLLMProvider,
        prompts: PromptLoader | None = None,
        temperature: float = 0.0,
        max_tokens: int = 2000,
    ):
        super().__init__(name="TableAnalyzer", llm=llm, prompts=prompts)
        self.temperature = temperature
        self.max_tokens = max_tokens

    def get_system_prompt(self, request: TableAnalysisRequest) -> str:
        return self.prompts.render(
            "table_analysis_system.md",
            database_type=request.database_type,
            tables=request.full_schema.tables,
        )

    def get_prompt(self, request: TableAnalysisRequest) -> str:
        """User prompt for a request, exposed for observability."""
        knowledge_context, supplementary_context = split_context(request.additional_context)
        return self.prompts.render(
            "table_analysis_user.md",
            user_query=request.user_query,
            knowledge_context=knowledge_context,
            supplementary_context=supplementary_context,
        )

    async def analyze(
        self,
        request: TableAnalysisRequest,
        on_token: TokenSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TableAnalysisResult:
        """
        Stream the analysis and parse the selected tables.

        Transport failures are returned as an unsuccessful result; cancellation
        propagates as ExecutionCancelled.
        """
        messages = [
            LLMMessage(role="system", content=self.get_system_prompt(request)),
            LLMMessage(role="user", content=self.get_prompt(request)),
        ]
        try:
            response = await self._stream_completion(
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                on_token=on_token,
                cancel_event=cancel_event,
            )
        except Exception as exc:
            logger.error(f"Table analysis failed: {exc}", extra={"agent": self.name})
            return TableAnalysisResult(
                success=False, error_message=f"Failed to analyze tables: {exc}"
            )

        result = parse_table_analysis(response, request.full_schema)
        logger.info(
            f"Table analysis selected {len(result.required_tables)} of "
            f"{len(request.full_schema.tables)} tables",
            extra={"agent": self.name, "tables": result.required_tables},
        )
        return result

    @staticmethod
    def from_selection(table_names: list[str], schema: DatabaseSchema) -> TableAnalysisResult:
        """Result for tables named explicitly by the user, validated against the schema."""
        selected: list[str] = []
        for name in table_names:
            table = schema.find_table(name)
            if table is not None and table.table_name not in selected:
                selected.append(table.table_name)
        return TableAnalysisResult(
            success=len(selected) > 0,
            required_tables=selected,
            reasoning=USER_SELECTION_REASONING,
            error_message=None if selected else NO_TABLES_MESSAGE,
        )
