"""
SQL Agent Service

Entry point used by the CLI and embedding applications: holds the completion
provider, the knowledge retriever and the connection registry, and builds a
SqlAgentExecutor per request.
"""

import asyncio
import logging

from sqlstudio.agents.events import EventListener
from sqlstudio.agents.executor import SqlAgentExecutor
from sqlstudio.agents.sql_generator import SqlGenerator
from sqlstudio.agents.table_analyzer import TableAnalyzer
from sqlstudio.config import Settings
from sqlstudio.connectors.registry import ConnectionManager
from sqlstudio.knowledge.retriever import (
    KnowledgeRetriever,
    RemoteKnowledgeRetriever,
    ScenarioKnowledgeRetriever,
)
from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.factory import LLMProviderFactory
from sqlstudio.models.agent import (
    ConfigurationError,
    ExecutionCancelled,
    SqlAgentResult,
    SqlGenerationHistory,
)
from sqlstudio.prompts.loader import PromptLoader

logger = logging.getLogger(__name__)

SERVICE_NAME = "SqlAgentService"


def build_knowledge_retriever(settings: Settings) -> KnowledgeRetriever | None:
    """Remote retrieval when configured, else the scenario file, else nothing."""
    knowledge = settings.knowledge
    if knowledge.is_remote_configured:
        return RemoteKnowledgeRetriever(
            api_url=knowledge.api_url,
            knowledge_db_ids=knowledge.knowledge_db_ids,
            top_k=knowledge.top_k,
            score_threshold=knowledge.score_threshold,
            timeout=knowledge.timeout,
        )
    if knowledge.scenario_file is not None:
        return ScenarioKnowledgeRetriever.from_file(knowledge.scenario_file)
    return None


class SqlAgentService:
    """
    Runs questions against named connections.

    Usage:
        connections = ConnectionManager()
        await connections.create_connection("shop", "mysql", config)

        service = SqlAgentService(connections, settings)
        service.configure_ai(LLMProviderFactory.create_default_provider(settings.llm))
        result = await service.execute_query("shop", "Top 5 customers by spend")
    """

    def __init__(
        self,
        connections: ConnectionManager,
        settings: Settings,
        prompts: PromptLoader | None = None,
    ):
        self.connections = connections
        self.settings = settings
        self.prompts = prompts or PromptLoader()
        self.llm: BaseLLMProvider | None = None
        self.knowledge: KnowledgeRetriever | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        connections: ConnectionManager | None = None,
        model: str | None = None,
    ) -> "SqlAgentService":
        """
        Build a service wired from settings.

        Raises:
            ValueError: If the configured provider lacks required settings
        """
        service = cls(
            connections
            or ConnectionManager(
                pool_size=settings.database.pool_size, timeout=settings.database.timeout
            ),
            settings,
        )
        service.configure_ai(LLMProviderFactory.create_default_provider(settings.llm, model))
        service.configure_knowledge(build_knowledge_retriever(settings))
        return service

    @property
    def is_ai_configured(self) -> bool:
        return self.llm is not None

    def configure_ai(self, provider: BaseLLMProvider) -> None:
        self.llm = provider
        logger.info(
            f"AI provider configured: {provider.provider_name}",
            extra={"provider": provider.provider_name, "model": getattr(provider, "model", None)},
        )

    def configure_knowledge(self, retriever: KnowledgeRetriever | None) -> None:
        """Set (or clear with None) the knowledge retriever."""
        self.knowledge = retriever if retriever is not None and retriever.is_configured else None
        logger.info(f"Knowledge retrieval {'enabled' if self.knowledge else 'disabled'}")

    def create_executor(
        self,
        connection_name: str,
        max_retries: int | None = None,
    ) -> SqlAgentExecutor:
        """
        Build an executor for a registered connection.

        Raises:
            ConfigurationError: If no AI provider is configured or the
                connection name is unknown
        """
        if self.llm is None:
            raise ConfigurationError(SERVICE_NAME, "AI provider is not configured")

        connector = self.connections.get_connection(connection_name)
        if connector is None:
            raise ConfigurationError(
                SERVICE_NAME,
                f"Connection not found: {connection_name}",
                context={"available": self.connections.connection_names},
            )

        agent_settings = self.settings.agent
        generator = SqlGenerator(
            self.llm,
            prompts=self.prompts,
            temperature=self.settings.llm.temperature,
            max_tokens=self.settings.llm.max_tokens,
        )
        analyzer = TableAnalyzer(
            self.llm,
            prompts=self.prompts,
            temperature=agent_settings.analysis_temperature,
            max_tokens=agent_settings.analysis_max_tokens,
        )
        return SqlAgentExecutor(
            connector,
            generator,
            analyzer=analyzer,
            knowledge=self.knowledge,
            max_retries=max_retries or agent_settings.max_retries,
            knowledge_max_results=agent_settings.knowledge_max_results,
        )

    async def execute_query(
        self,
        connection_name: str,
        user_query: str,
        additional_context: str | None = None,
        conversation_history: list[SqlGenerationHistory] | None = None,
        specified_tables: list[str] | None = None,
        cancel_event: asyncio.Event | None = None,
        listeners: list[EventListener] | None = None,
        max_retries: int | None = None,
    ) -> SqlAgentResult:
        """
        Answer a question on a named connection.

        A stop request yields a result with cancelled=True instead of raising.

        Raises:
            ConfigurationError: See create_executor()
        """
        executor = self._executor(connection_name, listeners, max_retries)
        try:
            return await executor.execute_query(
                user_query,
                additional_context=additional_context,
                conversation_history=conversation_history,
                specified_tables=specified_tables,
                cancel_event=cancel_event,
            )
        except ExecutionCancelled as exc:
            return self._stopped(exc)

    async def execute_non_query(
        self,
        connection_name: str,
        user_query: str,
        additional_context: str | None = None,
        cancel_event: asyncio.Event | None = None,
        listeners: list[EventListener] | None = None,
        max_retries: int | None = None,
    ) -> SqlAgentResult:
        """Carry out a data-modifying request on a named connection."""
        executor = self._executor(connection_name, listeners, max_retries)
        try:
            return await executor.execute_non_query(
                user_query,
                additional_context=additional_context,
                cancel_event=cancel_event,
            )
        except ExecutionCancelled as exc:
            return self._stopped(exc)

    def _executor(
        self,
        connection_name: str,
        listeners: list[EventListener] | None,
        max_retries: int | None,
    ) -> SqlAgentExecutor:
        executor = self.create_executor(connection_name, max_retries=max_retries)
        for listener in listeners or []:
            executor.add_listener(listener)
        return executor

    @staticmethod
    def _stopped(exc: ExecutionCancelled) -> SqlAgentResult:
        return SqlAgentResult(
            success=False,
            cancelled=True,
            error_message=exc.message,
            attempts=exc.attempts,
            total_attempts=len(exc.attempts),
        )
