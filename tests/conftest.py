"""
Pytest configuration and shared fixtures.

This module provides fixtures and configuration used across all tests.
"""

import logging

import pytest

from sqlstudio.config import Settings, clear_settings_cache
from sqlstudio.connectors.base import (
    BaseConnector,
    ColumnInfo,
    ConnectionConfig,
    QueryResult,
    TableInfo,
)
from sqlstudio.llm.base import BaseLLMProvider
from sqlstudio.llm.models import LLMResponse, LLMStreamChunk, ModelInfo

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires live databases or API keys)",
    )


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (may require external services)"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")


def pytest_collection_modifyitems(config, items):
    """Skip tests marked integration unless explicitly enabled."""
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(
        reason="Integration tests disabled (use --run-integration to enable)."
    )
    for item in items:
        if item.get_closest_marker("integration") is not None:
            item.add_marker(skip_integration)


# ============================================================================
# Logging and Environment
# ============================================================================


@pytest.fixture(autouse=True)
def configure_test_logging(caplog):
    """Capture logs at DEBUG for every test."""
    caplog.set_level(logging.DEBUG)
    yield


@pytest.fixture(autouse=True)
def mock_openai_api_key(monkeypatch):
    """
    Provide a fake OpenAI key and reset cached settings around each test.

    This prevents tests from attempting real API calls.
    """
    clear_settings_cache()
    test_key = "sk-test-key-1234567890-abcdefghijklmnop"
    monkeypatch.setenv("LLM_OPENAI_API_KEY", test_key)
    monkeypatch.setenv("SQLSTUDIO_ENV_SOURCE", "environment")
    yield test_key
    clear_settings_cache()


@pytest.fixture
def settings() -> Settings:
    """Settings from the test environment, without touching global logging."""
    return Settings(configure_logging_on_load=False)


# ============================================================================
# Scripted LLM Provider
# ============================================================================


class ScriptedLLMProvider(BaseLLMProvider):
    """
    Provider that streams canned responses in order.

    A response may be an exception instance, which is raised when its turn
    comes. Every request is recorded in `requests`.
    """

    def __init__(self, responses: list[str | Exception] | None = None, chunk_size: int = 7):
        super().__init__(provider_name="scripted", temperature=0.1, max_tokens=2000)
        self.model = "scripted-model"
        self.responses = list(responses or [])
        self.requests = []
        self.chunk_size = chunk_size

    def add_response(self, response: str | Exception) -> None:
        self.responses.append(response)

    async def generate(self, request):
        parts = [chunk.content async for chunk in self.stream(request)]
        return LLMResponse(content="".join(parts), model=self.model, provider=self.provider_name)

    async def stream(self, request):
        self.requests.append(request)
        if not self.responses:
            raise RuntimeError("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        for start in range(0, len(response), self.chunk_size):
            yield LLMStreamChunk(content=response[start : start + self.chunk_size])

    def count_tokens(self, text: str) -> int:
        return len(text.split())

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        return ModelInfo(
            name=model_name or self.model,
            provider=self.provider_name,
            context_window=8192,
            max_output=2000,
        )


@pytest.fixture
def scripted_llm():
    """
    Factory for scripted providers.

    Usage:
        def test_agent(scripted_llm):
            llm = scripted_llm("```sql\\nSELECT 1\\n```")
    """

    def _create(*responses: str | Exception, chunk_size: int = 7) -> ScriptedLLMProvider:
        return ScriptedLLMProvider(list(responses), chunk_size=chunk_size)

    return _create


# ============================================================================
# In-memory Connector
# ============================================================================


class FakeConnector(BaseConnector):
    """
    Connector over an in-memory schema.

    Query outcomes are consumed in order: a QueryResult is returned, an int
    is an affected row count, an exception is raised as an engine error.
    """

    database_type = "MySQL"
    default_port = 3306

    def __init__(
        self,
        tables: list[TableInfo] | None = None,
        databases: list[str] | None = None,
        pool_size: int = 2,
        timeout: int = 30,
    ):
        super().__init__(pool_size=pool_size, timeout=timeout)
        self.tables = list(tables or [])
        self.databases = list(databases or ["shop"])
        self.outcomes: list[QueryResult | int | Exception] = []
        self.executed: list[str] = []

    async def _connect(self, config: ConnectionConfig) -> None:
        if config.host == "unreachable":
            raise OSError("connection refused")

    async def _disconnect(self) -> None:
        pass

    async def _fetch(self, sql: str) -> QueryResult:
        return self._next_outcome(sql)

    async def _execute(self, sql: str) -> int:
        return self._next_outcome(sql)

    def _next_outcome(self, sql: str):
        self.executed.append(sql)
        if not self.outcomes:
            raise RuntimeError("No scripted outcome left")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def _list_databases(self) -> list[str]:
        return list(self.databases)

    async def _list_tables(self) -> list[tuple[str, str | None]]:
        return [(table.table_name, table.table_comment) for table in self.tables]

    async def _list_columns(self, table_name: str) -> list[ColumnInfo]:
        for table in self.tables:
            if table.table_name == table_name:
                return list(table.columns)
        raise LookupError(f"Table '{table_name}' doesn't exist")

    async def _sample_rows(self, table_name: str, columns: list[ColumnInfo]) -> list[dict[str, str]]:
        for table in self.tables:
            if table.table_name == table_name:
                return list(table.sample_data)
        return []


def _columns(*specs: tuple[str, str]) -> list[ColumnInfo]:
    return [
        ColumnInfo(
            column_name=name,
            data_type=data_type,
            is_nullable=name != "id",
            is_primary_key=name == "id",
        )
        for name, data_type in specs
    ]


@pytest.fixture
def shop_tables() -> list[TableInfo]:
    """users, orders and products tables of a small shop database."""
    return [
        TableInfo(
            table_name="users",
            table_comment="Registered customers",
            columns=_columns(("id", "int"), ("name", "varchar(100)"), ("email", "varchar(255)")),
            sample_data=[{"id": "1", "name": "Al", "email": "al@example.com"}],
        ),
        TableInfo(
            table_name="orders",
            columns=_columns(("id", "int"), ("user_id", "int"), ("amount", "decimal(10,2)")),
            sample_data=[{"id": "1", "user_id": "1", "amount": "50.00"}],
        ),
        TableInfo(
            table_name="products",
            columns=_columns(("id", "int"), ("title", "varchar(200)")),
        ),
    ]


@pytest.fixture
async def fake_connector(shop_tables) -> FakeConnector:
    """Connected FakeConnector on the shop database."""
    connector = FakeConnector(shop_tables)
    await connector.connect(ConnectionConfig(host="localhost", database="shop"))
    return connector


@pytest.fixture
def fake_connector_class() -> type[FakeConnector]:
    """The FakeConnector class, for registering it with the connector factory."""
    return FakeConnector
