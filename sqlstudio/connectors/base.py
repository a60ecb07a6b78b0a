"""
Base Database Connector

Abstract base class for all database connectors. Provides a consistent
async interface for connecting to, introspecting and querying databases.

Shared behaviour lives here:
- execution timing and error capture (SQL failures are returned, not raised)
- the not-connected short circuit
- concurrent schema loading with bounded fan-out
- sample-row truncation

Engine connectors implement the underscore hooks:
- _connect() / _disconnect(): manage the driver handle
- _fetch() / _execute(): run a statement on the driver
- _list_databases() / _list_tables() / _list_columns(): catalog queries
- _error_code(): map a driver exception to an engine error code
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

NOT_CONNECTED_MESSAGE = "Database connection is not established"
SAMPLE_ROW_LIMIT = 2
SAMPLE_VALUE_MAX_LENGTH = 100


# ============================================================================
# Data Models
# ============================================================================


class ConnectionConfig(BaseModel):
    """Parameters needed to open a connection."""

    host: str = Field(..., description="Database host (file path for SQLite)")
    port: int = Field(default=0, ge=0, description="Database port (0 = engine default)")
    database: str | None = Field(None, description="Initial database/catalog")
    username: str = Field(default="", description="Login user")
    password: str = Field(default="", description="Login password")
    extra_params: dict[str, str] = Field(
        default_factory=dict, description="Driver-specific connection parameters"
    )

    model_config = ConfigDict(frozen=True)

    def with_database(self, database: str) -> "ConnectionConfig":
        """Return a copy targeting a different database."""
        return self.model_copy(update={"database": database})


class ColumnInfo(BaseModel):
    """Information about a database column."""

    column_name: str = Field(..., description="Column name")
    data_type: str = Field(..., description="Column data type")
    is_nullable: bool = Field(default=True, description="Whether column can be NULL")
    is_primary_key: bool = Field(default=False, description="Is part of primary key")
    default_value: str | None = Field(None, description="Default value if any")
    comment: str | None = Field(None, description="Column comment")

    model_config = ConfigDict(frozen=True)


class TableInfo(BaseModel):
    """Information about a database table."""

    table_name: str = Field(..., description="Table name")
    table_comment: str | None = Field(None, description="Table comment")
    columns: list[ColumnInfo] = Field(default_factory=list, description="List of columns")
    sample_data: list[dict[str, str]] = Field(
        default_factory=list,
        description="Up to two sample rows rendered as strings",
    )

    model_config = ConfigDict(frozen=True)


class DatabaseSchema(BaseModel):
    """Tables of one database, as seen by the agent."""

    database_name: str = Field(..., description="Database name")
    tables: list[TableInfo] = Field(default_factory=list, description="Tables in catalog order")

    model_config = ConfigDict(frozen=True)

    @property
    def table_names(self) -> list[str]:
        return [table.table_name for table in self.tables]

    def find_table(self, name: str) -> TableInfo | None:
        """Case-insensitive table lookup."""
        lowered = name.strip().lower()
        for table in self.tables:
            if table.table_name.lower() == lowered:
                return table
        return None

    def filter_tables(self, names: list[str]) -> "DatabaseSchema":
        """Return a schema containing exactly the named tables, in original order."""
        wanted = {name.lower() for name in names}
        return DatabaseSchema(
            database_name=self.database_name,
            tables=[table for table in self.tables if table.table_name.lower() in wanted],
        )


class QueryResult(BaseModel):
    """Tabular result of a query."""

    columns: list[str] = Field(default_factory=list, description="Column names")
    rows: list[dict[str, Any]] = Field(default_factory=list, description="Result rows")
    row_count: int = Field(default=0, description="Number of rows returned")

    model_config = ConfigDict(frozen=True)


class SqlExecutionResult(BaseModel):
    """Outcome of running one SQL text. Failures are data, not exceptions."""

    success: bool = Field(..., description="Whether the statement ran")
    error_message: str | None = Field(None, description="Engine error message")
    error_code: str | None = Field(None, description="Engine-specific error code")
    data: QueryResult | None = Field(None, description="Tabular result for queries")
    affected_rows: int = Field(default=0, description="Rows returned or affected")
    execution_time_ms: float = Field(default=0.0, description="Wall time in ms")
    executed_sql: str = Field(..., description="SQL text that was sent")

    model_config = ConfigDict(frozen=True)


class ConnectorError(Exception):
    """Base exception for connector errors."""

    pass


class ConnectionError(ConnectorError):
    """Error establishing or managing database connection."""

    pass


class QueryError(ConnectorError):
    """Error executing a statement on the driver."""

    pass


class SchemaError(ConnectorError):
    """Error introspecting database schema."""

    pass


def render_sample_value(value: Any) -> str:
    """Render a sample cell as text, NULL for missing values, truncated."""
    if value is None:
        return "NULL"
    text = value if isinstance(value, str) else str(value)
    return text[:SAMPLE_VALUE_MAX_LENGTH]


# ============================================================================
# Base Connector
# ============================================================================


class BaseConnector(ABC):
    """
    Abstract base class for database connectors.

    Usage:
        connector = MySQLConnector()
        await connector.connect(ConnectionConfig(host="localhost", username="root"))
        await connector.use_database("shop")

        schema = await connector.get_schema()
        result = await connector.execute_query("SELECT COUNT(*) FROM orders")
        if not result.success:
            print(result.error_code, result.error_message)

        await connector.close()
    """

    database_type: str = ""
    default_port: int = 0

    def __init__(
        self,
        pool_size: int = 5,
        timeout: int = 300,
        schema_concurrency: int | None = None,
    ):
        """
        Initialize connector.

        Args:
            pool_size: Connection pool size where the driver pools (default: 5)
            timeout: Statement timeout in seconds (default: 300)
            schema_concurrency: Tables loaded in parallel by get_schema
                (default: pool_size)
        """
        self.pool_size = pool_size
        self.timeout = timeout
        self.schema_concurrency = schema_concurrency or pool_size
        self.config: ConnectionConfig | None = None
        self._connected = False

        logger.debug(f"Initialized {self.__class__.__name__}")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def current_database(self) -> str | None:
        return self.config.database if self.config else None

    async def connect(self, config: ConnectionConfig) -> None:
        """
        Open a connection with the given configuration.

        An existing connection is closed first.

        Raises:
            ConnectionError: If the host is unreachable or credentials are rejected
        """
        if self._connected:
            await self.disconnect()

        if not config.port and self.default_port:
            config = config.model_copy(update={"port": self.default_port})

        logger.info(
            f"Connecting to {self.database_type} at {config.host}:{config.port}",
            extra={"database_type": self.database_type, "database": config.database},
        )
        try:
            await self._connect(config)
        except ConnectorError:
            raise
        except Exception as exc:
            logger.error(f"{self.database_type} connection failed: {exc}")
            raise ConnectionError(f"Failed to connect to {self.database_type}: {exc}") from exc

        self.config = config
        self._connected = True

    async def disconnect(self) -> None:
        """Release the driver handle. Safe to call more than once."""
        if not self._connected:
            return
        self._connected = False
        try:
            await self._disconnect()
        finally:
            logger.info(f"Disconnected from {self.database_type}")

    async def close(self) -> None:
        await self.disconnect()

    async def use_database(self, name: str) -> None:
        """
        Switch the current database.

        Raises:
            ConnectionError: If not connected or the switch fails
        """
        self._require_connection()
        try:
            await self._use_database(name)
        except ConnectorError:
            raise
        except Exception as exc:
            raise ConnectionError(f"Failed to switch to database {name}: {exc}") from exc
        self.config = self.config.with_database(name)
        logger.info(f"Using database {name}", extra={"database_type": self.database_type})

    async def _use_database(self, name: str) -> None:
        """
        Default switch: reopen the connection on the new catalog.

        The old handle is gone once _disconnect() returns, so a failed reopen
        leaves the connector disconnected.
        """
        await self._disconnect()
        try:
            await self._connect(self.config.with_database(name))
        except Exception:
            self._connected = False
            logger.warning(f"{self.database_type} connection lost while switching to {name}")
            raise

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_databases(self) -> list[str]:
        self._require_connection()
        try:
            return await self._list_databases()
        except Exception as exc:
            raise SchemaError(f"Failed to list databases: {exc}") from exc

    async def get_tables(self) -> list[str]:
        self._require_connection()
        try:
            return [name for name, _ in await self._list_tables()]
        except Exception as exc:
            raise SchemaError(f"Failed to list tables: {exc}") from exc

    async def get_table_columns(self, table_name: str) -> list[ColumnInfo]:
        self._require_connection()
        try:
            return await self._list_columns(table_name)
        except Exception as exc:
            raise SchemaError(f"Failed to read columns of {table_name}: {exc}") from exc

    async def get_schema(self) -> DatabaseSchema:
        """
        Load every table of the current database with columns and sample rows.

        Tables are loaded concurrently, at most schema_concurrency at a time.
        Sample-row failures leave that table's sample_data empty.

        Raises:
            SchemaError: If the table list or a column list cannot be read
        """
        self._require_connection()
        try:
            tables = await self._list_tables()
        except Exception as exc:
            raise SchemaError(f"Failed to list tables: {exc}") from exc

        semaphore = asyncio.Semaphore(self.schema_concurrency)

        async def load_table(table_name: str, comment: str | None) -> TableInfo:
            async with semaphore:
                try:
                    columns = await self._list_columns(table_name)
                except Exception as exc:
                    raise SchemaError(f"Failed to read columns of {table_name}: {exc}") from exc
                sample = await self._sample_rows(table_name, columns)
            return TableInfo(
                table_name=table_name,
                table_comment=comment or None,
                columns=columns,
                sample_data=sample,
            )

        loaded = await asyncio.gather(*(load_table(name, comment) for name, comment in tables))

        logger.info(
            f"Loaded schema with {len(loaded)} tables",
            extra={"database": self.current_database, "table_count": len(loaded)},
        )
        return DatabaseSchema(database_name=self.current_database or "", tables=list(loaded))

    async def _sample_rows(self, table_name: str, columns: list[ColumnInfo]) -> list[dict[str, str]]:
        try:
            result = await self._fetch(self._sample_sql(table_name, columns))
        except Exception as exc:
            logger.debug(f"Sample data unavailable for {table_name}: {exc}")
            return []
        return [
            {key: render_sample_value(value) for key, value in row.items()}
            for row in result.rows[:SAMPLE_ROW_LIMIT]
        ]

    def _sample_sql(self, table_name: str, columns: list[ColumnInfo]) -> str:
        return f"SELECT * FROM {self.quote_identifier(table_name)} LIMIT {SAMPLE_ROW_LIMIT}"

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_query(self, sql: str) -> SqlExecutionResult:
        """
        Run a statement that returns rows.

        Engine errors are captured in the result with the driver's message and
        error code; they are never raised.
        """
        if not self._connected:
            return SqlExecutionResult(
                success=False, error_message=NOT_CONNECTED_MESSAGE, executed_sql=sql
            )

        start_time = time.perf_counter()
        try:
            data = await self._fetch(sql)
        except Exception as exc:
            return self._failure(sql, exc, start_time)

        execution_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Query returned {data.row_count} rows in {execution_time_ms:.1f}ms",
            extra={"database_type": self.database_type, "row_count": data.row_count},
        )
        return SqlExecutionResult(
            success=True,
            data=data,
            affected_rows=data.row_count,
            execution_time_ms=execution_time_ms,
            executed_sql=sql,
        )

    async def execute_non_query(self, sql: str) -> SqlExecutionResult:
        """Run a data-modifying statement and report affected rows."""
        if not self._connected:
            return SqlExecutionResult(
                success=False, error_message=NOT_CONNECTED_MESSAGE, executed_sql=sql
            )

        start_time = time.perf_counter()
        try:
            affected = await self._execute(sql)
        except Exception as exc:
            return self._failure(sql, exc, start_time)

        execution_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Statement affected {affected} rows in {execution_time_ms:.1f}ms",
            extra={"database_type": self.database_type, "affected_rows": affected},
        )
        return SqlExecutionResult(
            success=True,
            affected_rows=affected,
            execution_time_ms=execution_time_ms,
            executed_sql=sql,
        )

    def _failure(self, sql: str, exc: Exception, start_time: float) -> SqlExecutionResult:
        execution_time_ms = (time.perf_counter() - start_time) * 1000
        message = self._error_message(exc)
        code = self._error_code(exc)
        logger.warning(
            f"{self.database_type} statement failed: {message}\nQuery: {sql[:200]}",
            extra={"database_type": self.database_type, "error_code": code},
        )
        return SqlExecutionResult(
            success=False,
            error_message=message,
            error_code=code,
            execution_time_ms=execution_time_ms,
            executed_sql=sql,
        )

    def _error_message(self, exc: Exception) -> str:
        return str(exc) or exc.__class__.__name__

    def _error_code(self, exc: Exception) -> str | None:
        return None

    def _require_connection(self) -> None:
        if not self._connected or self.config is None:
            raise ConnectionError(NOT_CONNECTED_MESSAGE)

    # ------------------------------------------------------------------
    # Engine hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _connect(self, config: ConnectionConfig) -> None:
        """Open the driver handle and verify it with a round trip."""
        pass  # pragma: no cover - abstract method

    @abstractmethod
    async def _disconnect(self) -> None:
        """Close the driver handle."""
        pass  # pragma: no cover - abstract method

    @abstractmethod
    async def _fetch(self, sql: str) -> QueryResult:
        """Run a statement and return its rows. Driver errors propagate."""
        pass  # pragma: no cover - abstract method

    @abstractmethod
    async def _execute(self, sql: str) -> int:
        """Run a statement and return the affected row count. Driver errors propagate."""
        pass  # pragma: no cover - abstract method

    @abstractmethod
    async def _list_databases(self) -> list[str]:
        pass  # pragma: no cover - abstract method

    @abstractmethod
    async def _list_tables(self) -> list[tuple[str, str | None]]:
        """Return (table_name, comment) pairs for the current database."""
        pass  # pragma: no cover - abstract method

    @abstractmethod
    async def _list_columns(self, table_name: str) -> list[ColumnInfo]:
        pass  # pragma: no cover - abstract method

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def __repr__(self) -> str:
        status = "connected" if self._connected else "disconnected"
        target = (
            f"{self.config.username}@{self.config.host}:{self.config.port}/{self.config.database}"
            if self.config
            else "unconfigured"
        )
        return f"<{self.__class__.__name__} {target} ({status})>"
