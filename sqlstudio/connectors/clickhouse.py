"""
ClickHouse Connector

Async ClickHouse connector using clickhouse-connect.

Note: clickhouse-connect is synchronous, so calls are wrapped with
asyncio.to_thread. The client is created without a session id so that
concurrent schema reads do not collide on one server session.
"""

import asyncio
import logging
import re

import clickhouse_connect
from clickhouse_connect.driver import Client

from sqlstudio.connectors.base import (
    SAMPLE_ROW_LIMIT,
    BaseConnector,
    ColumnInfo,
    ConnectionConfig,
    QueryResult,
)

logger = logging.getLogger(__name__)

_ERROR_CODE_PATTERN = re.compile(r"Code:\s*(\d+)")


class ClickHouseConnector(BaseConnector):
    """ClickHouse database connector using clickhouse-connect."""

    database_type = "ClickHouse"
    default_port = 8123

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._client: Client | None = None

    async def _connect(self, config: ConnectionConfig) -> None:
        self._client = await asyncio.to_thread(
            clickhouse_connect.get_client,
            host=config.host,
            port=config.port,
            database=config.database or "default",
            username=config.username or "default",
            password=config.password,
            autogenerate_session_id=False,
            send_receive_timeout=self.timeout,
            **config.extra_params,
        )
        version = await asyncio.to_thread(self._client.command, "SELECT version()")
        logger.info(f"Connected to ClickHouse: version {version}")

    async def _disconnect(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await asyncio.to_thread(client.close)

    async def _fetch(self, sql: str, parameters: dict | None = None) -> QueryResult:
        result = await asyncio.to_thread(
            self._client.query,
            sql,
            parameters=parameters or {},
            settings={"max_execution_time": self.timeout},
        )
        columns = list(result.column_names)
        rows = [dict(zip(columns, row)) for row in result.result_rows]
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))

    async def _execute(self, sql: str) -> int:
        summary = await asyncio.to_thread(self._client.command, sql)
        written = getattr(summary, "written_rows", 0)
        return int(written or 0)

    async def _list_databases(self) -> list[str]:
        result = await self._fetch("SELECT name FROM system.databases ORDER BY name")
        return [row["name"] for row in result.rows]

    async def _list_tables(self) -> list[tuple[str, str | None]]:
        result = await self._fetch(
            """
            SELECT name, comment
            FROM system.tables
            WHERE database = {db:String}
            ORDER BY name
            """,
            {"db": self.current_database or "default"},
        )
        return [(row["name"], row["comment"] or None) for row in result.rows]

    async def _list_columns(self, table_name: str) -> list[ColumnInfo]:
        result = await self._fetch(
            """
            SELECT name, type, default_kind, default_expression, is_in_primary_key, comment
            FROM system.columns
            WHERE database = {db:String} AND table = {table:String}
            ORDER BY position
            """,
            {"db": self.current_database or "default", "table": table_name},
        )
        return [
            ColumnInfo(
                column_name=row["name"],
                data_type=row["type"],
                is_nullable=row["type"].startswith("Nullable"),
                is_primary_key=bool(row["is_in_primary_key"]),
                default_value=row["default_expression"] if row["default_kind"] else None,
                comment=row["comment"] or None,
            )
            for row in result.rows
        ]

    def _sample_sql(self, table_name: str, columns: list[ColumnInfo]) -> str:
        return f"SELECT * FROM {self.quote_identifier(table_name)} ORDER BY rand() LIMIT {SAMPLE_ROW_LIMIT}"

    def quote_identifier(self, name: str) -> str:
        return "`" + name.replace("`", "\\`") + "`"

    def _error_code(self, exc: Exception) -> str | None:
        code = getattr(exc, "code", None)
        if code is not None:
            return str(code)
        match = _ERROR_CODE_PATTERN.search(str(exc))
        return match.group(1) if match else None
