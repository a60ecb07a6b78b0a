"""
SQL Server Connector

Async-compatible SQL Server connector using pyodbc.

pyodbc is synchronous, so each operation runs in a worker thread via
asyncio.to_thread on its own short-lived connection.
"""

import asyncio
import logging
from typing import Any

import pyodbc

from sqlstudio.connectors.base import (
    SAMPLE_ROW_LIMIT,
    BaseConnector,
    ColumnInfo,
    ConnectionConfig,
    ConnectionError,
    QueryResult,
)

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"


class SqlServerConnector(BaseConnector):
    """SQL Server database connector using pyodbc."""

    database_type = "SqlServer"
    default_port = 1433

    async def _connect(self, config: ConnectionConfig) -> None:
        try:
            version = await asyncio.to_thread(self._test_connection_sync, config)
        except pyodbc.Error as exc:
            raise ConnectionError(f"Failed to connect to SQL Server: {exc}") from exc
        logger.info(f"Connected to SQL Server: {version.splitlines()[0] if version else ''}")

    async def _disconnect(self) -> None:
        # Connections are per call; nothing is held open.
        return None

    async def _use_database(self, name: str) -> None:
        await asyncio.to_thread(self._test_connection_sync, self.config.with_database(name))

    async def _fetch(self, sql: str, params: tuple[Any, ...] | None = None) -> QueryResult:
        rows, columns = await asyncio.to_thread(self._fetch_sync, sql, params)
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))

    async def _execute(self, sql: str) -> int:
        return await asyncio.to_thread(self._execute_sync, sql)

    async def _list_databases(self) -> list[str]:
        result = await self._fetch("SELECT name FROM sys.databases WHERE state = 0 ORDER BY name")
        return [row["name"] for row in result.rows]

    async def _list_tables(self) -> list[tuple[str, str | None]]:
        result = await self._fetch(
            """
            SELECT t.name AS table_name, CAST(ep.value AS NVARCHAR(4000)) AS table_comment
            FROM sys.tables t
            LEFT JOIN sys.extended_properties ep
                ON ep.major_id = t.object_id
                AND ep.minor_id = 0
                AND ep.name = 'MS_Description'
            ORDER BY t.name
            """
        )
        return [(row["table_name"], row["table_comment"]) for row in result.rows]

    async def _list_columns(self, table_name: str) -> list[ColumnInfo]:
        result = await self._fetch(
            """
            SELECT
                c.name AS column_name,
                ty.name AS data_type,
                c.is_nullable,
                dc.definition AS column_default,
                CAST(ep.value AS NVARCHAR(4000)) AS column_comment,
                CASE WHEN ic.column_id IS NULL THEN 0 ELSE 1 END AS is_primary_key
            FROM sys.columns c
            JOIN sys.tables t ON t.object_id = c.object_id
            JOIN sys.types ty ON ty.user_type_id = c.user_type_id
            LEFT JOIN sys.default_constraints dc ON dc.object_id = c.default_object_id
            LEFT JOIN sys.extended_properties ep
                ON ep.major_id = c.object_id
                AND ep.minor_id = c.column_id
                AND ep.name = 'MS_Description'
            LEFT JOIN sys.indexes i ON i.object_id = c.object_id AND i.is_primary_key = 1
            LEFT JOIN sys.index_columns ic
                ON ic.object_id = i.object_id
                AND ic.index_id = i.index_id
                AND ic.column_id = c.column_id
            WHERE t.name = ?
            ORDER BY c.column_id
            """,
            (table_name,),
        )
        return [
            ColumnInfo(
                column_name=row["column_name"],
                data_type=row["data_type"],
                is_nullable=bool(row["is_nullable"]),
                is_primary_key=bool(row["is_primary_key"]),
                default_value=row["column_default"],
                comment=row["column_comment"],
            )
            for row in result.rows
        ]

    def _sample_sql(self, table_name: str, columns: list[ColumnInfo]) -> str:
        return f"SELECT TOP {SAMPLE_ROW_LIMIT} * FROM {self.quote_identifier(table_name)}"

    def quote_identifier(self, name: str) -> str:
        return "[" + name.replace("]", "]]") + "]"

    def _error_code(self, exc: Exception) -> str | None:
        if isinstance(exc, pyodbc.Error) and exc.args:
            return str(exc.args[0])
        return None

    def _connection_string(self, config: ConnectionConfig) -> str:
        params = {
            "DRIVER": "{" + config.extra_params.get("driver", DEFAULT_DRIVER) + "}",
            "SERVER": f"{config.host},{config.port}",
            "UID": config.username,
            "PWD": config.password,
            "TrustServerCertificate": "yes",
        }
        if config.database:
            params["DATABASE"] = config.database
        for key, value in config.extra_params.items():
            if key.lower() != "driver":
                params[key] = value
        return ";".join(f"{key}={value}" for key, value in params.items())

    def _test_connection_sync(self, config: ConnectionConfig) -> str:
        conn = pyodbc.connect(self._connection_string(config), timeout=self.timeout)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT @@VERSION")
            row = cursor.fetchone()
            cursor.close()
            return str(row[0]) if row else ""
        finally:
            conn.close()

    def _fetch_sync(
        self, sql: str, params: tuple[Any, ...] | None
    ) -> tuple[list[dict[str, Any]], list[str]]:
        conn = pyodbc.connect(self._connection_string(self.config), timeout=self.timeout)
        cursor = None
        try:
            conn.timeout = self.timeout
            cursor = conn.cursor()
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
            if cursor.description is None:
                return [], []
            columns = [column[0] for column in cursor.description]
            rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
            return rows, columns
        finally:
            if cursor:
                cursor.close()
            conn.close()

    def _execute_sync(self, sql: str) -> int:
        conn = pyodbc.connect(self._connection_string(self.config), timeout=self.timeout)
        cursor = None
        try:
            conn.timeout = self.timeout
            cursor = conn.cursor()
            cursor.execute(sql)
            affected = cursor.rowcount
            conn.commit()
            return max(affected, 0)
        except pyodbc.Error:
            conn.rollback()
            raise
        finally:
            if cursor:
                cursor.close()
            conn.close()
