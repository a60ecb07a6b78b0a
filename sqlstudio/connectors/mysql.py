"""
MySQL Connector

Async-compatible MySQL connector using mysql-connector-python.

The underlying driver is synchronous, so every operation opens a short-lived
connection inside a worker thread via asyncio.to_thread. Switching database
only changes the catalog those connections open on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import mysql.connector
from mysql.connector import Error as MySQLError

from sqlstudio.connectors.base import (
    BaseConnector,
    ColumnInfo,
    ConnectionConfig,
    ConnectionError,
    QueryResult,
)

logger = logging.getLogger(__name__)


class MySQLConnector(BaseConnector):
    """MySQL database connector using mysql-connector-python."""

    database_type = "MySQL"
    default_port = 3306

    async def _connect(self, config: ConnectionConfig) -> None:
        try:
            version = await asyncio.to_thread(self._test_connection_sync, config)
        except MySQLError as exc:
            raise ConnectionError(f"Failed to connect to MySQL: {exc}") from exc
        logger.info(f"Connected to MySQL {version}")

    async def _disconnect(self) -> None:
        # Connections are per call; nothing is held open.
        return None

    async def _use_database(self, name: str) -> None:
        await asyncio.to_thread(self._test_connection_sync, self.config.with_database(name))

    async def _fetch(self, sql: str) -> QueryResult:
        rows, columns = await asyncio.to_thread(self._fetch_sync, sql, None)
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))

    async def _execute(self, sql: str) -> int:
        return await asyncio.to_thread(self._execute_sync, sql)

    async def _list_databases(self) -> list[str]:
        rows, _ = await asyncio.to_thread(self._fetch_sync, "SHOW DATABASES", None)
        return [str(next(iter(row.values()))) for row in rows]

    async def _list_tables(self) -> list[tuple[str, str | None]]:
        rows, _ = await asyncio.to_thread(
            self._fetch_sync,
            """
            SELECT TABLE_NAME AS table_name, TABLE_COMMENT AS table_comment
            FROM INFORMATION_SCHEMA.TABLES
            WHERE TABLE_SCHEMA = %s
            ORDER BY TABLE_NAME
            """,
            (self.current_database,),
        )
        return [(str(row["table_name"]), row["table_comment"] or None) for row in rows]

    async def _list_columns(self, table_name: str) -> list[ColumnInfo]:
        rows, _ = await asyncio.to_thread(
            self._fetch_sync,
            """
            SELECT
                COLUMN_NAME AS column_name,
                COLUMN_TYPE AS column_type,
                IS_NULLABLE AS is_nullable,
                COLUMN_KEY AS column_key,
                COLUMN_DEFAULT AS column_default,
                COLUMN_COMMENT AS column_comment
            FROM INFORMATION_SCHEMA.COLUMNS
            WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
            ORDER BY ORDINAL_POSITION
            """,
            (self.current_database, table_name),
        )
        return [
            ColumnInfo(
                column_name=str(row["column_name"]),
                data_type=str(row["column_type"]),
                is_nullable=str(row["is_nullable"]).upper() == "YES",
                is_primary_key=str(row["column_key"]).upper() == "PRI",
                default_value=(
                    str(row["column_default"]) if row["column_default"] is not None else None
                ),
                comment=row["column_comment"] or None,
            )
            for row in rows
        ]

    def quote_identifier(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def _error_message(self, exc: Exception) -> str:
        if isinstance(exc, MySQLError) and exc.msg:
            return exc.msg
        return super()._error_message(exc)

    def _error_code(self, exc: Exception) -> str | None:
        if isinstance(exc, MySQLError) and exc.errno is not None:
            return str(exc.errno)
        return None

    def _connection_kwargs(self, config: ConnectionConfig) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": config.host,
            "port": config.port,
            "database": config.database or None,
            "user": config.username,
            "password": config.password,
            "autocommit": True,
            "connection_timeout": self.timeout,
        }
        kwargs.update(config.extra_params)
        return kwargs

    def _test_connection_sync(self, config: ConnectionConfig) -> str:
        conn = mysql.connector.connect(**self._connection_kwargs(config))
        try:
            cursor = conn.cursor()
            try:
                cursor.execute("SELECT VERSION()")
                (version,) = cursor.fetchone()
                return str(version)
            finally:
                cursor.close()
        finally:
            conn.close()

    def _fetch_sync(
        self,
        sql: str,
        params: tuple[Any, ...] | None,
    ) -> tuple[list[dict[str, Any]], list[str]]:
        conn = mysql.connector.connect(**self._connection_kwargs(self.config))
        cursor = conn.cursor(dictionary=True)
        try:
            cursor.execute(sql, params)
            if cursor.with_rows:
                rows = cursor.fetchall()
                columns = [col[0] for col in cursor.description]
                return rows, columns
            return [], []
        finally:
            cursor.close()
            conn.close()

    def _execute_sync(self, sql: str) -> int:
        conn = mysql.connector.connect(**self._connection_kwargs(self.config))
        cursor = conn.cursor()
        try:
            cursor.execute(sql)
            if cursor.with_rows:
                cursor.fetchall()
            return max(cursor.rowcount, 0)
        finally:
            cursor.close()
            conn.close()
