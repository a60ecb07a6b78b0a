"""
SQLite Connector

Connector for SQLite database files using the standard library sqlite3 module.

One connection is held for the connector's lifetime (required for ":memory:"
databases) and every call runs in a worker thread under a lock, since a
sqlite3 connection must not be used from two threads at once.
"""

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from sqlstudio.connectors.base import (
    BaseConnector,
    ColumnInfo,
    ConnectionConfig,
    ConnectionError,
    QueryResult,
)

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"


class SqliteConnector(BaseConnector):
    """
    SQLite connector.

    ConnectionConfig.host is the database file path (or ":memory:"). The file
    is its own single catalog, named after the file stem unless
    ConnectionConfig.database is given.
    """

    database_type = "SQLite"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    async def connect(self, config: ConnectionConfig) -> None:
        if not config.database:
            name = "main" if config.host == MEMORY_DATABASE else Path(config.host).stem
            config = config.with_database(name)
        await super().connect(config)

    async def _connect(self, config: ConnectionConfig) -> None:
        try:
            self._conn = await asyncio.to_thread(
                sqlite3.connect,
                config.host,
                timeout=float(self.timeout),
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise ConnectionError(f"Failed to open SQLite database {config.host}: {exc}") from exc
        logger.info(f"Opened SQLite database {config.host} (sqlite {sqlite3.sqlite_version})")

    async def _disconnect(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await asyncio.to_thread(self._locked, conn.close)

    async def _use_database(self, name: str) -> None:
        databases = await self._list_databases()
        if name not in databases and name != self.current_database:
            raise ConnectionError(f"Unknown SQLite database: {name}")

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> QueryResult:
        rows, columns = await asyncio.to_thread(self._locked, self._fetch_sync, sql, params)
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))

    async def _execute(self, sql: str) -> int:
        return await asyncio.to_thread(self._locked, self._execute_sync, sql)

    async def _list_databases(self) -> list[str]:
        result = await self._fetch("PRAGMA database_list")
        names = [row["name"] for row in result.rows]
        # The main catalog is addressed by the connector's own database name.
        return [self.current_database if name == "main" else name for name in names]

    async def _list_tables(self) -> list[tuple[str, str | None]]:
        result = await self._fetch(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [(row["name"], None) for row in result.rows]

    async def _list_columns(self, table_name: str) -> list[ColumnInfo]:
        result = await self._fetch(f"PRAGMA table_info({self.quote_identifier(table_name)})")
        return [
            ColumnInfo(
                column_name=row["name"],
                data_type=row["type"] or "ANY",
                is_nullable=not row["notnull"] and not row["pk"],
                is_primary_key=bool(row["pk"]),
                default_value=row["dflt_value"],
            )
            for row in result.rows
        ]

    def _error_code(self, exc: Exception) -> str | None:
        if isinstance(exc, sqlite3.Error):
            return getattr(exc, "sqlite_errorname", None) or exc.__class__.__name__
        return None

    def _locked(self, func, *args):
        with self._lock:
            return func(*args)

    def _fetch_sync(self, sql: str, params: tuple[Any, ...]) -> tuple[list[dict[str, Any]], list[str]]:
        cursor = self._conn.execute(sql, params)
        try:
            if cursor.description is None:
                self._conn.commit()
                return [], []
            columns = [column[0] for column in cursor.description]
            rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
            return rows, columns
        finally:
            cursor.close()

    def _execute_sync(self, sql: str) -> int:
        before = self._conn.total_changes
        try:
            self._conn.executescript(sql)
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return self._conn.total_changes - before
