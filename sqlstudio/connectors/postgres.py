"""
PostgreSQL Connector

Async PostgreSQL connector using asyncpg.

Features:
- Connection pooling with asyncpg (pool size bounds schema fan-out)
- Table and column comments from pg_description
- Primary key detection via information_schema constraints
- Random sample rows with NULL rendering and truncation
- Database switch by reopening the pool on another catalog

Usage:
    connector = PostgresConnector()
    await connector.connect(
        ConnectionConfig(host="localhost", username="postgres", password="secret")
    )
    await connector.use_database("shop")
    schema = await connector.get_schema()
    await connector.close()
"""

import logging

import asyncpg

from sqlstudio.connectors.base import (
    SAMPLE_ROW_LIMIT,
    SAMPLE_VALUE_MAX_LENGTH,
    BaseConnector,
    ColumnInfo,
    ConnectionConfig,
    ConnectionError,
    QueryResult,
)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "postgres"


class PostgresConnector(BaseConnector):
    """
    PostgreSQL database connector using asyncpg.

    Introspection is limited to one schema (default: public).
    """

    database_type = "PostgreSQL"
    default_port = 5432

    def __init__(self, schema_name: str = "public", **kwargs):
        super().__init__(**kwargs)
        self.schema_name = schema_name
        self._pool: asyncpg.Pool | None = None

    async def _connect(self, config: ConnectionConfig) -> None:
        try:
            self._pool = await asyncpg.create_pool(
                host=config.host,
                port=config.port,
                database=config.database or DEFAULT_DATABASE,
                user=config.username,
                password=config.password,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=self.timeout,
                ssl=config.extra_params.get("sslmode"),
            )
            async with self._pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
        except asyncpg.PostgresError as exc:
            await self._disconnect()
            raise ConnectionError(f"Failed to connect to PostgreSQL: {exc}") from exc
        logger.info(f"Connected to PostgreSQL: {str(version).split(',')[0]}")

    async def _disconnect(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()

    async def _fetch(self, sql: str) -> QueryResult:
        async with self._pool.acquire() as conn:
            # Keep column order even for empty results.
            statement = await conn.prepare(sql)
            records = await statement.fetch()
            columns = [attribute.name for attribute in statement.get_attributes()]
        rows = [dict(record) for record in records]
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))

    async def _execute(self, sql: str) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(sql)
        return _affected_rows(status)

    async def _list_databases(self) -> list[str]:
        async with self._pool.acquire() as conn:
            records = await conn.fetch(
                "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname"
            )
        return [record["datname"] for record in records]

    async def _list_tables(self) -> list[tuple[str, str | None]]:
        async with self._pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT
                    t.table_name,
                    obj_description(
                        format('%I.%I', t.table_schema, t.table_name)::regclass, 'pg_class'
                    ) AS table_comment
                FROM information_schema.tables t
                WHERE t.table_schema = $1
                AND t.table_type = 'BASE TABLE'
                ORDER BY t.table_name
                """,
                self.schema_name,
            )
        return [(record["table_name"], record["table_comment"]) for record in records]

    async def _list_columns(self, table_name: str) -> list[ColumnInfo]:
        async with self._pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT
                    c.column_name,
                    c.data_type,
                    c.is_nullable,
                    c.column_default,
                    col_description(
                        format('%I.%I', c.table_schema, c.table_name)::regclass,
                        c.ordinal_position
                    ) AS column_comment,
                    EXISTS (
                        SELECT 1
                        FROM information_schema.table_constraints tc
                        JOIN information_schema.key_column_usage kcu
                            ON tc.constraint_name = kcu.constraint_name
                            AND tc.table_schema = kcu.table_schema
                            AND tc.table_name = kcu.table_name
                        WHERE tc.constraint_type = 'PRIMARY KEY'
                        AND tc.table_schema = c.table_schema
                        AND tc.table_name = c.table_name
                        AND kcu.column_name = c.column_name
                    ) AS is_primary_key
                FROM information_schema.columns c
                WHERE c.table_schema = $1 AND c.table_name = $2
                ORDER BY c.ordinal_position
                """,
                self.schema_name,
                table_name,
            )
        return [
            ColumnInfo(
                column_name=record["column_name"],
                data_type=record["data_type"],
                is_nullable=record["is_nullable"] == "YES",
                is_primary_key=bool(record["is_primary_key"]),
                default_value=record["column_default"],
                comment=record["column_comment"],
            )
            for record in records
        ]

    def _sample_sql(self, table_name: str, columns: list[ColumnInfo]) -> str:
        if not columns:
            return super()._sample_sql(table_name, columns)
        projections = ", ".join(
            f"CASE WHEN {self.quote_identifier(col.column_name)} IS NULL THEN 'NULL' "
            f"ELSE LEFT({self.quote_identifier(col.column_name)}::text, {SAMPLE_VALUE_MAX_LENGTH}) "
            f"END AS {self.quote_identifier(col.column_name)}"
            for col in columns
        )
        table = f"{self.quote_identifier(self.schema_name)}.{self.quote_identifier(table_name)}"
        return f"SELECT {projections} FROM {table} ORDER BY RANDOM() LIMIT {SAMPLE_ROW_LIMIT}"

    def _error_code(self, exc: Exception) -> str | None:
        return getattr(exc, "sqlstate", None)


def _affected_rows(status: str) -> int:
    """Parse the row count out of a command tag such as 'UPDATE 3' or 'INSERT 0 2'."""
    last = status.rsplit(" ", 1)[-1] if status else ""
    return int(last) if last.isdigit() else 0
