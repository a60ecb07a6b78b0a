"""
Database Connectors Module

Async database connectors with a shared introspection and execution contract.

Available Connectors (imported from their modules, or created by name):
    - MySQLConnector: MySQL (mysql-connector-python)
    - PostgresConnector: PostgreSQL (asyncpg)
    - ClickHouseConnector: ClickHouse (clickhouse-connect)
    - SqlServerConnector: SQL Server (pyodbc)
    - SqliteConnector: SQLite files (sqlite3)

Usage:
    from sqlstudio.connectors import ConnectionConfig, create_connector

    connector = create_connector("postgresql")
    async with connector:
        await connector.connect(ConnectionConfig(host="localhost", database="shop"))
        schema = await connector.get_schema()
        result = await connector.execute_query("SELECT * FROM users")
"""

from sqlstudio.connectors.base import (
    NOT_CONNECTED_MESSAGE,
    BaseConnector,
    ColumnInfo,
    ConnectionConfig,
    ConnectionError,
    ConnectorError,
    DatabaseSchema,
    QueryError,
    QueryResult,
    SchemaError,
    SqlExecutionResult,
    TableInfo,
)
from sqlstudio.connectors.factory import (
    create_connector,
    get_connector_class,
    get_default_port,
    register_connector,
    resolve_database_type,
    supported_database_types,
)
from sqlstudio.connectors.registry import ConnectionManager

__all__ = [
    "BaseConnector",
    "ConnectionManager",
    "create_connector",
    "get_connector_class",
    "get_default_port",
    "register_connector",
    "resolve_database_type",
    "supported_database_types",
    "ConnectionConfig",
    "ColumnInfo",
    "TableInfo",
    "DatabaseSchema",
    "QueryResult",
    "SqlExecutionResult",
    "NOT_CONNECTED_MESSAGE",
    "ConnectorError",
    "ConnectionError",
    "QueryError",
    "SchemaError",
]
