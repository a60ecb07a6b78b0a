"""
Connector factory keyed by database type name.

Engine modules are imported on first use so that a missing native driver
(for example the ODBC library behind pyodbc) only affects that engine.
"""

from __future__ import annotations

import importlib
import logging

from sqlstudio.connectors.base import BaseConnector

logger = logging.getLogger(__name__)

_CONNECTORS: dict[str, str | type[BaseConnector]] = {
    "mysql": "sqlstudio.connectors.mysql:MySQLConnector",
    "postgresql": "sqlstudio.connectors.postgres:PostgresConnector",
    "clickhouse": "sqlstudio.connectors.clickhouse:ClickHouseConnector",
    "sqlserver": "sqlstudio.connectors.sqlserver:SqlServerConnector",
    "sqlite": "sqlstudio.connectors.sqlite:SqliteConnector",
}

_DEFAULT_PORTS = {
    "mysql": 3306,
    "postgresql": 5432,
    "clickhouse": 8123,
    "sqlserver": 1433,
    "sqlite": 0,
}

_ALIASES = {
    "postgres": "postgresql",
    "pg": "postgresql",
    "mssql": "sqlserver",
    "sql server": "sqlserver",
    "sqlite3": "sqlite",
}


def resolve_database_type(database_type: str) -> str:
    """Normalize a database type name (case-insensitive, common aliases accepted)."""
    value = database_type.strip().lower()
    value = _ALIASES.get(value, value)
    if value not in _CONNECTORS:
        raise ValueError(
            f"Unsupported database type: {database_type}. "
            f"Supported types: {supported_database_types()}"
        )
    return value


def supported_database_types() -> list[str]:
    return list(_CONNECTORS)


def get_default_port(database_type: str) -> int:
    """Default TCP port for a database type (0 for file-based or unknown engines)."""
    return _DEFAULT_PORTS.get(resolve_database_type(database_type), 0)


def register_connector(database_type: str, connector_class: type[BaseConnector]) -> None:
    """Register (or replace) the connector class for a database type."""
    key = database_type.strip().lower()
    _CONNECTORS[key] = connector_class
    if connector_class.default_port:
        _DEFAULT_PORTS[key] = connector_class.default_port
    logger.info(f"Registered connector {connector_class.__name__} for {key}")


def get_connector_class(database_type: str) -> type[BaseConnector]:
    key = resolve_database_type(database_type)
    entry = _CONNECTORS[key]
    if isinstance(entry, str):
        module_name, class_name = entry.split(":")
        entry = getattr(importlib.import_module(module_name), class_name)
        _CONNECTORS[key] = entry
    return entry


def create_connector(
    database_type: str,
    *,
    pool_size: int = 5,
    timeout: int = 300,
    **kwargs,
) -> BaseConnector:
    """
    Create an unconnected connector for the given database type.

    Raises:
        ValueError: If the database type is not supported
    """
    connector_class = get_connector_class(database_type)
    return connector_class(pool_size=pool_size, timeout=timeout, **kwargs)
