"""
Connection Registry

Named, connected database connectors shared by the agent service and CLI.

Each name has its own asyncio.Lock, so connecting or removing one entry never
blocks work on another. Map updates happen between awaits and need no
further locking on a single event loop.
"""

import asyncio
import logging

from sqlstudio.connectors.base import BaseConnector, ConnectionConfig
from sqlstudio.connectors.factory import create_connector

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Registry of open connectors by name."""

    def __init__(self, pool_size: int = 5, timeout: int = 300):
        self.pool_size = pool_size
        self.timeout = timeout
        self._connections: dict[str, BaseConnector] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    async def create_connection(
        self,
        name: str,
        database_type: str,
        config: ConnectionConfig,
    ) -> BaseConnector:
        """
        Connect and register a connector under name.

        An existing connection with the same name is closed and replaced.

        Raises:
            ValueError: If database_type is unsupported
            ConnectionError: If the connection cannot be opened
        """
        async with self._lock_for(name):
            existing = self._connections.pop(name, None)
            if existing is not None:
                await existing.close()

            connector = create_connector(
                database_type, pool_size=self.pool_size, timeout=self.timeout
            )
            await connector.connect(config)
            self._connections[name] = connector

        logger.info(
            f"Registered connection '{name}'",
            extra={"connection": name, "database_type": connector.database_type},
        )
        return connector

    def get_connection(self, name: str) -> BaseConnector | None:
        return self._connections.get(name)

    async def remove_connection(self, name: str) -> bool:
        """Close and forget a connection. Returns False if the name is unknown."""
        async with self._lock_for(name):
            connector = self._connections.pop(name, None)
            if connector is None:
                return False
            await connector.close()
        logger.info(f"Removed connection '{name}'", extra={"connection": name})
        return True

    @property
    def connection_names(self) -> list[str]:
        return list(self._connections)

    async def dispose_all(self) -> None:
        """Close every registered connection."""
        for name in list(self._connections):
            await self.remove_connection(name)
