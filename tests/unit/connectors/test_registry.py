"""Unit tests for the named connection registry."""

import asyncio

import pytest

from sqlstudio.connectors import factory as connector_factory
from sqlstudio.connectors.base import ConnectionConfig, ConnectionError
from sqlstudio.connectors.registry import ConnectionManager


@pytest.fixture(autouse=True)
def fake_engine(monkeypatch, fake_connector_class):
    monkeypatch.setattr(connector_factory, "_CONNECTORS", dict(connector_factory._CONNECTORS))
    monkeypatch.setattr(connector_factory, "_DEFAULT_PORTS", dict(connector_factory._DEFAULT_PORTS))
    connector_factory.register_connector("fake", fake_connector_class)


@pytest.fixture
def config():
    return ConnectionConfig(host="localhost", database="shop")


async def test_create_and_get_connection(config):
    manager = ConnectionManager(pool_size=2, timeout=10)

    connector = await manager.create_connection("main", "fake", config)

    assert manager.get_connection("main") is connector
    assert connector.is_connected is True
    assert connector.pool_size == 2
    assert connector.timeout == 10
    assert manager.connection_names == ["main"]


async def test_get_unknown_connection_returns_none():
    assert ConnectionManager().get_connection("missing") is None


async def test_create_replaces_and_closes_existing(config):
    manager = ConnectionManager()
    first = await manager.create_connection("main", "fake", config)

    second = await manager.create_connection("main", "fake", config.with_database("other"))

    assert first.is_connected is False
    assert manager.get_connection("main") is second
    assert second.current_database == "other"


async def test_failed_connect_is_not_registered():
    manager = ConnectionManager()

    with pytest.raises(ConnectionError):
        await manager.create_connection("main", "fake", ConnectionConfig(host="unreachable"))

    assert manager.get_connection("main") is None


async def test_unsupported_type_raises(config):
    with pytest.raises(ValueError, match="Unsupported database type"):
        await ConnectionManager().create_connection("main", "oracle", config)


async def test_remove_connection(config):
    manager = ConnectionManager()
    connector = await manager.create_connection("main", "fake", config)

    assert await manager.remove_connection("main") is True
    assert await manager.remove_connection("main") is False
    assert connector.is_connected is False
    assert manager.connection_names == []


async def test_concurrent_names_are_independent(config):
    manager = ConnectionManager()

    await asyncio.gather(
        manager.create_connection("a", "fake", config),
        manager.create_connection("b", "fake", config),
    )

    assert sorted(manager.connection_names) == ["a", "b"]


async def test_dispose_all(config):
    manager = ConnectionManager()
    a = await manager.create_connection("a", "fake", config)
    b = await manager.create_connection("b", "fake", config)

    await manager.dispose_all()

    assert manager.connection_names == []
    assert a.is_connected is False and b.is_connected is False
