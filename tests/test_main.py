"""Tests for main.py - application wiring."""

from unittest.mock import AsyncMock, patch

import pytest

from api import APIServer
from config import APIConfig, Config, StoreConfig
from db import PostgresStore
from main import Application
from store import MemoryStore


@pytest.mark.asyncio
class TestApplication:
    """Tests for Application.initialize and stop."""

    async def test_initialize_memory_store(self):
        config = Config.default()
        config.api = APIConfig(enabled=False)
        app = Application(config)

        await app.initialize()

        assert isinstance(app.store, MemoryStore)
        assert app.controller.store is app.store
        assert app.controller.config is config.controller
        assert app.api_server is None

    async def test_initialize_with_api(self):
        config = Config.default()
        config.api = APIConfig(host="127.0.0.1", port=9100)
        app = Application(config)

        await app.initialize()

        assert isinstance(app.api_server, APIServer)
        assert app.api_server.port == 9100

    async def test_postgres_store_connected_and_closed(self):
        config = Config.default()
        config.store = StoreConfig(backend="postgres")
        config.api = APIConfig(enabled=False)
        app = Application(config)

        with patch.object(PostgresStore, "connect", new_callable=AsyncMock) as connect, \
                patch.object(PostgresStore, "initialize_schema", new_callable=AsyncMock) as init, \
                patch.object(PostgresStore, "close", new_callable=AsyncMock) as close:
            await app.initialize()
            assert isinstance(app.store, PostgresStore)
            connect.assert_awaited_once()
            init.assert_awaited_once()

            app.running = True
            await app.stop()
            close.assert_awaited_once()

    async def test_stop_when_not_running(self):
        app = Application(Config.default())
        await app.stop()
        assert app.running is False
