"""
Main entry point for the GuestBook operator.

Wires the configured store, the event bus, the controller and the HTTP
API together and runs them until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from api import APIServer, create_app
from config import Config, get_config
from controller import Controller
from db import PostgresStore
from events import EventBus
from reconciler import GuestBookReconciler
from store import MemoryStore, StateStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the store, controller and API."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[StateStore] = None
        self.event_bus: Optional[EventBus] = None
        self.controller: Optional[Controller] = None
        self.api_server: Optional[APIServer] = None
        self.running = False

    async def _create_store(self) -> StateStore:
        if self.config.store.backend == "postgres":
            db_config = self.config.database
            store = PostgresStore(
                host=db_config.host,
                port=db_config.port,
                database=db_config.database,
                user=db_config.user,
                password=db_config.password,
                min_pool_size=db_config.min_pool_size,
                max_pool_size=db_config.max_pool_size,
                event_bus=self.event_bus,
            )
            await store.connect()
            await store.initialize_schema()
            logger.info("Database initialized")
            return store

        logger.info("Using in-memory store")
        return MemoryStore(event_bus=self.event_bus)

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.api.log_level)
        logger.info("Initializing GuestBook operator")

        self.event_bus = EventBus()
        self.store = await self._create_store()

        self.controller = Controller(
            store=self.store,
            reconciler=GuestBookReconciler(self.store),
            event_bus=self.event_bus,
            config=self.config.controller,
        )

        if self.config.api.enabled:
            app = create_app(self.store, self.controller, self.event_bus)
            self.api_server = APIServer(
                app, host=self.config.api.host, port=self.config.api.port
            )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting GuestBook operator")

        tasks: List[asyncio.Task] = [asyncio.create_task(self.controller.start())]
        if self.api_server:
            tasks.append(asyncio.create_task(self.api_server.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping GuestBook operator")
        self.running = False

        if self.api_server:
            await self.api_server.stop()

        if self.controller:
            await self.controller.stop()

        if isinstance(self.store, PostgresStore):
            await self.store.close()

        logger.info("GuestBook operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
