"""
Main entry point for the Schema Registry Operator.

Runs the controller against an in-memory resource store, optionally seeded
from a multi-document YAML manifest holding Secrets, SchemaRegistries and
Schemas.
"""

import asyncio
import logging
import signal
from typing import Optional

import yaml

from config import get_config
from controller import Controller
from events import EventBus
from plugins.registry import register_builtin_plugins
from store import InMemoryStore
from validation import AdmissionError

logger = logging.getLogger(__name__)


async def load_manifest_file(store: InMemoryStore, path: str) -> int:
    """
    Apply every document of a YAML manifest file to the store.

    Documents rejected by validation are logged and skipped.

    Returns:
        The number of documents applied.
    """
    with open(path) as f:
        documents = [doc for doc in yaml.safe_load_all(f) if doc]

    applied = 0
    for document in documents:
        try:
            await store.load_manifest(document)
            applied += 1
        except (AdmissionError, ValueError) as e:
            logger.error(f"Skipping manifest document in {path}: {e}")

    logger.info(f"Loaded {applied}/{len(documents)} manifest documents from {path}")
    return applied


class Application:
    """Main application that wires the store, event bus and controller."""

    def __init__(self):
        self.config = get_config()
        self.event_bus: Optional[EventBus] = None
        self.store: Optional[InMemoryStore] = None
        self.controller: Optional[Controller] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Schema Registry Operator")

        registry = register_builtin_plugins()

        self.event_bus = EventBus()
        self.store = InMemoryStore(event_bus=self.event_bus)

        manifest_path = self.config.operator.manifest_path
        if manifest_path:
            await load_manifest_file(self.store, manifest_path)

        self.controller = Controller(
            store=self.store,
            registry=registry,
            config=self.config,
            event_bus=self.event_bus,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting Schema Registry Operator")

        try:
            await self.controller.start()
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Schema Registry Operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        logger.info("Schema Registry Operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.operator.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

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
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
