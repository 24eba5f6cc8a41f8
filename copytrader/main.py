"""
Copy-trading service entry point.

Wires the trade feed, relationship store, credential vault, market metadata
and replication coordinator into one process.
"""

import asyncio
import signal
import sys
from typing import Optional

from .common.config import Settings, settings
from .common.database import close_duckdb, init_duckdb
from .common.exceptions import CopyTraderError, FeedFatalError
from .common.logging import get_logger, setup_logging
from .common.monitoring import setup_metrics_server
from .common.vault import CredentialVault
from .exchange.market_info import MarketInfoCache
from .exchange.rest_client import PacificaRESTClient, RESTClientPool
from .exchange.ws_client import PacificaWebSocketClient
from .replication.coordinator import ReplicationCoordinator
from .replication.store import DuckDBRelationshipStore

logger = get_logger(__name__)


class CopyTradingService:
    """Owns every long-lived component and their start/stop order."""

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or settings
        urls = self.settings.get_pacifica_urls()

        self.vault = CredentialVault.from_config(self.settings.vault)
        self.store = DuckDBRelationshipStore(init_duckdb(self.settings.duckdb))

        # Unsigned client for market metadata
        self.public_client = PacificaRESTClient(urls["rest"], config=self.settings.pacifica)
        self.market_info = MarketInfoCache(
            self.public_client.get_markets,
            self.settings.replication.default_lot_size,
        )
        self.client_pool = RESTClientPool.from_config(urls["rest"], self.settings.pacifica)
        self.feed = PacificaWebSocketClient(urls["websocket"], self.settings.pacifica)

        self.coordinator = ReplicationCoordinator(
            store=self.store,
            feed=self.feed,
            decrypt=self.vault.decrypt,
            market_info=self.market_info,
            client_pool=self.client_pool,
            config=self.settings.replication,
        )

        self._setup_callbacks()

        self.running = False
        self.feed_task: Optional[asyncio.Task] = None

        logger.info("Copy-trading service initialized", environment=self.settings.environment)

    def _setup_callbacks(self) -> None:
        """Connect feed and store events to the coordinator."""
        self.feed.on_fill(self.coordinator.handle_fill)
        self.feed.on_connected(self.coordinator.reconcile_subscriptions)
        self.store.add_listener(self.coordinator.notify_relationships_changed)

    async def start(self) -> None:
        """Start components, then the feed."""
        if self.running:
            logger.warning("Service already running")
            return

        logger.info("Starting copy-trading service")
        self.running = True

        await self.public_client.start()
        await self.coordinator.start()
        self.feed_task = asyncio.create_task(self.feed.run())

    async def stop(self) -> None:
        """Stop the feed first so no new fills arrive, then drain replication."""
        if not self.running:
            return

        logger.info("Stopping copy-trading service")
        self.running = False

        await self.feed.stop()
        if self.feed_task and not self.feed_task.done():
            self.feed_task.cancel()
            try:
                await self.feed_task
            except (asyncio.CancelledError, FeedFatalError):
                pass

        await self.coordinator.stop()
        await self.public_client.close()
        close_duckdb()

        logger.info("Copy-trading service stopped")

    async def wait(self, stop_event: asyncio.Event) -> None:
        """
        Block until a stop is requested or the feed ends.

        Raises:
            FeedFatalError: the feed gave up reconnecting
        """
        stop_waiter = asyncio.create_task(stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {self.feed_task, stop_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if self.feed_task in done:
                self.feed_task.result()
        finally:
            stop_waiter.cancel()


async def main() -> int:
    """Run the service until SIGINT/SIGTERM or a fatal feed error."""
    setup_logging()
    settings.ensure_directories()

    if settings.monitoring.enable_metrics_server:
        setup_metrics_server()

    try:
        service = CopyTradingService()
    except CopyTraderError as e:
        logger.critical("Failed to initialize service", **e.to_dict())
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    exit_code = 0
    try:
        await service.start()
        logger.info("Copy-trading service running. Press Ctrl+C to stop.")
        await service.wait(stop_event)
    except FeedFatalError as e:
        logger.critical("Trade feed failed permanently", **e.to_dict())
        exit_code = 1
    finally:
        await service.stop()

    return exit_code


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
