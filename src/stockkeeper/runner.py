"""
Stockkeeper Runner

Standalone process running the outbox dispatcher, the expiration
sweeper, the low-stock monitor and the outbox janitor until
SIGTERM/SIGINT.

Usage:
    python -m stockkeeper.runner

Environment Variables:
    See stockkeeper.config.Settings (DATABASE_BACKEND, DATABASE_URL,
    BROKER_URL, OUTBOX_*, RESERVATION_*, LOW_STOCK_*, LOG_LEVEL, ...)
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from . import __version__
from .config import Settings
from .lifecycle import Components, consistency_lifespan
from .observability import configure_logging, init_metrics, init_tracing

logger = logging.getLogger(__name__)


class StockkeeperRunner:
    """
    Manages the background workers with graceful shutdown.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.components: Optional[Components] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self):
        """Run the workers until shutdown is requested."""
        settings = self.settings
        logger.info("Starting Stockkeeper Runner")
        logger.info(f"  Database backend: {settings.database_backend}")
        logger.info(f"  Dispatcher workers: {settings.outbox_workers}")
        logger.info(f"  Poll interval: {settings.outbox_poll_interval}s")
        logger.info(f"  Sweep interval: {settings.reservation_sweep_interval}s")

        self._setup_signal_handlers()

        try:
            async with consistency_lifespan(settings) as components:
                self.components = components
                logger.info("Stockkeeper is running")
                await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Stockkeeper runner error: {e}", exc_info=True)
            raise
        finally:
            self.components = None
            logger.info("Stockkeeper stopped")


async def main():
    """Main entry point."""
    settings = Settings.from_env()

    configure_logging(settings.log_level, settings.log_structured, settings.service_name)

    issues = settings.validate()
    if issues:
        for issue in issues:
            logger.error(f"Configuration error: {issue}")
        sys.exit(1)

    init_tracing(settings.service_name, __version__, settings.otlp_endpoint)
    init_metrics(settings.service_name, settings.otlp_endpoint)

    await StockkeeperRunner(settings).run()


def _entrypoint():
    asyncio.run(main())


if __name__ == "__main__":
    _entrypoint()
