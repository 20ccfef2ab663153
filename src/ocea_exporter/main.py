"""Main entry point for the Ocea exporter service."""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .api_client import OceaClient
from .auth import TokenManager
from .config import Settings, create_settings
from .exceptions import StateFileError
from .fetcher import CounterFetcher
from .influx_writer import InfluxWriter
from .metrics import ExporterMetrics, start_metrics_server
from .mqtt_publisher import HomeAssistantPublisher
from .notifications import NotificationHub
from .state_store import StateStore

logger = logging.getLogger("ocea-exporter")


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )


class Exporter:
    """Wires the fetcher and its sinks together."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.running = False
        self.token_manager: Optional[TokenManager] = None
        self.client: Optional[OceaClient] = None
        self.fetcher: Optional[CounterFetcher] = None
        self.publisher: Optional[HomeAssistantPublisher] = None
        self.influx_writer: Optional[InfluxWriter] = None
        self._tasks: List[asyncio.Task] = []
        self._stopped = False

    async def start(self) -> bool:
        """Start the exporter service. Returns False on a fatal setup error."""
        logger.info("=" * 60)
        logger.info("Ocea Exporter - Resident Portal Metering Service")
        logger.info("=" * 60)

        settings = self.settings
        if not settings.has_credentials:
            logger.error("No Ocea credentials! Set OCEA_USERNAME and OCEA_PASSWORD.")
            return False

        self.token_manager = TokenManager(settings.credentials, timeout=settings.http_timeout)
        self.client = OceaClient(self.token_manager, base_url=settings.ocea_api_base_url, timeout=settings.http_timeout)
        hub = NotificationHub()

        metrics = None
        if settings.prometheus_enabled:
            metrics = ExporterMetrics()
            start_metrics_server(settings.prometheus_listen_addr, settings.prometheus_port)

        if settings.homeassistant_enabled:
            self.publisher = HomeAssistantPublisher(settings, hub.subscribe("homeassistant"))
            logger.info(f"Home Assistant MQTT publishing enabled ({settings.mqtt_host}:{settings.mqtt_port})")

        if settings.influxdb_enabled:
            self.influx_writer = InfluxWriter(settings, hub.subscribe("influxdb"))
            logger.info(f"InfluxDB writing enabled ({settings.influxdb_url})")

        store = StateStore(settings.state_file_path)
        self.fetcher = CounterFetcher(settings, self.client, store, hub, metrics)
        try:
            self.fetcher.start()
        except StateFileError as e:
            logger.error(f"Cannot start: {e}")
            return False

        logger.info(f"State file: {settings.state_file_path}")
        logger.info(f"Reconcile strategy: {settings.reconcile_strategy}")
        logger.info("-" * 60)

        self.running = True
        if self.publisher:
            self._tasks.append(asyncio.create_task(self.publisher.run(), name="homeassistant"))
        if self.influx_writer:
            self._tasks.append(asyncio.create_task(self.influx_writer.run(), name="influxdb"))
        self._tasks.append(asyncio.create_task(self.fetcher.run_forever(), name="fetcher"))
        return True

    async def wait(self):
        """Wait until every task is done or cancelled."""
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def request_stop(self):
        """Cancel the running tasks. Clients are closed by stop()."""
        if self.fetcher:
            self.fetcher.stop()
        for task in self._tasks:
            task.cancel()

    async def stop(self):
        """Stop the exporter service and close every client. Runs once."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping exporter service...")
        self.running = False

        self.request_stop()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.client:
            await self.client.close()
        if self.publisher:
            self.publisher.close()
        if self.influx_writer:
            self.influx_writer.close()

        logger.info("Exporter service stopped")


async def main() -> int:
    """Main entry point."""
    settings = create_settings()
    configure_logging(settings.log_level)
    exporter = Exporter(settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        exporter.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        if not await exporter.start():
            return 1
        await exporter.wait()
    finally:
        await exporter.stop()
    return 0


def run():
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
