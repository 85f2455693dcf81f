"""
Hub daemon.
Wires configuration, storage, registry, bridge, event sources and the HTTP API
together and keeps them running until a shutdown signal arrives.
"""

import asyncio
import signal
import sys
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn

from ..api.app import create_app
from ..ble.demo import DemoEventSource
from ..ble.events import EventSourceError, QueuedEventSource
from ..ble.source import BleakEventSource
from ..metadata.registry import SensorRegistry
from ..mqtt.bridge import MqttBridge
from ..storage.store import StoreError, TimeSeriesStore
from ..utils.config import Config, ConfigurationError
from ..utils.logging import ProductionLogger, PerformanceMonitor, setup_logging
from .pipeline import IngestionPipeline


@dataclass
class DaemonStats:
    """Daemon statistics container."""
    start_time: datetime
    uptime_seconds: int = 0
    sources_running: int = 0
    source_failures: int = 0


class HubDaemonError(Exception):
    """Exception for daemon startup and runtime failures."""
    pass


class HubDaemon:
    """
    Long running hub process.

    Startup order: configuration, logging, store (a corrupt store aborts),
    registry, bridge, pipeline, event sources, HTTP API.
    """

    def __init__(self, config: Optional[Config] = None, logger: Optional[ProductionLogger] = None):
        """
        Initialize daemon.

        Args:
            config: Configuration (loaded from the environment when None)
            logger: Logger (configured from config when None)
        """
        self.config = config
        self.logger = logger
        self.performance_monitor: Optional[PerformanceMonitor] = None
        self.store: Optional[TimeSeriesStore] = None
        self.registry: Optional[SensorRegistry] = None
        self.bridge: Optional[MqttBridge] = None
        self.pipeline: Optional[IngestionPipeline] = None
        self.sources: List[QueuedEventSource] = []
        self.api_server: Optional[uvicorn.Server] = None

        # Daemon state
        self._running = False
        self._shutdown_requested = False
        self._source_tasks: List[asyncio.Task] = []
        self._api_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None

        self._stats = DaemonStats(start_time=datetime.now())

    def _initialize_components(self):
        """
        Initialize all daemon components.

        Raises:
            HubDaemonError: If configuration is invalid or the store cannot be opened
        """
        try:
            if self.config is None:
                self.config = Config()
            self.config.validate_configuration()
        except ConfigurationError as e:
            raise HubDaemonError(f"Invalid configuration: {e}")

        if self.logger is None:
            self.logger = setup_logging(self.config)
        self.performance_monitor = PerformanceMonitor()

        self.store = TimeSeriesStore(
            self.config,
            self.logger.get_logger('weatherhub.store'),
            self.performance_monitor,
        )
        try:
            self.store.open()
            self.registry = SensorRegistry(self.store, self.logger.get_logger('weatherhub.registry'))
            self.registry.load()
        except StoreError as e:
            self.logger.critical(f"Cannot open store: {e}")
            raise HubDaemonError(f"Store unavailable: {e}")

        try:
            self.bridge = MqttBridge(self.config, self.logger.get_logger('weatherhub.mqtt'), self.performance_monitor)
        except ConfigurationError as e:
            self.store.close()
            raise HubDaemonError(f"Invalid MQTT configuration: {e}")

        self.pipeline = IngestionPipeline(
            self.config,
            self.logger.get_logger('weatherhub.pipeline'),
            self.performance_monitor,
            self.store,
            self.registry,
            self.bridge,
        )

        if self.config.demo_sensors > 0:
            self.sources.append(DemoEventSource(self.config, self.logger.get_logger('weatherhub.demo')))
        if self.config.ble_enabled:
            self.sources.append(
                BleakEventSource(self.config, self.logger.get_logger('weatherhub.ble'), self.performance_monitor)
            )
        if not self.sources:
            self.logger.warning("No event source enabled (BLE_ENABLED=false and DEMO=0)")

        self.logger.info("Daemon components initialized successfully")

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            """Handle shutdown signals."""
            signal_name = signal.Signals(signum).name
            if self.logger:
                self.logger.info(f"Received {signal_name}, initiating graceful shutdown...")
            self._shutdown_requested = True

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    def request_shutdown(self):
        self._shutdown_requested = True

    async def _run_source(self, source: QueuedEventSource):
        """Pump one event source into the pipeline."""
        self._stats.sources_running += 1
        try:
            await self.pipeline.run(source)
        except EventSourceError as e:
            self._stats.source_failures += 1
            self.logger.error(f"Event source '{source.name}' failed: {e}")
        finally:
            self._stats.sources_running -= 1

    def _create_api_server(self) -> uvicorn.Server:
        app = create_app(self.pipeline, status_provider=self.get_status)
        server_config = uvicorn.Config(
            app,
            host=self.config.host,
            port=self.config.port,
            log_config=None,
            access_log=False,
        )
        return uvicorn.Server(server_config)

    async def _statistics_loop(self):
        """Background loop writing statistics to the performance log."""
        interval = self.config.stats_log_interval
        while self._running and not self._shutdown_requested:
            await asyncio.sleep(interval)
            self._stats.uptime_seconds = int((datetime.now() - self._stats.start_time).total_seconds())
            self.performance_monitor.log_summary()
            pipeline_stats = self.pipeline.get_statistics()
            self.logger.info(
                f"Hub statistics: sensors={pipeline_stats['known_sensors']} "
                f"stored={pipeline_stats['readings_stored']} "
                f"rejected={pipeline_stats['readings_rejected']} "
                f"dropped={pipeline_stats['events_dropped']} "
                f"mqtt_buffered={self.bridge.buffered}"
            )

    def get_status(self) -> Dict[str, Any]:
        """Get current daemon status."""
        self._stats.uptime_seconds = int((datetime.now() - self._stats.start_time).total_seconds())
        stats = asdict(self._stats)
        stats['start_time'] = self._stats.start_time.isoformat()
        return {
            "running": self._running,
            "shutdown_requested": self._shutdown_requested,
            "stats": stats,
            "pipeline": self.pipeline.get_statistics() if self.pipeline else None,
            "mqtt": self.bridge.get_statistics() if self.bridge else None,
            "sources": [source.name for source in self.sources],
            "performance": self.performance_monitor.get_performance_summary() if self.performance_monitor else None,
        }

    async def start(self, install_signal_handlers: bool = True):
        """
        Start the daemon and run until shutdown is requested.

        Raises:
            HubDaemonError: If startup fails
        """
        if self._running:
            raise HubDaemonError("Daemon is already running")

        self._initialize_components()
        self.logger.info("Starting weather station hub...")

        if install_signal_handlers:
            self._setup_signal_handlers()

        self._running = True
        self.bridge.start()
        for source in self.sources:
            self._source_tasks.append(asyncio.create_task(self._run_source(source)))
        if self.config.api_enabled:
            self.api_server = self._create_api_server()
            self._api_task = asyncio.create_task(self.api_server.serve())
            self.logger.info(f"HTTP API listening on http://{self.config.host}:{self.config.port}")
        self._stats_task = asyncio.create_task(self._statistics_loop())

        self.logger.info("Weather station hub started successfully")

        try:
            while self._running and not self._shutdown_requested:
                if self._api_task is not None and self._api_task.done():
                    self.logger.warning("HTTP API server exited, shutting down")
                    break
                await asyncio.sleep(1)
        finally:
            await self.stop()

    async def stop(self):
        """Stop the daemon gracefully."""
        if not self._running:
            return

        self.logger.info("Stopping weather station hub...")
        self._running = False

        if self.api_server is not None:
            self.api_server.should_exit = True

        for source in self.sources:
            await source.stop()

        tasks = [self._stats_task, self._api_task, *self._source_tasks]
        for task in tasks:
            if task is None:
                continue
            if task is not self._api_task and not task.done():
                task.cancel()
            try:
                await asyncio.wait_for(task, timeout=10.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except SystemExit:
                # uvicorn exits this way when it cannot bind its socket
                self.logger.error("HTTP API server failed to start")

        await self.pipeline.stop()
        await self.bridge.stop()
        self.store.close()

        self.logger.info("Weather station hub stopped")


async def run_daemon(config: Optional[Config] = None):
    """Run the daemon from command line."""
    daemon = HubDaemon(config)

    try:
        await daemon.start()
    except HubDaemonError as e:
        print(f"Hub initialization failed: {e}")
        sys.exit(1)
