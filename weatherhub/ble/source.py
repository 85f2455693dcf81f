"""
Bluetooth Low Energy event source for weather station sensors.
Listens to advertisements continuously and keeps a notification subscription per sensor.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from bleak import BleakClient, BleakError, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from .address import SensorAddress
from .events import (
    Connected, Disconnected, Discovered, EventSourceInitError, Notified, QueuedEventSource,
)
from ..utils.config import Config
from ..utils.logging import ProductionLogger, PerformanceMonitor


@dataclass
class _SensorConnection:
    """Connection task state of one sensor."""
    address: SensorAddress
    device: BLEDevice
    task: Optional[asyncio.Task] = None
    client: Optional[BleakClient] = None
    stopping: bool = False
    disconnected: asyncio.Event = field(default_factory=asyncio.Event)


class BleakEventSource(QueuedEventSource):
    """
    Event source backed by bleak.

    - Advertisements carrying the weather station service UUID yield Discovered
    - Manufacturer data with the configured company id yields Notified
    - Each discovered sensor gets a connection task subscribed to the
      measurement characteristic, yielding Connected, Notified and Disconnected
    """

    name = "bluetooth"
    INIT_ATTEMPTS = 3

    def __init__(self, config: Config, logger: ProductionLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize the source.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        super().__init__(logger)
        self.config = config
        self.performance_monitor = performance_monitor

        self.adapter = config.ble_adapter
        self.service_uuid = config.ble_service_uuid
        self.notify_char_uuid = config.ble_notify_char_uuid
        self.manufacturer_id = config.ble_manufacturer_id
        self.connect_timeout = config.ble_connect_timeout
        self.retry_delay = config.ble_retry_delay
        self.reconnect_max_delay = config.ble_reconnect_max_delay

        self._scanner: Optional[BleakScanner] = None
        self._seen: Set[SensorAddress] = set()
        self._connections: Dict[SensorAddress, _SensorConnection] = {}

        self.logger.info(f"BleakEventSource initialized with adapter: {self.adapter}")

    def _is_weather_station(self, advertisement_data: AdvertisementData) -> bool:
        service_uuids = [uuid.lower() for uuid in advertisement_data.service_uuids]
        return self.service_uuid in service_uuids or self.manufacturer_id in advertisement_data.manufacturer_data

    def _detection_callback(self, device: BLEDevice, advertisement_data: AdvertisementData):
        """
        Callback for BLE device detection.

        Args:
            device: Detected BLE device
            advertisement_data: Advertisement data
        """
        if self._stopped or not self._is_weather_station(advertisement_data):
            return

        try:
            address = SensorAddress.parse(device.address)
        except ValueError:
            self.logger.debug(f"Ignoring device with non-MAC address {device.address}")
            return

        if address not in self._seen:
            self._seen.add(address)
            self.logger.info(f"Discovered weather station {address} (RSSI: {advertisement_data.rssi}dBm)")
            self.emit(Discovered(address))
            self.performance_monitor.increment("ble_devices_discovered")

        payload = advertisement_data.manufacturer_data.get(self.manufacturer_id)
        if payload:
            self.emit(Notified(address, bytes(payload)))
            self.performance_monitor.increment("ble_advertisements")

        if address not in self._connections:
            connection = _SensorConnection(address=address, device=device)
            connection.task = asyncio.create_task(self._connect_and_listen(connection))
            self._connections[address] = connection

    async def _start(self):
        """
        Start continuous scanning with retry logic.

        Raises:
            EventSourceInitError: If the scanner cannot be started
        """
        adapter = None if self.adapter == "auto" else self.adapter
        kwargs: Dict[str, Any] = {'detection_callback': self._detection_callback}
        if adapter is not None:
            kwargs['adapter'] = adapter

        for attempt in range(self.INIT_ATTEMPTS):
            try:
                self._scanner = BleakScanner(**kwargs)
                await self._scanner.start()
                self.logger.info("Continuous BLE listening started")
                return
            except (BleakError, OSError) as e:
                self.logger.warning(f"Scanner start attempt {attempt + 1} failed: {e}")
                self._scanner = None
                if attempt < self.INIT_ATTEMPTS - 1:
                    await asyncio.sleep(self.retry_delay)
                else:
                    raise EventSourceInitError(
                        f"Failed to start BLE scanner after {self.INIT_ATTEMPTS} attempts: {e}"
                    )

    async def _connect_and_listen(self, connection: _SensorConnection):
        """Connection loop for one sensor, reconnecting with capped backoff."""
        address = connection.address
        backoff = self.retry_delay

        def _on_notify(_characteristic, data: bytearray):
            self.emit(Notified(address, bytes(data)))
            self.performance_monitor.increment("ble_notifications")

        def _on_disconnect(_client: BleakClient):
            connection.disconnected.set()

        while not connection.stopping and not self._stopped:
            connection.disconnected.clear()
            connected = False
            try:
                connection.client = BleakClient(
                    connection.device,
                    timeout=self.connect_timeout,
                    disconnected_callback=_on_disconnect,
                )
                self.logger.debug(f"[{address}] Connecting...")
                await connection.client.connect()
                connected = True
                self.emit(Connected(address))
                self.logger.info(f"[{address}] Connected")

                await connection.client.start_notify(self.notify_char_uuid, _on_notify)
                backoff = self.retry_delay

                await connection.disconnected.wait()
            except (BleakError, asyncio.TimeoutError, OSError) as e:
                self.logger.warning(f"[{address}] BLE error: {e}")
                self.performance_monitor.increment("ble_connection_errors")
            finally:
                if connection.client is not None and connection.client.is_connected:
                    try:
                        await connection.client.disconnect()
                    except (BleakError, OSError) as e:
                        self.logger.debug(f"[{address}] Disconnect failed: {e}")
                if connected:
                    self.emit(Disconnected(address))
                    self.logger.info(f"[{address}] Disconnected")

            if connection.stopping or self._stopped:
                break

            self.logger.debug(f"[{address}] Reconnecting in {backoff:.1f}s")
            await asyncio.sleep(backoff)
            backoff = min(max(backoff, 0.1) * 2, self.reconnect_max_delay)

        self.logger.debug(f"[{address}] Connection task finished")

    async def _stop_connection(self, connection: _SensorConnection):
        connection.stopping = True
        connection.disconnected.set()
        if connection.task is not None and not connection.task.done():
            connection.task.cancel()
            try:
                await connection.task
            except asyncio.CancelledError:
                pass

    async def disconnect(self, address: SensorAddress):
        """Drop the connection to a sensor and forget it was seen."""
        self._seen.discard(address)
        connection = self._connections.pop(address, None)
        if connection is not None:
            await self._stop_connection(connection)
            self.logger.info(f"[{address}] Connection dropped")

    async def _shutdown(self):
        if self._scanner is not None:
            try:
                await self._scanner.stop()
            except (BleakError, OSError) as e:
                self.logger.warning(f"Error stopping scanner: {e}")
            self._scanner = None

        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await self._stop_connection(connection)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'scanning': self._scanner is not None,
            'seen': len(self._seen),
            'connections': len(self._connections),
            'events_emitted': self.events_emitted,
        }
