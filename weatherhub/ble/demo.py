"""
Simulated weather station sensors for running the hub without Bluetooth hardware.
"""

import asyncio
import random
import time
from typing import Dict, List, Optional

from .address import SensorAddress
from .codec import Field, Reading, encode
from .events import Connected, Discovered, Notified, QueuedEventSource
from ..utils.config import Config
from ..utils.logging import ProductionLogger


class FluctuatingSensor:
    """Random walk of plausible weather values."""

    def __init__(self, address: SensorAddress, rng: Optional[random.Random] = None):
        self.address = address
        self.rng = rng or random.Random()
        self.temperature = 2000   # 20.00 degC
        self.humidity = 5000      # 50.00 %RH
        self.pressure = 100000    # 1000.00 hPa

    def next_reading(self, timestamp: int) -> Reading:
        self.temperature = min(max(self.temperature + self.rng.randint(-100, 100), 0), 3000)
        self.humidity = min(max(self.humidity + self.rng.choice((-1, 1)) * self.rng.randint(20, 90), 2000), 9000)
        self.pressure = min(max(self.pressure + self.rng.choice((-1, 1)) * self.rng.randint(100, 1000), 95000), 105000)

        return Reading(
            address=self.address,
            timestamp=timestamp,
            fields_present=Field.TEMPERATURE | Field.HUMIDITY | Field.PRESSURE,
            temperature=self.temperature,
            humidity=self.humidity,
            pressure=self.pressure,
        )


class DemoEventSource(QueuedEventSource):
    """
    Event source emitting encoded payloads of simulated sensors.

    Sensors use the addresses 00:00:00:00:00:00, 00:00:00:00:00:01, ...
    """

    name = "demo"

    def __init__(self, config: Config, logger: ProductionLogger, rng: Optional[random.Random] = None):
        super().__init__(logger)
        self.interval = config.demo_interval
        self.rng = rng or random.Random()
        self.sensors: Dict[SensorAddress, FluctuatingSensor] = {}
        for index in range(config.demo_sensors):
            address = SensorAddress(index)
            self.sensors[address] = FluctuatingSensor(address, self.rng)
        self._task: Optional[asyncio.Task] = None

    @property
    def addresses(self) -> List[SensorAddress]:
        return list(self.sensors)

    async def _start(self):
        self._task = asyncio.create_task(self._run())
        self.logger.info(f"Demo source started with {len(self.sensors)} simulated sensors")

    def emit_readings(self, timestamp: Optional[int] = None):
        """Emit one payload per simulated sensor."""
        timestamp = int(time.time()) if timestamp is None else timestamp
        for address, sensor in self.sensors.items():
            reading = sensor.next_reading(timestamp)
            self.emit(Notified(address, encode(reading, compact_pressure=self.rng.random() < 0.5)))

    async def _run(self):
        for address in self.sensors:
            self.emit(Discovered(address))
            self.emit(Connected(address))

        while not self._stopped:
            self.emit_readings()
            await asyncio.sleep(self.interval)

    async def disconnect(self, address: SensorAddress):
        """Restart the random walk of a simulated sensor."""
        if address in self.sensors:
            self.sensors[address] = FluctuatingSensor(address, self.rng)

    async def _shutdown(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
