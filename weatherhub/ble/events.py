"""
Events emitted by Bluetooth event sources.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol, Union

from .address import SensorAddress


@dataclass(frozen=True)
class Discovered:
    """Sensor seen advertising."""
    address: SensorAddress
    received_at: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class Connected:
    """Connection to the sensor established."""
    address: SensorAddress
    received_at: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class Disconnected:
    """Connection to the sensor lost or closed."""
    address: SensorAddress
    received_at: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class Notified:
    """Raw measurement payload received from the sensor."""
    address: SensorAddress
    raw: bytes
    received_at: float = field(default_factory=time.time, compare=False)


SensorEvent = Union[Discovered, Connected, Disconnected, Notified]


class EventSource(Protocol):
    """Anything that produces sensor events."""

    name: str

    def events(self) -> AsyncIterator[SensorEvent]:
        ...

    async def disconnect(self, address: SensorAddress):
        ...

    async def stop(self):
        ...


class EventSourceError(Exception):
    """Base exception for event sources."""
    pass


class EventSourceInitError(EventSourceError):
    """Event source could not be started."""
    pass


class QueuedEventSource:
    """
    Base for event sources that produce events from callbacks or tasks.

    Subclasses call emit() from the event loop and implement _start() and
    _shutdown(). events() starts the source on first iteration and ends once
    stop() has been called.
    """

    name = "source"

    def __init__(self, logger):
        self.logger = logger
        self._queue: asyncio.Queue = asyncio.Queue()
        self._started = False
        self._stopped = False
        self.events_emitted = 0

    def emit(self, event: SensorEvent):
        if self._stopped:
            return
        self._queue.put_nowait(event)
        self.events_emitted += 1

    async def _start(self):
        pass

    async def _shutdown(self):
        pass

    async def events(self) -> AsyncIterator[SensorEvent]:
        if not self._started:
            self._started = True
            await self._start()

        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def disconnect(self, address: SensorAddress):
        """Drop any connection to the sensor. No-op by default."""
        pass

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        await self._shutdown()
        self._queue.put_nowait(None)
        self.logger.info(f"Event source '{self.name}' stopped")
