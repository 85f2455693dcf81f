"""
Ingestion pipeline.
Routes Bluetooth events through decoding, the sensor registry, the store and
the distribution bridge, one worker task per sensor address.
"""

import asyncio
import contextlib
import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..ble.address import SensorAddress
from ..ble.codec import DecodeError, Reading, decode
from ..ble.events import Connected, Disconnected, Discovered, EventSource, Notified, SensorEvent
from ..metadata.registry import SensorRegistry
from ..metadata.schema import ConnectionState, SensorRecord
from ..mqtt.bridge import MqttBridge
from ..storage.store import DuplicateOrOutOfOrderError, StoreTransactionError, TimeSeriesStore
from ..utils.config import Config
from ..utils.logging import ProductionLogger, PerformanceMonitor


@dataclass
class _AddressWorker:
    """Queue and task serving the events of one sensor."""
    address: SensorAddress
    queue: asyncio.Queue
    task: Optional[asyncio.Task] = None
    cancelled: bool = False
    processed: int = field(default=0)


class IngestionPipeline:
    """
    Per-sensor event processing.

    Each address has a bounded queue drained by its own worker task, so a
    slow or chatty sensor never stalls the others. Processing of an event and
    the management operations rename/forget all run under the address lock,
    which is taken before touching that address's registry entry or store
    region. Store and registry calls run on a single dedicated thread.
    """

    def __init__(self,
                 config: Config,
                 logger: ProductionLogger,
                 performance_monitor: PerformanceMonitor,
                 store: TimeSeriesStore,
                 registry: SensorRegistry,
                 bridge: MqttBridge,
                 executor: Optional[ThreadPoolExecutor] = None):
        """
        Initialize the pipeline.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
            store: Opened time-series store
            registry: Loaded sensor registry
            bridge: Distribution bridge
            executor: Executor owning store access (a single thread by default)
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.store = store
        self.registry = registry
        self.bridge = bridge

        self.queue_size = config.pipeline_queue_size
        self.store_retry_attempts = config.store_retry_attempts
        self.store_retry_delay = config.store_retry_delay
        self.store_retry_max_delay = config.store_retry_max_delay

        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="store")
        self._locks: Dict[SensorAddress, asyncio.Lock] = {}
        self._lock_users: Dict[SensorAddress, int] = {}
        self._workers: Dict[SensorAddress, _AddressWorker] = {}
        self._sources: List[EventSource] = []
        self._running = True

        # Statistics
        self.events_received = 0
        self.events_dropped = 0
        self.readings_stored = 0
        self.readings_rejected = 0
        self.decode_errors = 0
        self.store_failures = 0

    @property
    def running(self) -> bool:
        return self._running

    async def _call(self, func: Callable, *args) -> Any:
        """Run a store or registry call on the store thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    def _lock_for(self, address: SensorAddress) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    @contextlib.asynccontextmanager
    async def _address_lock(self, address: SensorAddress):
        """
        Hold the lock of an address.

        The lock entry is dropped once nobody holds or waits for it and the
        address has no worker, so forgotten sensors leave nothing behind.
        """
        lock = self._lock_for(address)
        self._lock_users[address] = self._lock_users.get(address, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[address] - 1
            if users:
                self._lock_users[address] = users
            else:
                del self._lock_users[address]
                if address not in self._workers and self._locks.get(address) is lock and not lock.locked():
                    del self._locks[address]

    # Event intake

    def submit(self, event: SensorEvent) -> bool:
        """
        Queue an event for its sensor's worker.

        Returns:
            bool: False if the event was dropped because the queue is full or
                the pipeline is stopping
        """
        if not self._running:
            return False

        self.events_received += 1
        worker = self._workers.get(event.address)
        if worker is None:
            worker = self._start_worker(event.address)

        try:
            worker.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.events_dropped += 1
            self.performance_monitor.increment("pipeline_events_dropped")
            self.logger.warning(f"Queue for {event.address} full, dropping {type(event).__name__} event")
            return False
        return True

    def _start_worker(self, address: SensorAddress) -> _AddressWorker:
        worker = _AddressWorker(address=address, queue=asyncio.Queue(maxsize=self.queue_size))
        worker.task = asyncio.create_task(self._worker_loop(worker), name=f"worker-{address}")
        self._workers[address] = worker
        self.logger.debug(f"Started worker for {address}")
        return worker

    async def _worker_loop(self, worker: _AddressWorker):
        while not worker.cancelled:
            event = await worker.queue.get()
            try:
                if event is None or worker.cancelled:
                    continue
                await self.process(event, worker)
                worker.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Ingestion fault for {worker.address}: {e}")
                self.performance_monitor.increment("pipeline_faults")
            finally:
                worker.queue.task_done()

        self.logger.debug(f"Worker for {worker.address} finished")

    async def run(self, source: EventSource):
        """
        Feed all events of a source into the pipeline until it ends or the pipeline stops.

        Args:
            source: Event source to consume
        """
        self._sources.append(source)
        self.logger.info(f"Consuming events from source '{source.name}'")
        try:
            async for event in source.events():
                if not self._running:
                    break
                self.submit(event)
        finally:
            if source in self._sources:
                self._sources.remove(source)
        self.logger.info(f"Source '{source.name}' finished")

    # Event processing

    async def process(self, event: SensorEvent, worker: Optional[_AddressWorker] = None):
        """
        Handle one event under its address lock.

        Args:
            event: Event to handle
            worker: Worker the event came from; processing stops early once it is cancelled
        """
        async with self._address_lock(event.address):
            if worker is not None and worker.cancelled:
                return

            try:
                if isinstance(event, Notified):
                    await self._handle_notified(event, worker)
                elif isinstance(event, Connected):
                    await self._handle_connected(event)
                elif isinstance(event, Disconnected):
                    await self._handle_disconnected(event)
                elif isinstance(event, Discovered):
                    await self._call(self.registry.upsert_seen, event.address, int(event.received_at), None)
                else:
                    self.logger.warning(f"Ignoring unknown event {event!r}")
            except StoreTransactionError as e:
                self.store_failures += 1
                self.performance_monitor.increment("store_failures")
                self.logger.error(f"Registry update for {event.address} failed, event dropped: {e}")

    async def _handle_connected(self, event: Connected):
        current = self.registry.find(event.address)
        state = None
        if current is None or current.connection_state in (ConnectionState.DISCOVERED, ConnectionState.DISCONNECTED):
            state = ConnectionState.CONNECTED
        await self._call(self.registry.upsert_seen, event.address, int(event.received_at), state)

    async def _handle_disconnected(self, event: Disconnected):
        current = self.registry.find(event.address)
        state = None
        if current is not None and current.connection_state == ConnectionState.CONNECTED:
            state = ConnectionState.DISCONNECTED
        await self._call(self.registry.upsert_seen, event.address, int(event.received_at), state)

    async def _handle_notified(self, event: Notified, worker: Optional[_AddressWorker]):
        try:
            reading = decode(event.raw, event.address, event.received_at)
        except DecodeError as e:
            self.decode_errors += 1
            self.performance_monitor.increment("decode_errors")
            self.logger.warning(f"Dropping payload from {event.address}: {e}")
            return

        record = await self._call(self.registry.upsert_seen, event.address, int(event.received_at), None)
        if self._is_cancelled(worker):
            return

        if not await self._append_with_retry(reading, worker):
            return

        self.readings_stored += 1
        self.performance_monitor.increment("readings_stored")
        self.bridge.publish(reading, record.label)

    def _is_cancelled(self, worker: Optional[_AddressWorker]) -> bool:
        return worker is not None and worker.cancelled

    async def _append_with_retry(self, reading: Reading, worker: Optional[_AddressWorker]) -> bool:
        """
        Append a reading, retrying transient store failures with capped backoff.

        Returns:
            bool: True if the reading was stored
        """
        delay = self.store_retry_delay

        for attempt in range(1, self.store_retry_attempts + 1):
            try:
                await self._call(self.store.append, reading)
                return True
            except DuplicateOrOutOfOrderError as e:
                self.readings_rejected += 1
                self.performance_monitor.increment("readings_rejected")
                self.logger.debug(f"Dropping reading: {e}")
                return False
            except StoreTransactionError as e:
                if attempt >= self.store_retry_attempts:
                    self.store_failures += 1
                    self.performance_monitor.increment("store_failures")
                    self.logger.error(
                        f"Ingestion fault: reading {reading.address}@{reading.timestamp} dropped "
                        f"after {attempt} attempts: {e}"
                    )
                    return False

                self.logger.warning(f"Store append attempt {attempt} failed, retrying in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.store_retry_max_delay)
                if self._is_cancelled(worker):
                    return False

        return False

    # Management operations

    def list_sensors(self) -> List[SensorRecord]:
        return self.registry.list()

    def get_sensor(self, address: SensorAddress) -> SensorRecord:
        """
        Raises:
            SensorNotFoundError: If the address is unknown
        """
        return self.registry.get(address)

    async def rename(self, address: SensorAddress, new_label: Optional[str]) -> SensorRecord:
        """
        Change the label of a sensor; None or blank restores the default label.

        Raises:
            SensorNotFoundError: If the address is unknown
            InvalidLabelError: If the label is not acceptable
        """
        async with self._address_lock(address):
            return await self._call(self.registry.rename, address, new_label)

    async def forget(self, address: SensorAddress) -> SensorRecord:
        """
        Forget a sensor: purge its readings and metadata and stop its worker.

        Events already queued for the sensor are discarded. A later event from
        the same address starts over as a new sensor.

        Returns:
            SensorRecord: Final record, in the forgotten state

        Raises:
            SensorNotFoundError: If the address is unknown
            StoreTransactionError: If the purge fails; the sensor is kept then
        """
        async with self._address_lock(address):
            record = await self._call(self.registry.forget, address)
            self._cancel_worker(address)

        for source in list(self._sources):
            await source.disconnect(address)

        self.performance_monitor.increment("sensors_forgotten")
        return record

    def _cancel_worker(self, address: SensorAddress):
        worker = self._workers.pop(address, None)
        if worker is None:
            return

        worker.cancelled = True
        discarded = 0
        while True:
            try:
                worker.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            worker.queue.task_done()
            discarded += 1

        # Wake the worker if it is waiting for an event
        worker.queue.put_nowait(None)
        if discarded:
            self.logger.info(f"Discarded {discarded} queued events of {address}")

    def query_log(self, address: SensorAddress,
                  start: Optional[int] = None,
                  end: Optional[int] = None) -> Iterator[Reading]:
        """
        Stream stored readings of a sensor in ascending order.

        The query reads a snapshot of the store and does not wait for the
        sensor's ingestion.
        """
        return self.store.range_query(address, start, end)

    # Lifecycle

    async def join(self):
        """Wait until every queued event has been processed."""
        for worker in list(self._workers.values()):
            await worker.queue.join()

    async def stop(self, timeout: float = 5.0):
        """Stop all workers and release the store thread."""
        if not self._running:
            return
        self._running = False

        workers = list(self._workers.values())
        for worker in workers:
            worker.cancelled = True
            try:
                worker.queue.put_nowait(None)
            except asyncio.QueueFull:
                worker.task.cancel()

        tasks = [worker.task for worker in workers if worker.task is not None]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._workers.clear()
        self._executor.shutdown(wait=True)
        self.logger.info("Ingestion pipeline stopped")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'active_workers': len(self._workers),
            'queued_events': sum(worker.queue.qsize() for worker in self._workers.values()),
            'events_received': self.events_received,
            'events_dropped': self.events_dropped,
            'readings_stored': self.readings_stored,
            'readings_rejected': self.readings_rejected,
            'decode_errors': self.decode_errors,
            'store_failures': self.store_failures,
            'known_sensors': len(self.registry),
        }
