"""
Sensor registry: the live set of known sensors.
Write-through cache over the time-series store, which stays the system of record.
"""

import threading
from typing import Dict, List, Optional

from pydantic import ValidationError

from .schema import ConnectionState, SensorRecord, normalize_label
from ..ble.address import SensorAddress
from ..storage.store import TimeSeriesStore
from ..utils.logging import ProductionLogger


class RegistryError(Exception):
    """Base exception for registry operations."""
    pass


class SensorNotFoundError(RegistryError):
    """Address is not a known sensor."""

    def __init__(self, address: SensorAddress):
        super().__init__(f"Sensor {address} not found")
        self.address = address


class InvalidLabelError(RegistryError):
    """Requested label is not acceptable."""
    pass


class SensorRegistry:
    """
    Known sensors with their labels, liveness and connection state.

    Every mutation is written to the store before the cache is updated, so a
    failed store write leaves the cache untouched. Reads return copies. The
    lock only guards the cache; store writes run outside it, with writers
    serialized per address by the caller.
    """

    def __init__(self, store: TimeSeriesStore, logger: ProductionLogger):
        """
        Initialize the registry.

        Args:
            store: Opened time-series store
            logger: Logger instance
        """
        self.store = store
        self.logger = logger
        self._records: Dict[SensorAddress, SensorRecord] = {}
        self._lock = threading.RLock()

    def load(self) -> int:
        """
        Load all sensor records from the store, replacing the cache.

        Returns:
            int: Number of sensors loaded
        """
        records = self.store.list_metadata()
        with self._lock:
            self._records = {record.address: record for record in records}
        self.logger.info(f"Loaded {len(records)} sensors from store")
        return len(records)

    def __contains__(self, address: SensorAddress) -> bool:
        with self._lock:
            return address in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, address: SensorAddress) -> SensorRecord:
        """
        Get a copy of one sensor record.

        Raises:
            SensorNotFoundError: If the address is unknown
        """
        with self._lock:
            record = self._records.get(address)
            if record is None:
                raise SensorNotFoundError(address)
            return record.model_copy()

    def find(self, address: SensorAddress) -> Optional[SensorRecord]:
        """Like get(), but returns None for unknown addresses."""
        with self._lock:
            record = self._records.get(address)
            return record.model_copy() if record is not None else None

    def list(self) -> List[SensorRecord]:
        """Copies of all sensor records ordered by address."""
        with self._lock:
            return [self._records[address].model_copy() for address in sorted(self._records)]

    def _current(self, address: SensorAddress) -> Optional[SensorRecord]:
        with self._lock:
            return self._records.get(address)

    def _commit(self, record: SensorRecord) -> SensorRecord:
        # Store write happens outside the lock; callers serialize writers per address.
        self.store.put_metadata(record)
        with self._lock:
            self._records[record.address] = record
        return record.model_copy()

    def upsert_seen(self, address: SensorAddress, timestamp: int,
                    state: Optional[ConnectionState] = None) -> SensorRecord:
        """
        Record activity of a sensor, creating it when unknown.

        Args:
            address: Sensor address
            timestamp: Unix time of the activity
            state: New connection state, or None to keep the current one

        Returns:
            SensorRecord: Updated record

        Raises:
            StoreTransactionError: If the store write fails
        """
        current = self._current(address)

        if current is None:
            record = SensorRecord.new(address, timestamp)
            if state is not None:
                record = record.model_copy(update={'connection_state': state})
            self.logger.info(f"New sensor {address} ({record.connection_state.value})")
        else:
            update = {'last_seen': max(current.last_seen, timestamp)}
            if state is not None:
                update['connection_state'] = state
            record = current.model_copy(update=update)

        return self._commit(record)

    def rename(self, address: SensorAddress, new_label: Optional[str]) -> SensorRecord:
        """
        Change the label of a sensor. None or a blank label restores the default.

        Raises:
            SensorNotFoundError: If the address is unknown
            InvalidLabelError: If the label is too long
        """
        current = self._current(address)
        if current is None:
            raise SensorNotFoundError(address)

        try:
            label = normalize_label(address, new_label)
            record = SensorRecord(**{**dict(current), 'label': label})
        except (ValueError, ValidationError) as e:
            raise InvalidLabelError(str(e))

        record = self._commit(record)

        self.logger.info(f"Sensor {address} renamed to '{record.label}'")
        return record

    def forget(self, address: SensorAddress) -> SensorRecord:
        """
        Remove a sensor and all its readings.

        Returns:
            SensorRecord: Final record of the sensor, in the forgotten state

        Raises:
            SensorNotFoundError: If the address is unknown
            StoreTransactionError: If the purge fails; the sensor is kept then
        """
        current = self._current(address)
        if current is None:
            raise SensorNotFoundError(address)

        self.store.purge(address)
        with self._lock:
            self._records.pop(address, None)

        self.logger.info(f"Sensor {address} forgotten")
        return current.model_copy(update={'connection_state': ConnectionState.FORGOTTEN})
