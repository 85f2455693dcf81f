"""
Embedded time-series store for sensor readings and sensor metadata.
Backed by SQLite through SQLAlchemy Core; every mutation is a single transaction.
"""

import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Column, Integer, MetaData, PrimaryKeyConstraint, String, Table,
    create_engine, delete, event, func, select, text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..ble.address import SensorAddress
from ..ble.codec import Field, Reading
from ..metadata.schema import ConnectionState, SensorRecord
from ..utils.config import Config
from ..utils.logging import ProductionLogger, PerformanceMonitor


metadata = MetaData()

readings_table = Table(
    "readings",
    metadata,
    Column("address", Integer, nullable=False),
    Column("timestamp", Integer, nullable=False),
    Column("fields_present", Integer, nullable=False),
    Column("temperature", Integer, nullable=True),
    Column("humidity", Integer, nullable=True),
    Column("pressure", Integer, nullable=True),
    PrimaryKeyConstraint("address", "timestamp"),
)

sensors_table = Table(
    "sensors",
    metadata,
    Column("address", Integer, primary_key=True),
    Column("label", String(100), nullable=False),
    Column("first_seen", Integer, nullable=False),
    Column("last_seen", Integer, nullable=False),
    Column("connection_state", String(16), nullable=False),
)


class StoreError(Exception):
    """Base exception for store operations."""
    pass


class StoreCorruptedError(StoreError):
    """The database file cannot be opened or fails its integrity check."""
    pass


class StoreTransactionError(StoreError):
    """A transaction failed and was rolled back."""
    pass


class DuplicateOrOutOfOrderError(StoreError):
    """Reading timestamp is not newer than the last stored one for the sensor."""
    pass


class TimeSeriesStore:
    """
    Durable store of readings keyed by (address, timestamp) plus sensor metadata.

    The store is synchronous; the ingestion pipeline calls it from a single
    dedicated worker thread. Range queries may run on other threads and read
    from their own connection.
    """

    QUERY_BATCH_SIZE = 500

    def __init__(self, config: Config, logger: ProductionLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize the store. Nothing is opened until open() is called.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.db_path = Path(config.db_path)
        self._engine: Optional[Engine] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def _create_engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            future=True,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=FULL")
            cursor.close()

        return engine

    def open(self):
        """
        Open the database, creating the schema when missing.

        Raises:
            StoreCorruptedError: If the file is not a usable database
        """
        if self._engine is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = self._create_engine()

        try:
            with engine.connect() as conn:
                result = conn.execute(text("PRAGMA quick_check")).scalar()
            if result != "ok":
                raise StoreCorruptedError(f"Integrity check of {self.db_path} failed: {result}")
            metadata.create_all(engine)
        except (SQLAlchemyError, sqlite3.Error) as e:
            engine.dispose()
            raise StoreCorruptedError(f"Cannot open store {self.db_path}: {e}")
        except StoreCorruptedError:
            engine.dispose()
            raise

        self._engine = engine
        self.logger.info(f"Opened store at {self.db_path}")

    def close(self):
        """Release all database connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self.logger.info("Store closed")

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise StoreError("Store is not open")
        return self._engine

    @staticmethod
    def _row_to_reading(row: Any) -> Reading:
        return Reading(
            address=SensorAddress(row.address),
            timestamp=row.timestamp,
            fields_present=Field(row.fields_present),
            temperature=row.temperature,
            humidity=row.humidity,
            pressure=row.pressure,
        )

    @staticmethod
    def _row_to_record(row: Any) -> SensorRecord:
        return SensorRecord(
            address=SensorAddress(row.address),
            label=row.label,
            first_seen=row.first_seen,
            last_seen=row.last_seen,
            connection_state=ConnectionState(row.connection_state),
        )

    def append(self, reading: Reading):
        """
        Append a reading. Durable once this returns.

        Args:
            reading: Reading to store

        Raises:
            DuplicateOrOutOfOrderError: If the timestamp is not newer than the last stored one
            StoreTransactionError: If the transaction fails
        """
        engine = self._require_engine()
        address = reading.address.value

        with self.performance_monitor.measure_time("store_append"):
            try:
                with engine.begin() as conn:
                    last = conn.execute(
                        select(func.max(readings_table.c.timestamp))
                        .where(readings_table.c.address == address)
                    ).scalar()

                    if last is not None and reading.timestamp <= last:
                        raise DuplicateOrOutOfOrderError(
                            f"Reading {reading.timestamp} for {reading.address} is not newer than {last}"
                        )

                    conn.execute(
                        readings_table.insert().values(
                            address=address,
                            timestamp=reading.timestamp,
                            fields_present=int(reading.fields_present),
                            temperature=reading.temperature,
                            humidity=reading.humidity,
                            pressure=reading.pressure,
                        )
                    )
            except SQLAlchemyError as e:
                raise StoreTransactionError(f"Failed to append reading for {reading.address}: {e}")

        self.logger.debug(f"Stored reading {reading.address}@{reading.timestamp}")

    def last_timestamp(self, address: SensorAddress) -> Optional[int]:
        """Timestamp of the newest stored reading, or None."""
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                return conn.execute(
                    select(func.max(readings_table.c.timestamp))
                    .where(readings_table.c.address == address.value)
                ).scalar()
        except SQLAlchemyError as e:
            raise StoreTransactionError(f"Failed to read last timestamp for {address}: {e}")

    def range_query(self, address: SensorAddress,
                    start: Optional[int] = None,
                    end: Optional[int] = None) -> Iterator[Reading]:
        """
        Stream readings of a sensor in ascending timestamp order.

        Bounds are inclusive; None leaves that side open. The generator reads
        from a single statement, so it sees one consistent snapshot.

        Args:
            address: Sensor to query
            start: Lowest timestamp to include
            end: Highest timestamp to include

        Yields:
            Reading: Stored readings

        Raises:
            StoreTransactionError: If the query fails
        """
        engine = self._require_engine()

        stmt = select(readings_table).where(readings_table.c.address == address.value)
        if start is not None:
            stmt = stmt.where(readings_table.c.timestamp >= start)
        if end is not None:
            stmt = stmt.where(readings_table.c.timestamp <= end)
        stmt = stmt.order_by(readings_table.c.timestamp)

        try:
            with engine.connect() as conn:
                result = conn.execution_options(
                    stream_results=True, yield_per=self.QUERY_BATCH_SIZE
                ).execute(stmt)
                for row in result:
                    yield self._row_to_reading(row)
        except SQLAlchemyError as e:
            raise StoreTransactionError(f"Range query for {address} failed: {e}")

    def count_readings(self, address: Optional[SensorAddress] = None) -> int:
        """Number of stored readings, for one sensor or all of them."""
        engine = self._require_engine()
        stmt = select(func.count()).select_from(readings_table)
        if address is not None:
            stmt = stmt.where(readings_table.c.address == address.value)
        try:
            with engine.connect() as conn:
                return conn.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            raise StoreTransactionError(f"Failed to count readings: {e}")

    def put_metadata(self, record: SensorRecord):
        """
        Insert or replace the metadata of a sensor.

        Raises:
            StoreTransactionError: If the transaction fails
        """
        engine = self._require_engine()
        values = {
            'address': record.address.value,
            'label': record.label,
            'first_seen': record.first_seen,
            'last_seen': record.last_seen,
            'connection_state': record.connection_state.value,
        }
        stmt = sqlite_insert(sensors_table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[sensors_table.c.address],
            set_={key: value for key, value in values.items() if key != 'address'},
        )

        try:
            with engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreTransactionError(f"Failed to store metadata for {record.address}: {e}")

    def get_metadata(self, address: SensorAddress) -> Optional[SensorRecord]:
        """Stored metadata of a sensor, or None."""
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                row = conn.execute(
                    select(sensors_table).where(sensors_table.c.address == address.value)
                ).first()
        except SQLAlchemyError as e:
            raise StoreTransactionError(f"Failed to read metadata for {address}: {e}")
        return self._row_to_record(row) if row is not None else None

    def list_metadata(self) -> List[SensorRecord]:
        """All stored sensor metadata ordered by address."""
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                rows = conn.execute(select(sensors_table).order_by(sensors_table.c.address)).all()
        except SQLAlchemyError as e:
            raise StoreTransactionError(f"Failed to list sensor metadata: {e}")
        return [self._row_to_record(row) for row in rows]

    def purge(self, address: SensorAddress) -> int:
        """
        Delete all readings and the metadata of a sensor in one transaction.

        Returns:
            int: Number of readings removed

        Raises:
            StoreTransactionError: If the transaction fails; nothing is removed then
        """
        engine = self._require_engine()
        try:
            with engine.begin() as conn:
                result = conn.execute(
                    delete(readings_table).where(readings_table.c.address == address.value)
                )
                removed = result.rowcount or 0
                conn.execute(delete(sensors_table).where(sensors_table.c.address == address.value))
        except SQLAlchemyError as e:
            raise StoreTransactionError(f"Failed to purge {address}: {e}")

        self.logger.info(f"Purged {address}: {removed} readings removed")
        return removed

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'db_path': str(self.db_path),
            'open': self.is_open,
            'readings': self.count_readings() if self.is_open else 0,
        }
