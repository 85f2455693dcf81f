"""
Unit tests for the Bluetooth and demo event sources.
"""

import random

import pytest
from unittest.mock import AsyncMock, Mock, patch

from weatherhub.ble.address import SensorAddress
from weatherhub.ble.codec import (
    HUMIDITY_RANGE,
    PRESSURE_RANGE,
    TEMPERATURE_RANGE,
    Field,
    decode,
)
from weatherhub.ble.demo import DemoEventSource, FluctuatingSensor
from weatherhub.ble.events import Connected, Discovered, Notified
from weatherhub.ble.source import BleakEventSource
from tests.fixtures.sensor_data import SensorDataFixtures
from tests.mocks.mock_event_source import (
    MockAdvertisementData,
    MockBLEDevice,
    MockEventSource,
    drain_source,
)


SERVICE_UUID = "00000000-cc7a-482a-984a-7f2ed5b3e58f"


class TestQueuedEventSource:
    """Test the shared event queue behaviour."""

    @pytest.mark.asyncio
    async def test_events_end_after_stop(self, sensor_address):
        source = MockEventSource(events=[Discovered(sensor_address)])
        await source.stop()

        events = [event async for event in source.events()]
        assert events == [Discovered(sensor_address)]
        assert source.start_calls == 1

    @pytest.mark.asyncio
    async def test_emit_after_stop_ignored(self, sensor_address):
        source = MockEventSource()
        await source.stop()
        source.emit(Discovered(sensor_address))

        assert [event async for event in source.events()] == []
        assert source.events_emitted == 0

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        source = MockEventSource()
        await source.stop()
        await source.stop()
        assert source._queue.qsize() == 1


class TestBleakDetection:
    """Test advertisement handling of the Bluetooth source."""

    @pytest.fixture
    def source(self, mock_config, mock_logger, mock_performance_monitor):
        source = BleakEventSource(mock_config, mock_logger, mock_performance_monitor)
        source._connect_and_listen = AsyncMock()
        return source

    def _drain(self, source):
        events = []
        while not source._queue.empty():
            events.append(source._queue.get_nowait())
        return events

    @pytest.mark.asyncio
    async def test_service_uuid_advertisement(self, source, sensor_address):
        advertisement = MockAdvertisementData(service_uuids=[SERVICE_UUID.upper()])

        source._detection_callback(MockBLEDevice("aa:bb:cc:dd:ee:ff"), advertisement)

        assert self._drain(source) == [Discovered(sensor_address)]
        assert sensor_address in source._connections
        source._connect_and_listen.assert_called_once()

    @pytest.mark.asyncio
    async def test_manufacturer_data_becomes_notification(self, source, sensor_address):
        payload = SensorDataFixtures.build_payload(temperature=1850)
        advertisement = MockAdvertisementData(manufacturer_data={0xFFFF: payload})

        source._detection_callback(MockBLEDevice("AA:BB:CC:DD:EE:FF"), advertisement)
        source._detection_callback(MockBLEDevice("AA:BB:CC:DD:EE:FF"), advertisement)

        assert self._drain(source) == [
            Discovered(sensor_address),
            Notified(sensor_address, payload),
            Notified(sensor_address, payload),
        ]
        assert len(source._connections) == 1

    @pytest.mark.asyncio
    async def test_disconnect_allows_rediscovery(self, source, sensor_address):
        advertisement = MockAdvertisementData(service_uuids=[SERVICE_UUID])
        device = MockBLEDevice(str(sensor_address))

        source._detection_callback(device, advertisement)
        await source.disconnect(sensor_address)
        source._detection_callback(device, advertisement)

        assert self._drain(source) == [Discovered(sensor_address), Discovered(sensor_address)]

    @pytest.mark.asyncio
    async def test_no_events_after_stop(self, source, sensor_address):
        await source.stop()
        source._detection_callback(MockBLEDevice(str(sensor_address)),
                                   MockAdvertisementData(service_uuids=[SERVICE_UUID]))

        assert self._drain(source) == [None]

    @pytest.mark.asyncio
    async def test_connection_emits_notifications(self, mock_config, mock_logger, mock_performance_monitor, sensor_address):
        source = BleakEventSource(mock_config, mock_logger, mock_performance_monitor)
        # Scanner is not needed, the advertisement is injected below
        source._started = True
        clients = []

        def fake_client(device, timeout=None, disconnected_callback=None):
            client = Mock()
            client.is_connected = False
            client.disconnected_callback = disconnected_callback

            async def connect():
                client.is_connected = True

            async def start_notify(uuid, callback):
                client.notify_uuid = uuid
                callback(None, bytearray(SensorDataFixtures.build_payload(humidity=3300)))
                client.is_connected = False
                disconnected_callback(client)

            client.connect = connect
            client.start_notify = start_notify
            clients.append(client)
            return client

        with patch('weatherhub.ble.source.BleakClient', side_effect=fake_client):
            source._detection_callback(MockBLEDevice(str(sensor_address)),
                                       MockAdvertisementData(service_uuids=[SERVICE_UUID]))
            events = await drain_source(source, limit=4)
            await source.stop()

        assert events[0] == Discovered(sensor_address)
        assert events[1] == Connected(sensor_address)
        assert isinstance(events[2], Notified)
        assert decode(events[2].raw, sensor_address, 0).humidity == 3300
        assert clients[0].notify_uuid == mock_config.ble_notify_char_uuid


class TestFluctuatingSensor:
    """Test simulated sensor values."""

    def test_values_stay_in_valid_ranges(self, sensor_address):
        sensor = FluctuatingSensor(sensor_address, random.Random(42))

        for step in range(2000):
            reading = sensor.next_reading(step)
            assert TEMPERATURE_RANGE[0] <= reading.temperature <= TEMPERATURE_RANGE[1]
            assert HUMIDITY_RANGE[0] <= reading.humidity <= HUMIDITY_RANGE[1]
            assert PRESSURE_RANGE[0] <= reading.pressure <= PRESSURE_RANGE[1]

    def test_reading_has_all_fields(self, sensor_address):
        reading = FluctuatingSensor(sensor_address, random.Random(1)).next_reading(10)
        assert reading.fields_present == Field.TEMPERATURE | Field.HUMIDITY | Field.PRESSURE
        assert reading.timestamp == 10


class TestDemoEventSource:
    """Test the demo source."""

    @pytest.fixture
    def demo_config(self, mock_config):
        mock_config.demo_sensors = 2
        return mock_config

    def test_addresses(self, demo_config, mock_logger):
        source = DemoEventSource(demo_config, mock_logger, random.Random(0))
        assert source.addresses == [SensorAddress(0), SensorAddress(1)]

    @pytest.mark.asyncio
    async def test_emits_lifecycle_then_payloads(self, demo_config, mock_logger):
        source = DemoEventSource(demo_config, mock_logger, random.Random(0))

        events = await drain_source(source, limit=8)
        await source.stop()

        assert events[:4] == [
            Discovered(SensorAddress(0)),
            Connected(SensorAddress(0)),
            Discovered(SensorAddress(1)),
            Connected(SensorAddress(1)),
        ]
        notifications = [event for event in events[4:] if isinstance(event, Notified)]
        assert len(notifications) == 4
        for event in notifications:
            reading = decode(event.raw, event.address, 0)
            assert reading.fields_present == Field.TEMPERATURE | Field.HUMIDITY | Field.PRESSURE

    @pytest.mark.asyncio
    async def test_emit_readings_embeds_timestamp(self, demo_config, mock_logger):
        source = DemoEventSource(demo_config, mock_logger, random.Random(0))
        source.emit_readings(timestamp=1700000000)

        events = [source._queue.get_nowait() for _ in range(2)]
        assert [decode(event.raw, event.address, 0).timestamp for event in events] == [1700000000] * 2

    @pytest.mark.asyncio
    async def test_disconnect_resets_sensor(self, demo_config, mock_logger):
        source = DemoEventSource(demo_config, mock_logger, random.Random(0))
        address = SensorAddress(0)
        sensor = source.sensors[address]
        for step in range(10):
            sensor.next_reading(step)

        await source.disconnect(address)

        assert source.sensors[address] is not sensor
        assert source.sensors[address].temperature == 2000
