"""
Unit tests for the management HTTP API.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from unittest.mock import Mock

from weatherhub.api.app import create_app
from weatherhub.metadata.schema import ConnectionState, MAX_LABEL_LENGTH
from weatherhub.service.pipeline import IngestionPipeline
from weatherhub.storage.store import StoreTransactionError
from tests.utils.test_helpers import make_reading


ADDR = "AA:BB:CC:DD:EE:FF"


@pytest.fixture
def pipeline(mock_config, mock_logger, mock_performance_monitor, store, registry, mock_bridge):
    pipeline = IngestionPipeline(mock_config, mock_logger, mock_performance_monitor, store, registry, mock_bridge)
    yield pipeline
    asyncio.run(pipeline.stop())


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline)) as client:
        yield client


@pytest.fixture
def known_sensor(registry, store, sensor_address):
    registry.upsert_seen(sensor_address, 1000, ConnectionState.CONNECTED)
    for timestamp in (1000, 1060, 1120):
        store.append(make_reading(sensor_address, timestamp, pressure=101325))
    return sensor_address


class TestState:
    """Test sensor listing."""

    def test_empty(self, client):
        response = client.get("/api/state")
        assert response.status_code == 200
        assert response.json() == []

    def test_lists_sensors(self, client, known_sensor, registry, other_address):
        registry.upsert_seen(other_address, 5)

        response = client.get("/api/state")

        assert response.status_code == 200
        assert [entry['address'] for entry in response.json()] == ["11:22:33:44:55:66", ADDR]
        assert response.json()[1] == {
            'address': ADDR,
            'label': ADDR,
            'first_seen': 1000,
            'last_seen': 1000,
            'connection_state': "connected",
        }

    def test_get_sensor(self, client, known_sensor):
        response = client.get(f"/api/sensors/{ADDR.lower()}")
        assert response.status_code == 200
        assert response.json()['address'] == ADDR

    def test_get_unknown_sensor(self, client):
        assert client.get(f"/api/sensors/{ADDR}").status_code == 404

    def test_get_invalid_address(self, client):
        assert client.get("/api/sensors/not-a-mac").status_code == 422


class TestChangeLabel:
    """Test renaming over HTTP."""

    def test_rename(self, client, known_sensor, registry):
        response = client.put("/api/change_label", json={'addr': ADDR, 'new_label': "Garden"})

        assert response.status_code == 200
        assert response.json()['label'] == "Garden"
        assert registry.get(known_sensor).label == "Garden"

    def test_null_label_restores_default(self, client, known_sensor):
        client.put("/api/change_label", json={'addr': ADDR, 'new_label': "Garden"})
        response = client.put("/api/change_label", json={'addr': ADDR, 'new_label': None})

        assert response.status_code == 200
        assert response.json()['label'] == ADDR

    def test_unknown_sensor(self, client):
        response = client.put("/api/change_label", json={'addr': ADDR, 'new_label': "Garden"})
        assert response.status_code == 404

    def test_label_too_long(self, client, known_sensor):
        response = client.put("/api/change_label",
                              json={'addr': ADDR, 'new_label': "x" * (MAX_LABEL_LENGTH + 1)})
        assert response.status_code == 422

    def test_invalid_address(self, client):
        response = client.put("/api/change_label", json={'addr': "12:34", 'new_label': "Garden"})
        assert response.status_code == 422

    def test_store_failure(self, client, known_sensor, store):
        store.put_metadata = Mock(side_effect=StoreTransactionError("database is locked"))
        response = client.put("/api/change_label", json={'addr': ADDR, 'new_label': "Garden"})
        assert response.status_code == 503


class TestForget:
    """Test forgetting over HTTP."""

    def test_forget(self, client, known_sensor, store):
        response = client.request("DELETE", "/api/forget", json={'addr': ADDR})

        assert response.status_code == 200
        assert response.json()['connection_state'] == "forgotten"
        assert store.count_readings(known_sensor) == 0
        assert client.get("/api/state").json() == []

    def test_forget_twice(self, client, known_sensor):
        assert client.request("DELETE", "/api/forget", json={'addr': ADDR}).status_code == 200
        assert client.request("DELETE", "/api/forget", json={'addr': ADDR}).status_code == 404

    def test_store_failure_keeps_sensor(self, client, known_sensor, store):
        store.purge = Mock(side_effect=StoreTransactionError("disk I/O error"))

        response = client.request("DELETE", "/api/forget", json={'addr': ADDR})

        assert response.status_code == 503
        assert client.get(f"/api/sensors/{ADDR}").status_code == 200


class TestLog:
    """Test historical log queries."""

    def test_full_log(self, client, known_sensor):
        response = client.get("/api/log", params={'addr': ADDR})

        assert response.status_code == 200
        assert response.headers['content-type'].startswith("application/json")
        assert response.json() == [
            {'timestamp': 1000, 'temperature': 2150, 'humidity': 4500, 'pressure': 101325},
            {'timestamp': 1060, 'temperature': 2150, 'humidity': 4500, 'pressure': 101325},
            {'timestamp': 1120, 'temperature': 2150, 'humidity': 4500, 'pressure': 101325},
        ]

    def test_window(self, client, known_sensor):
        response = client.get("/api/log", params={'addr': ADDR, 'start': 1000, 'end': 1060})
        assert [entry['timestamp'] for entry in response.json()] == [1000, 1060]

    def test_absent_fields_are_null(self, client, store, other_address):
        store.append(make_reading(other_address, 10, temperature=None, humidity=3000))

        response = client.get("/api/log", params={'addr': str(other_address)})
        assert response.json() == [{'timestamp': 10, 'temperature': None, 'humidity': 3000, 'pressure': None}]

    def test_unknown_sensor_is_empty(self, client):
        response = client.get("/api/log", params={'addr': ADDR})
        assert response.status_code == 200
        assert response.json() == []

    def test_start_after_end(self, client, known_sensor):
        response = client.get("/api/log", params={'addr': ADDR, 'start': 2000, 'end': 1000})
        assert response.status_code == 422

    def test_missing_address(self, client):
        assert client.get("/api/log").status_code == 422


class TestStats:
    """Test runtime statistics."""

    def test_pipeline_stats(self, client, known_sensor):
        response = client.get("/api/stats")
        assert response.status_code == 200
        assert response.json()['pipeline']['known_sensors'] == 1

    def test_status_provider(self, pipeline):
        app = create_app(pipeline, status_provider=lambda: {'running': True})
        with TestClient(app) as client:
            assert client.get("/api/stats").json() == {'running': True}
