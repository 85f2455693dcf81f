"""
Pytest configuration and shared fixtures for weather station hub tests.
Provides common test fixtures, mock objects, and test utilities.
"""

import pytest
from pathlib import Path
from unittest.mock import Mock, MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from weatherhub.ble.address import SensorAddress
from weatherhub.metadata.registry import SensorRegistry
from weatherhub.mqtt.bridge import MqttBridge
from weatherhub.storage.store import TimeSeriesStore
from weatherhub.utils.config import Config
from weatherhub.utils.logging import ProductionLogger, PerformanceMonitor


def build_mock_config(tmp_path: Path) -> Mock:
    """Mock configuration with fast timings and a temporary database."""
    config = Mock(spec=Config)

    # Storage and API
    config.db_path = tmp_path / "weatherhub.db"
    config.api_enabled = False
    config.host = "127.0.0.1"
    config.port = 8080

    # MQTT configuration (disabled unless a test sets a URL)
    config.mqtt_server_url = None
    config.mqtt_cert_file = None
    config.mqtt_client_id = "test-hub"
    config.mqtt_keepalive = 60
    config.mqtt_topic_prefix = "sensors/weatherstation"
    config.mqtt_qos = 0
    config.mqtt_buffer_size = 10
    config.mqtt_reconnect_min_delay = 0.01
    config.mqtt_reconnect_max_delay = 0.05

    # BLE configuration
    config.ble_enabled = False
    config.ble_adapter = "auto"
    config.ble_service_uuid = "00000000-cc7a-482a-984a-7f2ed5b3e58f"
    config.ble_notify_char_uuid = "00000000-8e22-4541-9d4c-21edae82ed19"
    config.ble_manufacturer_id = 0xFFFF
    config.ble_connect_timeout = 1.0
    config.ble_retry_delay = 0.01
    config.ble_reconnect_max_delay = 0.05

    # Demo source
    config.demo_sensors = 0
    config.demo_interval = 0.01

    # Pipeline
    config.pipeline_queue_size = 16
    config.store_retry_attempts = 3
    config.store_retry_delay = 0.01
    config.store_retry_max_delay = 0.02
    config.stats_log_interval = 60

    # Logging configuration
    config.log_level = "DEBUG"
    config.log_dir = tmp_path / "logs"
    config.log_max_file_size = 1024 * 1024  # 1MB
    config.log_backup_count = 2
    config.log_enable_console = False
    config.log_enable_syslog = False
    config.log_enable_file = False

    return config


def build_mock_performance_monitor() -> Mock:
    monitor = Mock(spec=PerformanceMonitor)
    monitor.record_metric = Mock()
    monitor.increment = Mock()
    monitor.measure_time = Mock()
    monitor.get_metrics = Mock(return_value={})

    # Mock the context manager for measure_time
    mock_context = MagicMock()
    mock_context.__enter__ = Mock(return_value=mock_context)
    mock_context.__exit__ = Mock(return_value=None)
    monitor.measure_time.return_value = mock_context

    return monitor


@pytest.fixture
def mock_config(tmp_path):
    """Create a mock configuration for testing."""
    return build_mock_config(tmp_path)


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock(spec=ProductionLogger)
    logger.debug = Mock()
    logger.info = Mock()
    logger.warning = Mock()
    logger.error = Mock()
    logger.critical = Mock()
    logger.get_logger = Mock(return_value=logger)
    return logger


@pytest.fixture
def mock_performance_monitor():
    """Create a mock performance monitor for testing."""
    return build_mock_performance_monitor()


@pytest.fixture
def store(mock_config, mock_logger, mock_performance_monitor):
    """Opened store on a temporary database."""
    store = TimeSeriesStore(mock_config, mock_logger, mock_performance_monitor)
    store.open()
    yield store
    store.close()


@pytest.fixture
def registry(store, mock_logger):
    """Registry loaded from the temporary store."""
    registry = SensorRegistry(store, mock_logger)
    registry.load()
    return registry


@pytest.fixture
def mock_bridge():
    """Bridge stand-in recording published readings."""
    bridge = Mock(spec=MqttBridge)
    bridge.publish = Mock()
    bridge.buffered = 0
    return bridge


@pytest.fixture
def sensor_address():
    return SensorAddress.parse("AA:BB:CC:DD:EE:FF")


@pytest.fixture
def other_address():
    return SensorAddress.parse("11:22:33:44:55:66")


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "requires_bluetooth: mark test as requiring Bluetooth hardware"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

        if "continuous" in item.name or "long" in item.name:
            item.add_marker(pytest.mark.slow)
