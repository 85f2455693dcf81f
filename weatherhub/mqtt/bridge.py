"""
MQTT distribution bridge.
Republishes stored readings to a broker with buffering and reconnect logic.
"""

import asyncio
import json
import ssl
from collections import deque
from typing import Any, Deque, Dict, Optional, Tuple
from urllib.parse import urlparse

import aiomqtt

from ..ble.codec import Reading
from ..utils.config import Config, ConfigurationError
from ..utils.logging import ProductionLogger, PerformanceMonitor


DEFAULT_PORTS = {'mqtt': 1883, 'mqtts': 8883}


class BridgeError(Exception):
    """Base exception for bridge operations."""
    pass


class BridgeUnavailableError(BridgeError):
    """Broker is unreachable or the connection was lost."""
    pass


class MqttBridge:
    """
    Fire-and-forget publisher of readings.

    publish() only enqueues; a single task owns the broker connection and
    drains the buffer. The buffer is bounded and drops the oldest message
    when full. A message that fails to publish goes back to the front of the
    buffer and the connection is re-established with capped exponential
    backoff.
    """

    def __init__(self, config: Config, logger: ProductionLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize the bridge.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance

        Raises:
            ConfigurationError: If the broker URL is invalid
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.topic_prefix = config.mqtt_topic_prefix
        self.client_id = config.mqtt_client_id
        self.keepalive = config.mqtt_keepalive
        self.qos = config.mqtt_qos
        self.cert_file = config.mqtt_cert_file
        self.reconnect_min_delay = config.mqtt_reconnect_min_delay
        self.reconnect_max_delay = config.mqtt_reconnect_max_delay
        self.buffer_size = config.mqtt_buffer_size

        self._connect_options = self._parse_url(config.mqtt_server_url)
        self.enabled = self._connect_options is not None

        self._buffer: Deque[Tuple[str, str]] = deque()
        self._wakeup = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.connected = False

        # Statistics
        self.messages_published = 0
        self.messages_dropped = 0
        self.connection_failures = 0

        if self.enabled:
            self.logger.info(
                f"MQTT bridge configured for {self._connect_options['hostname']}:{self._connect_options['port']}"
            )
        else:
            self.logger.info("MQTT_SERVER_URL not set, distribution disabled")

    @staticmethod
    def _parse_url(url: Optional[str]) -> Optional[Dict[str, Any]]:
        if url is None:
            return None

        parsed = urlparse(url)
        if parsed.scheme not in DEFAULT_PORTS or not parsed.hostname:
            raise ConfigurationError(f"Invalid MQTT server URL: {url}")

        return {
            'scheme': parsed.scheme,
            'hostname': parsed.hostname,
            'port': parsed.port or DEFAULT_PORTS[parsed.scheme],
            'username': parsed.username or None,
            'password': parsed.password or None,
        }

    def topic_for(self, reading: Reading) -> str:
        return f"{self.topic_prefix}/{reading.address}"

    @staticmethod
    def build_payload(reading: Reading, label: Optional[str] = None) -> str:
        """JSON payload with the present fields of a reading and the sensor label."""
        data = reading.to_dict()
        data['label'] = label if label is not None else str(reading.address)
        return json.dumps(data)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def publish(self, reading: Reading, label: Optional[str] = None):
        """
        Queue a reading for distribution. Never blocks, never raises.

        Args:
            reading: Stored reading
            label: Sensor label at publish time
        """
        if not self.enabled:
            return

        if len(self._buffer) >= self.buffer_size:
            self._buffer.popleft()
            self.messages_dropped += 1
            self.performance_monitor.increment("mqtt_messages_dropped")
            self.logger.warning(f"MQTT buffer full ({self.buffer_size}), dropped oldest message")

        self._buffer.append((self.topic_for(reading), self.build_payload(reading, label)))
        self._wakeup.set()

    def _create_client(self) -> aiomqtt.Client:
        options = self._connect_options
        tls_context = None
        if options['scheme'] == 'mqtts':
            tls_context = ssl.create_default_context(
                cafile=str(self.cert_file) if self.cert_file else None
            )

        return aiomqtt.Client(
            hostname=options['hostname'],
            port=options['port'],
            username=options['username'],
            password=options['password'],
            identifier=self.client_id,
            keepalive=self.keepalive,
            tls_context=tls_context,
        )

    async def _drain(self, client: aiomqtt.Client):
        """
        Publish buffered messages until stopped.

        Raises:
            BridgeUnavailableError: If a publish fails; the message is kept
        """
        while self._running:
            if not self._buffer:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            topic, payload = self._buffer.popleft()
            try:
                await client.publish(topic, payload=payload, qos=self.qos)
            except aiomqtt.MqttError as e:
                self._buffer.appendleft((topic, payload))
                raise BridgeUnavailableError(f"Publish to {topic} failed: {e}")

            self.messages_published += 1
            self.performance_monitor.increment("mqtt_messages_published")
            self.logger.debug(f"Published {topic}")

    async def run(self):
        """Own the broker connection until stop() is called."""
        delay = self.reconnect_min_delay

        while self._running:
            try:
                async with self._create_client() as client:
                    self.connected = True
                    delay = self.reconnect_min_delay
                    self.logger.info(f"Connected to MQTT broker {self._connect_options['hostname']}")
                    await self._drain(client)
            except (aiomqtt.MqttError, BridgeUnavailableError) as e:
                self.connection_failures += 1
                self.performance_monitor.increment("mqtt_connection_failures")
                self.logger.warning(f"MQTT broker unavailable: {e}")
            except OSError as e:
                self.connection_failures += 1
                self.logger.error(f"MQTT connection setup failed: {e}")
            finally:
                self.connected = False

            if not self._running:
                break

            self.logger.info(f"Reconnecting to MQTT broker in {delay:.1f}s ({len(self._buffer)} messages buffered)")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnect_max_delay)

        self.logger.info("MQTT bridge stopped")

    def start(self) -> Optional[asyncio.Task]:
        """Start the connection task. Returns None when distribution is disabled."""
        if not self.enabled:
            return None
        if self._task is not None and not self._task.done():
            return self._task

        self._running = True
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self, timeout: float = 5.0):
        """Stop the connection task, disconnecting cleanly when possible."""
        if self._task is None:
            return

        self._running = False
        self._wakeup.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("MQTT bridge did not stop in time, cancelled")
        except asyncio.CancelledError:
            pass
        self._task = None

        if self._buffer:
            self.logger.warning(f"{len(self._buffer)} MQTT messages not delivered at shutdown")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'connected': self.connected,
            'buffered': len(self._buffer),
            'published': self.messages_published,
            'dropped': self.messages_dropped,
            'connection_failures': self.connection_failures,
        }
