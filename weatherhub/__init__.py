"""
Weather station hub - BLE weather sensor collection and distribution.

Discovers battery powered BLE weather sensors, decodes their measurement
payloads, keeps a durable per-sensor history in an embedded database,
republishes live readings over MQTT and serves a small management API.
"""

__version__ = "1.0.0"
__description__ = "BLE weather sensor collection and distribution hub"
