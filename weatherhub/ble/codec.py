"""
Weather station payload codec.

Decodes the binary payload a sensor broadcasts or notifies into a Reading.

Payload layout (little-endian)::

    flags        uint8
    timestamp    uint32   unix seconds          if TIMESTAMP
    temperature  int16    0.01 degC             if TEMPERATURE
    humidity     uint16   0.01 %RH              if HUMIDITY
    pressure     uint32   Pa                    if PRESSURE
                 uint16   Pa - 50000            if PRESSURE and PRESSURE_COMPACT

One Pa is 0.01 hPa, so the pressure value is already the hPa x100 figure.
Bytes past the announced fields are ignored.
"""

import struct
from dataclasses import dataclass
from enum import IntFlag
from typing import Optional

from .address import SensorAddress


class Field(IntFlag):
    """Measurement fields carried by a reading."""
    NONE = 0
    TEMPERATURE = 0x01
    HUMIDITY = 0x02
    PRESSURE = 0x04


# Wire flag bits beyond the measurement fields
FLAG_PRESSURE_COMPACT = 0x08
FLAG_TIMESTAMP = 0x10
FLAG_RESERVED = 0xE0

MEASUREMENT_FLAGS = int(Field.TEMPERATURE | Field.HUMIDITY | Field.PRESSURE)

PRESSURE_COMPACT_OFFSET = 50000

# Valid ranges, fixed-point x100
TEMPERATURE_RANGE = (-4000, 8500)   # -40.00 .. 85.00 degC
HUMIDITY_RANGE = (0, 10000)         # 0.00 .. 100.00 %RH
PRESSURE_RANGE = (30000, 110000)    # 300.00 .. 1100.00 hPa


class DecodeError(Exception):
    """Base exception for payload decoding."""
    pass


class TruncatedPayloadError(DecodeError):
    """Payload is shorter than its flags announce."""
    pass


class UnknownFlagsError(DecodeError):
    """Payload flags are reserved or inconsistent."""
    pass


class OutOfRangeError(DecodeError):
    """A decoded value is outside the physically valid range."""
    pass


@dataclass(frozen=True)
class Reading:
    """One decoded measurement of a sensor. Absent fields are None."""
    address: SensorAddress
    timestamp: int
    fields_present: Field
    temperature: Optional[int] = None  # 0.01 degC
    humidity: Optional[int] = None     # 0.01 %RH
    pressure: Optional[int] = None     # 0.01 hPa

    def has(self, field: Field) -> bool:
        return bool(self.fields_present & field)

    def to_dict(self) -> dict:
        """Present fields only, keyed by name."""
        data = {'address': str(self.address), 'timestamp': self.timestamp}
        if self.has(Field.TEMPERATURE):
            data['temperature'] = self.temperature
        if self.has(Field.HUMIDITY):
            data['humidity'] = self.humidity
        if self.has(Field.PRESSURE):
            data['pressure'] = self.pressure
        return data


class _Cursor:
    """Sequential reader over a payload."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, fmt: str, what: str):
        size = struct.calcsize(fmt)
        if self.offset + size > len(self.data):
            raise TruncatedPayloadError(
                f"Payload truncated reading {what}: need {self.offset + size} bytes, got {len(self.data)}"
            )
        value = struct.unpack_from(fmt, self.data, self.offset)[0]
        self.offset += size
        return value


def _check_range(name: str, value: int, bounds: tuple) -> int:
    low, high = bounds
    if not low <= value <= high:
        raise OutOfRangeError(f"{name} {value} outside valid range {low}..{high}")
    return value


def decode(raw: bytes, address: SensorAddress, received_at: float) -> Reading:
    """
    Decode a sensor payload.

    Args:
        raw: Payload bytes as received
        address: Sensor the payload came from
        received_at: Reception time in unix seconds, used when the payload
            carries no timestamp of its own

    Returns:
        Reading: Decoded reading

    Raises:
        TruncatedPayloadError: If the payload is shorter than announced
        UnknownFlagsError: If reserved or inconsistent flags are set
        OutOfRangeError: If a value is outside its valid range
    """
    if not raw:
        raise TruncatedPayloadError("Empty payload")

    flags = raw[0]
    if flags & FLAG_RESERVED:
        raise UnknownFlagsError(f"Reserved flag bits set: 0x{flags:02X}")
    if flags & FLAG_PRESSURE_COMPACT and not flags & Field.PRESSURE:
        raise UnknownFlagsError(f"Compact pressure flag without pressure: 0x{flags:02X}")
    if not flags & MEASUREMENT_FLAGS:
        raise UnknownFlagsError(f"No measurement fields announced: 0x{flags:02X}")

    cursor = _Cursor(raw)
    cursor.offset = 1

    if flags & FLAG_TIMESTAMP:
        timestamp = cursor.take('<I', 'timestamp')
    else:
        timestamp = int(received_at)

    temperature = humidity = pressure = None

    if flags & Field.TEMPERATURE:
        temperature = _check_range('temperature', cursor.take('<h', 'temperature'), TEMPERATURE_RANGE)

    if flags & Field.HUMIDITY:
        humidity = _check_range('humidity', cursor.take('<H', 'humidity'), HUMIDITY_RANGE)

    if flags & Field.PRESSURE:
        if flags & FLAG_PRESSURE_COMPACT:
            pascal = cursor.take('<H', 'pressure') + PRESSURE_COMPACT_OFFSET
        else:
            pascal = cursor.take('<I', 'pressure')
        pressure = _check_range('pressure', pascal, PRESSURE_RANGE)

    return Reading(
        address=address,
        timestamp=timestamp,
        fields_present=Field(flags & MEASUREMENT_FLAGS),
        temperature=temperature,
        humidity=humidity,
        pressure=pressure,
    )


def encode(reading: Reading, compact_pressure: bool = False, include_timestamp: bool = True) -> bytes:
    """
    Encode a reading into the payload format understood by decode().

    Args:
        reading: Reading to encode
        compact_pressure: Use the 2 byte pressure representation
        include_timestamp: Embed the reading timestamp in the payload

    Raises:
        ValueError: If a value cannot be represented
    """
    flags = int(reading.fields_present) & MEASUREMENT_FLAGS
    if include_timestamp:
        flags |= FLAG_TIMESTAMP
    if compact_pressure and reading.has(Field.PRESSURE):
        flags |= FLAG_PRESSURE_COMPACT

    parts = [struct.pack('<B', flags)]
    try:
        if include_timestamp:
            parts.append(struct.pack('<I', reading.timestamp))
        if reading.has(Field.TEMPERATURE):
            parts.append(struct.pack('<h', reading.temperature))
        if reading.has(Field.HUMIDITY):
            parts.append(struct.pack('<H', reading.humidity))
        if reading.has(Field.PRESSURE):
            if compact_pressure:
                parts.append(struct.pack('<H', reading.pressure - PRESSURE_COMPACT_OFFSET))
            else:
                parts.append(struct.pack('<I', reading.pressure))
    except struct.error as e:
        raise ValueError(f"Reading cannot be encoded: {e}")

    return b''.join(parts)
