"""
Bluetooth device addresses.
"""

import re
from dataclasses import dataclass
from typing import Union


_HEX_ADDRESS = re.compile(r'^[0-9A-F]{12}$')


@dataclass(frozen=True, order=True)
class SensorAddress:
    """
    48-bit link-layer address of a sensor.

    Instances are immutable, hashable and totally ordered by their numeric
    value. ``str()`` gives the canonical upper-case colon separated form.
    """
    value: int

    def __post_init__(self):
        if not isinstance(self.value, int) or not 0 <= self.value < (1 << 48):
            raise ValueError(f"Address value out of range: {self.value!r}")

    @classmethod
    def parse(cls, address: Union[str, 'SensorAddress']) -> 'SensorAddress':
        """
        Parse an address from text.

        Accepts ``AA:BB:CC:DD:EE:FF``, ``aa-bb-cc-dd-ee-ff`` and ``AABBCCDDEEFF``.

        Raises:
            ValueError: If the text is not a valid address
        """
        if isinstance(address, SensorAddress):
            return address
        if not isinstance(address, str):
            raise ValueError(f"Invalid address: {address!r}")

        text = address.strip().upper()
        groups = re.split(r'[:\-]', text)
        if len(groups) == 6:
            if not all(len(group) == 2 for group in groups):
                raise ValueError(f"Invalid address: {address}")
            text = ''.join(groups)
        elif len(groups) != 1:
            raise ValueError(f"Invalid address: {address}")

        if not _HEX_ADDRESS.match(text):
            raise ValueError(f"Invalid address: {address}")

        return cls(int(text, 16))

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SensorAddress':
        """Build an address from its 6 byte big-endian representation."""
        if len(data) != 6:
            raise ValueError(f"Address must be 6 bytes, got {len(data)}")
        return cls(int.from_bytes(data, 'big'))

    def to_bytes(self) -> bytes:
        return self.value.to_bytes(6, 'big')

    def __str__(self) -> str:
        raw = f"{self.value:012X}"
        return ':'.join(raw[i:i + 2] for i in range(0, 12, 2))

    def __repr__(self) -> str:
        return f"SensorAddress('{self}')"
