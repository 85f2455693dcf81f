"""
Pydantic schemas for sensor metadata.
Defines the structure and validation rules for sensor records.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..ble.address import SensorAddress


MAX_LABEL_LENGTH = 100


class ConnectionState(str, Enum):
    """Lifecycle state of a sensor as seen by the hub."""
    DISCOVERED = "discovered"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FORGOTTEN = "forgotten"


class SensorRecord(BaseModel):
    """Metadata for a single sensor."""
    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    address: SensorAddress = Field(..., description="Link-layer address of the sensor")
    label: str = Field(..., min_length=1, max_length=MAX_LABEL_LENGTH, description="Human-readable sensor name")
    first_seen: int = Field(..., ge=0, description="Unix time the sensor was first seen")
    last_seen: int = Field(..., ge=0, description="Unix time of the latest event from the sensor")
    connection_state: ConnectionState = Field(ConnectionState.DISCOVERED, description="Current connection state")

    @field_validator('address', mode='before')
    @classmethod
    def parse_address(cls, v):
        """Accept addresses in text form."""
        return SensorAddress.parse(v)

    @field_validator('label', mode='before')
    @classmethod
    def label_must_not_be_empty(cls, v):
        """Validate that the label is not blank."""
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError('Sensor label cannot be empty')
        return v

    @classmethod
    def new(cls, address: SensorAddress, seen_at: int) -> 'SensorRecord':
        """Create the record of a newly discovered sensor, labelled with its address."""
        return cls(
            address=address,
            label=default_label(address),
            first_seen=seen_at,
            last_seen=seen_at,
            connection_state=ConnectionState.DISCOVERED,
        )

    def to_api_dict(self) -> dict:
        """JSON friendly representation."""
        return {
            'address': str(self.address),
            'label': self.label,
            'first_seen': self.first_seen,
            'last_seen': self.last_seen,
            'connection_state': self.connection_state.value,
        }


def default_label(address: SensorAddress) -> str:
    """Label used until a sensor is renamed."""
    return str(address)


def normalize_label(address: SensorAddress, label: Optional[str]) -> str:
    """
    Resolve a requested label.

    Args:
        address: Sensor the label is for
        label: Requested label; None or blank resets to the default

    Returns:
        str: Label to store

    Raises:
        ValueError: If the label is too long
    """
    if label is None or not label.strip():
        return default_label(address)
    label = label.strip()
    if len(label) > MAX_LABEL_LENGTH:
        raise ValueError(f"Sensor label cannot exceed {MAX_LABEL_LENGTH} characters")
    return label
