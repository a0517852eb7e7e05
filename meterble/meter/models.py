"""Core data models for meter readings and BLE identities."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

from bleak.uuids import normalize_uuid_str

# Advertised service UUIDs used as the scan filter
SCAN_SERVICE_UUIDS = (
    normalize_uuid_str("000d"),
    normalize_uuid_str("fd3d"),
)

COMMUNICATION_SERVICE_UUID = "cba20d00-224d-11e6-9fb8-0002a5d5c51b"
WRITE_CHARACTERISTIC_UUID = "cba20002-224d-11e6-9fb8-0002a5d5c51b"
NOTIFY_CHARACTERISTIC_UUID = "cba20003-224d-11e6-9fb8-0002a5d5c51b"

# "Read display mode and value"
READ_DISPLAY_COMMAND = bytes([0x57, 0x0F, 0x31, 0x00])


def normalize_uuid(uuid: Any) -> str:
    """Canonical lowercase 128-bit string form of a UUID.

    Accepts 16-bit / 32-bit short forms ("fd3d"), full strings in any case,
    and objects (uuid.UUID, bleak attributes) whose str() is a UUID.
    """
    value = getattr(uuid, "uuid", uuid)
    return normalize_uuid_str(str(value))


class DeviceIdentity(str, Enum):
    """Advertised peripheral names this package understands."""
    BOT = "Bot"
    REMOTE = "Remote"
    HUB = "Hub"
    WO_SENSOR_TH = "WoSensorTH"
    WO_IO_SENSOR_TH = "WoIOSensorTH"

    @classmethod
    def match(cls, name: Optional[str]) -> Optional["DeviceIdentity"]:
        """Exact, case-sensitive lookup of an advertised name."""
        if not name:
            return None
        for member in cls:
            if member.value == name:
                return member
        return None


class RadioState(Enum):
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


class ScanMode(Enum):
    """Whether discovered meters are only observed or also connected to."""
    ADVERTISEMENT = "advertisement"
    CONNECT = "connect"


class WriteMode(Enum):
    WITH_RESPONSE = "with_response"
    WITHOUT_RESPONSE = "without_response"


class ConnectionState(Enum):
    IDLE = "idle"
    POWERED_OFF = "powered_off"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCOVERING_SERVICE = "discovering_service"
    DISCOVERING_CHARACTERISTICS = "discovering_characteristics"
    SUBSCRIBING = "subscribing"
    AWAITING_NOTIFICATION = "awaiting_notification"
    DISCONNECTING = "disconnecting"


_TEMPERATURE_LIMIT = 127 + 1.5


@dataclass(frozen=True)
class Reading:
    """A decoded meter reading.

    Temperature and humidity travel together: a reading either has both or,
    for the compact service-data variant, neither (battery only).
    """
    temperature: Optional[float] = None
    humidity: Optional[int] = None
    battery: Optional[int] = None

    def __post_init__(self):
        if (self.temperature is None) != (self.humidity is None):
            raise ValueError("temperature and humidity must be decoded together")
        if not self.has_meter and self.battery is None:
            raise ValueError("reading carries no values")
        if self.humidity is not None and not 0 <= self.humidity <= 0x7F:
            raise ValueError(f"humidity out of range: {self.humidity}")
        if self.battery is not None and not 0 <= self.battery <= 0x7F:
            raise ValueError(f"battery out of range: {self.battery}")
        if self.temperature is not None and abs(self.temperature) > _TEMPERATURE_LIMIT:
            raise ValueError(f"temperature out of range: {self.temperature}")

    @property
    def has_meter(self) -> bool:
        """True when temperature and humidity are present."""
        return self.temperature is not None


@dataclass(frozen=True)
class DiscoveryEvent:
    """A scan result as delivered by the Scanner capability.

    ``service_data`` keeps the order the radio stack reported the entries in.
    ``manufacturer_data`` is the full record including the two-byte company id.
    """
    handle: str
    name: Optional[str]
    service_data: List[Tuple[str, bytes]] = field(default_factory=list)
    manufacturer_data: Optional[bytes] = None
    rssi: Optional[int] = None


@dataclass(frozen=True)
class GattAttribute:
    """Minimal service or characteristic handle: a UUID plus an opaque handle."""
    uuid: str
    handle: Any = None


@dataclass
class ConnectionSession:
    """State of one connect-and-read flow. Owned by the state machine."""
    handle: str
    name: Optional[str]
    state: ConnectionState = ConnectionState.CONNECTING
    service: Any = None
    write_characteristic: Any = None
    notify_characteristic: Any = None
    completed: bool = False
