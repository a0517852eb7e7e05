"""Meter payload decoding, connection lifecycle and reading store."""

from .codec import (
    PayloadVariant,
    decode,
    decode_advertisement,
    decode_notification,
    try_decode,
)
from .errors import (
    ConnectFailed,
    DecodeError,
    DisconnectedUnexpectedly,
    MeterError,
    ServiceNotFound,
    TruncatedPayload,
    UnrecognizedLength,
)
from .models import (
    ConnectionState,
    DeviceIdentity,
    DiscoveryEvent,
    GattAttribute,
    RadioState,
    Reading,
    ScanMode,
    WriteMode,
)
from .state_machine import ConnectionStateMachine
from .store import FieldChange, MeterSnapshot, ReadingStore

__all__ = [
    "PayloadVariant",
    "decode",
    "decode_advertisement",
    "decode_notification",
    "try_decode",
    "MeterError",
    "DecodeError",
    "UnrecognizedLength",
    "TruncatedPayload",
    "ConnectFailed",
    "ServiceNotFound",
    "DisconnectedUnexpectedly",
    "ConnectionState",
    "DeviceIdentity",
    "DiscoveryEvent",
    "GattAttribute",
    "RadioState",
    "Reading",
    "ScanMode",
    "WriteMode",
    "ConnectionStateMachine",
    "FieldChange",
    "MeterSnapshot",
    "ReadingStore",
]
