"""BLE radio capabilities: abstract interfaces and the bleak implementation."""

from .base import EventSink, Peripheral, Scanner
from .bleak_backend import BleakPeripheralBackend, BleakScannerBackend

__all__ = [
    "EventSink",
    "Peripheral",
    "Scanner",
    "BleakPeripheralBackend",
    "BleakScannerBackend",
]
