"""Shared fixtures: recording fakes for the Scanner and Peripheral capabilities."""

import pytest

from meterble.ble.base import Peripheral, Scanner
from meterble.meter.models import (
    COMMUNICATION_SERVICE_UUID,
    NOTIFY_CHARACTERISTIC_UUID,
    WRITE_CHARACTERISTIC_UUID,
    DiscoveryEvent,
    GattAttribute,
    RadioState,
    ScanMode,
)
from meterble.meter.state_machine import ConnectionStateMachine
from meterble.meter.store import ReadingStore


class FakeScanner(Scanner):
    def __init__(self):
        self.calls = []

    def request_scan(self, service_uuids):
        self.calls.append(("request_scan", list(service_uuids)))

    def stop_scan(self):
        self.calls.append(("stop_scan",))

    def names(self):
        return [call[0] for call in self.calls]


class FakePeripheral(Peripheral):
    def __init__(self):
        self.calls = []

    def connect(self, handle):
        self.calls.append(("connect", handle))

    def cancel_connection(self, handle):
        self.calls.append(("cancel_connection", handle))

    def discover_services(self, handle, service_uuids):
        self.calls.append(("discover_services", handle, list(service_uuids)))

    def discover_characteristics(self, handle, service, characteristic_uuids=None):
        self.calls.append(("discover_characteristics", handle, service,
                           list(characteristic_uuids or [])))

    def set_notify(self, handle, characteristic, enabled):
        self.calls.append(("set_notify", handle, characteristic, enabled))

    def write(self, handle, characteristic, data, mode):
        self.calls.append(("write", handle, characteristic, data, mode))

    def names(self):
        return [call[0] for call in self.calls]


SERVICE = GattAttribute(COMMUNICATION_SERVICE_UUID, handle=0x10)
WRITE_CHAR = GattAttribute(WRITE_CHARACTERISTIC_UUID, handle=0x11)
NOTIFY_CHAR = GattAttribute(NOTIFY_CHARACTERISTIC_UUID, handle=0x12)

METER_HANDLE = "AA:BB:CC:DD:EE:FF"


def meter_event(handle=METER_HANDLE, name="WoSensorTH", service_data=None,
                manufacturer_data=None):
    return DiscoveryEvent(
        handle=handle,
        name=name,
        service_data=list(service_data or []),
        manufacturer_data=manufacturer_data,
        rssi=-60,
    )


@pytest.fixture
def scanner():
    return FakeScanner()


@pytest.fixture
def peripheral():
    return FakePeripheral()


@pytest.fixture
def store():
    return ReadingStore()


@pytest.fixture
def make_machine(scanner, peripheral, store):
    """Build a powered-on state machine; errors are collected on machine.errors."""
    def factory(mode=ScanMode.ADVERTISEMENT, power_on=True, **kwargs):
        errors = []
        machine = ConnectionStateMachine(
            scanner, peripheral, store, mode=mode,
            on_error=lambda handle, error: errors.append(error),
            **kwargs,
        )
        machine.errors = errors
        if power_on:
            machine.on_radio_state(RadioState.POWERED_ON)
        return machine

    return factory
