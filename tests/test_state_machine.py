import asyncio

import pytest

from conftest import (
    METER_HANDLE,
    NOTIFY_CHAR,
    SERVICE,
    WRITE_CHAR,
    FakePeripheral,
    FakeScanner,
    meter_event,
)
from meterble.meter.errors import (
    ConnectFailed,
    DisconnectedUnexpectedly,
    ServiceNotFound,
)
from meterble.meter.models import (
    COMMUNICATION_SERVICE_UUID,
    READ_DISPLAY_COMMAND,
    SCAN_SERVICE_UUIDS,
    ConnectionState,
    GattAttribute,
    RadioState,
    ScanMode,
    WriteMode,
)
from meterble.meter.state_machine import ConnectionStateMachine
from meterble.meter.store import MeterSnapshot, ReadingStore

SERVICE_DATA_25C = bytes([0x54, 0x00, 0x32, 0x00, 0x99, 0x64])
SERVICE_DATA_20C = bytes([0x54, 0x00, 0x28, 0x00, 0x94, 0x3C])
NOTIFIED_17C = bytes([0x01, 0x05, 0x91, 0x32])


def manufacturer_data(t1=0x92, humidity=0x46, battery=0x4B):
    data = bytearray(14)
    data[5] = battery
    data[11] = t1
    data[12] = humidity
    return bytes(data)


def connect_through_characteristics(machine, handle=METER_HANDLE):
    machine.on_discovered(meter_event(handle=handle))
    machine.on_connected(handle)
    machine.on_services_discovered(handle, [SERVICE])


# Power and scanning


def test_power_on_starts_scan(make_machine, scanner, store):
    machine = make_machine()

    assert machine.state is ConnectionState.SCANNING
    assert scanner.calls == [("request_scan", list(SCAN_SERVICE_UUIDS))]
    assert store.is_active is True


def test_scan_request_while_scanning_is_noop(make_machine, scanner):
    machine = make_machine()

    assert machine.start_scan() is True
    machine.on_radio_state(RadioState.POWERED_ON)

    assert scanner.names() == ["request_scan"]


def test_cannot_scan_before_power_on(make_machine, scanner):
    machine = make_machine(power_on=False)

    assert machine.state is ConnectionState.IDLE
    assert machine.start_scan() is False
    assert scanner.calls == []


def test_scan_filter_uses_canonical_uuids():
    assert SCAN_SERVICE_UUIDS == (
        "0000000d-0000-1000-8000-00805f9b34fb",
        "0000fd3d-0000-1000-8000-00805f9b34fb",
    )


# Advertisement mode


def test_unknown_device_names_are_ignored(make_machine, store):
    machine = make_machine()

    machine.on_discovered(meter_event(name="SomeSpeaker", service_data=[("fd3d", SERVICE_DATA_25C)]))
    machine.on_discovered(meter_event(name="wosensorth", service_data=[("fd3d", SERVICE_DATA_25C)]))
    machine.on_discovered(meter_event(name=None, service_data=[("fd3d", SERVICE_DATA_25C)]))

    assert store.temperature is None
    assert machine.readings_captured == 0


def test_service_data_updates_store(make_machine, store):
    machine = make_machine()

    machine.on_discovered(meter_event(service_data=[("fd3d", SERVICE_DATA_25C)]))

    assert store.snapshot() == MeterSnapshot(
        temperature=25.0, humidity=100, battery=50, is_active=True
    )
    assert machine.readings_captured == 1


def test_first_decodable_service_data_entry_wins(make_machine, store):
    machine = make_machine()

    machine.on_discovered(meter_event(service_data=[
        ("000d", b"\x01\x02"),
        ("fd3d", SERVICE_DATA_20C),
        ("fd3e", SERVICE_DATA_25C),
    ]))

    assert store.temperature == 20.0
    assert store.humidity == 60
    assert store.battery == 40


def test_manufacturer_data_overwrites_service_data(make_machine, store):
    machine = make_machine()

    machine.on_discovered(meter_event(
        service_data=[("fd3d", SERVICE_DATA_25C)],
        manufacturer_data=manufacturer_data(),
    ))

    assert store.temperature == 18.0
    assert store.humidity == 70
    assert store.battery == 75


def test_compact_service_data_updates_battery_only(make_machine, store):
    machine = make_machine()

    machine.on_discovered(meter_event(service_data=[("fd3d", bytes([0x54, 0x00, 0x55]))]))

    assert store.battery == 85
    assert store.temperature is None


def test_malformed_advertisement_is_discarded(make_machine, store, scanner):
    machine = make_machine()

    machine.on_discovered(meter_event(
        service_data=[("fd3d", bytes(5))],
        manufacturer_data=bytes(9),
    ))

    assert store.temperature is None
    assert machine.state is ConnectionState.SCANNING
    assert machine.readings_captured == 0


def test_single_shot_stops_scan_after_first_reading(make_machine, scanner, store):
    machine = make_machine(single_shot=True)

    machine.on_discovered(meter_event(service_data=[("fd3d", SERVICE_DATA_25C)]))
    machine.on_discovered(meter_event(service_data=[("fd3d", SERVICE_DATA_20C)]))

    assert scanner.names() == ["request_scan", "stop_scan"]
    assert machine.state is ConnectionState.IDLE
    assert store.temperature == 25.0


def test_advertisement_mode_never_connects(make_machine, peripheral):
    machine = make_machine()

    machine.on_discovered(meter_event(service_data=[("fd3d", SERVICE_DATA_25C)]))

    assert peripheral.calls == []
    assert machine.sessions == {}


# Connect mode


def test_full_read_cycle(make_machine, peripheral, store):
    machine = make_machine(mode=ScanMode.CONNECT)

    machine.on_discovered(meter_event())
    assert peripheral.calls[-1] == ("connect", METER_HANDLE)
    assert machine.session_state(METER_HANDLE) is ConnectionState.CONNECTING

    machine.on_connected(METER_HANDLE)
    assert peripheral.calls[-1] == (
        "discover_services", METER_HANDLE, [COMMUNICATION_SERVICE_UUID]
    )
    assert machine.session_state(METER_HANDLE) is ConnectionState.DISCOVERING_SERVICE

    machine.on_services_discovered(METER_HANDLE, [GattAttribute("180a"), SERVICE])
    assert peripheral.names()[-1] == "discover_characteristics"
    assert machine.session_state(METER_HANDLE) is ConnectionState.DISCOVERING_CHARACTERISTICS

    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR, NOTIFY_CHAR])
    assert peripheral.calls[-2:] == [
        ("write", METER_HANDLE, WRITE_CHAR, READ_DISPLAY_COMMAND, WriteMode.WITHOUT_RESPONSE),
        ("set_notify", METER_HANDLE, NOTIFY_CHAR, True),
    ]
    assert machine.session_state(METER_HANDLE) is ConnectionState.SUBSCRIBING

    machine.on_notification_state_updated(METER_HANDLE, NOTIFY_CHAR, True)
    assert machine.session_state(METER_HANDLE) is ConnectionState.AWAITING_NOTIFICATION

    machine.on_value_updated(METER_HANDLE, NOTIFY_CHAR, NOTIFIED_17C)
    assert peripheral.calls[-1] == ("cancel_connection", METER_HANDLE)
    assert machine.session_state(METER_HANDLE) is ConnectionState.DISCONNECTING
    assert store.temperature == 17.5
    assert store.humidity == 50
    assert store.battery is None

    machine.on_disconnected(METER_HANDLE)
    assert machine.sessions == {}
    assert machine.errors == []
    assert machine.readings_captured == 1


def test_command_bytes():
    assert READ_DISPLAY_COMMAND == bytes([0x57, 0x0F, 0x31, 0x00])


def test_duplicate_discovery_does_not_open_second_session(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)

    machine.on_discovered(meter_event())
    machine.on_discovered(meter_event())

    assert peripheral.names() == ["connect"]
    assert list(machine.sessions) == [METER_HANDLE]


def test_distinct_peripherals_get_their_own_sessions(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)

    machine.on_discovered(meter_event(handle="11:11:11:11:11:11"))
    machine.on_discovered(meter_event(handle="22:22:22:22:22:22", name="WoIOSensorTH"))

    assert sorted(machine.sessions) == ["11:11:11:11:11:11", "22:22:22:22:22:22"]


def test_single_shot_connect_stops_scan(make_machine, scanner, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT, single_shot=True)

    machine.on_discovered(meter_event())

    assert scanner.names() == ["request_scan", "stop_scan"]
    assert peripheral.names() == ["connect"]


def test_connect_failure_destroys_session(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)

    machine.on_discovered(meter_event())
    machine.on_connect_failed(METER_HANDLE, OSError("timeout"))

    assert machine.sessions == {}
    assert isinstance(machine.last_error, ConnectFailed)
    assert machine.errors == [machine.last_error]
    assert peripheral.names() == ["connect"]
    assert machine.state is ConnectionState.SCANNING


def test_fresh_discovery_after_failure_starts_over(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)

    machine.on_discovered(meter_event())
    machine.on_connect_failed(METER_HANDLE)
    machine.on_discovered(meter_event())

    assert peripheral.names() == ["connect", "connect"]


def test_missing_service_cancels_connection(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)

    machine.on_discovered(meter_event())
    machine.on_connected(METER_HANDLE)
    machine.on_services_discovered(METER_HANDLE, [GattAttribute("180f")])

    assert peripheral.calls[-1] == ("cancel_connection", METER_HANDLE)
    assert isinstance(machine.last_error, ServiceNotFound)
    assert machine.sessions == {}

    # The disconnect completion for the dropped session is ignored
    machine.on_disconnected(METER_HANDLE)
    assert len(machine.errors) == 1


def test_service_uuid_comparison_is_case_insensitive(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)

    machine.on_discovered(meter_event())
    machine.on_connected(METER_HANDLE)
    machine.on_services_discovered(
        METER_HANDLE, [GattAttribute(COMMUNICATION_SERVICE_UUID.upper())]
    )

    assert machine.session_state(METER_HANDLE) is ConnectionState.DISCOVERING_CHARACTERISTICS


def test_power_off_mid_discovery_resets_everything(make_machine, scanner, peripheral, store):
    machine = make_machine(mode=ScanMode.CONNECT)
    connect_through_characteristics(machine)
    assert machine.session_state(METER_HANDLE) is ConnectionState.DISCOVERING_CHARACTERISTICS

    machine.on_radio_state(RadioState.POWERED_OFF)

    assert machine.state is ConnectionState.POWERED_OFF
    assert machine.sessions == {}
    assert scanner.calls[-1] == ("stop_scan",)
    assert peripheral.calls[-1] == ("cancel_connection", METER_HANDLE)
    assert store.is_active is False

    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR, NOTIFY_CHAR])

    assert "write" not in peripheral.names()
    assert "set_notify" not in peripheral.names()


def test_power_on_after_power_off_scans_again(make_machine, scanner):
    machine = make_machine()

    machine.on_radio_state(RadioState.POWERED_OFF)
    machine.on_radio_state(RadioState.POWERED_ON)

    assert scanner.names() == ["request_scan", "stop_scan", "request_scan"]
    assert machine.state is ConnectionState.SCANNING


def test_discoveries_while_powered_off_are_ignored(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)
    machine.on_radio_state(RadioState.POWERED_OFF)

    machine.on_discovered(meter_event())

    assert peripheral.calls == []


def test_missing_write_characteristic_still_subscribes(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)
    connect_through_characteristics(machine)

    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [NOTIFY_CHAR])

    assert "write" not in peripheral.names()
    assert peripheral.calls[-1] == ("set_notify", METER_HANDLE, NOTIFY_CHAR, True)


def test_missing_notify_characteristic_ends_session(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)
    connect_through_characteristics(machine)

    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR])

    assert peripheral.names()[-2:] == ["write", "cancel_connection"]
    assert machine.session_state(METER_HANDLE) is ConnectionState.DISCONNECTING

    machine.on_disconnected(METER_HANDLE)
    assert machine.errors == []


def test_undecodable_notification_keeps_waiting(make_machine, peripheral, store):
    machine = make_machine(mode=ScanMode.CONNECT)
    connect_through_characteristics(machine)
    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR, NOTIFY_CHAR])
    machine.on_notification_state_updated(METER_HANDLE, NOTIFY_CHAR, True)

    machine.on_value_updated(METER_HANDLE, NOTIFY_CHAR, b"\x01")
    machine.on_value_updated(METER_HANDLE, NOTIFY_CHAR, SERVICE_DATA_25C[:3] + b"\x00\x00")

    assert machine.session_state(METER_HANDLE) is ConnectionState.AWAITING_NOTIFICATION
    assert "cancel_connection" not in peripheral.names()
    assert store.temperature is None

    machine.on_value_updated(METER_HANDLE, NOTIFY_CHAR, NOTIFIED_17C)
    assert store.temperature == 17.5


def test_notification_only_uses_four_byte_layout(make_machine, store):
    machine = make_machine(mode=ScanMode.CONNECT)
    connect_through_characteristics(machine)
    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR, NOTIFY_CHAR])

    machine.on_value_updated(METER_HANDLE, NOTIFY_CHAR, bytes([0x54, 0x00, 0x55]))

    assert store.battery is None
    assert machine.session_state(METER_HANDLE) is ConnectionState.SUBSCRIBING


def test_unexpected_disconnect_is_reported(make_machine):
    machine = make_machine(mode=ScanMode.CONNECT)
    connect_through_characteristics(machine)

    machine.on_disconnected(METER_HANDLE, OSError("link lost"))

    assert machine.sessions == {}
    assert isinstance(machine.last_error, DisconnectedUnexpectedly)


def test_shutdown_cancels_open_sessions(make_machine, scanner, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)
    machine.on_discovered(meter_event())

    machine.shutdown()

    assert scanner.calls[-1] == ("stop_scan",)
    assert peripheral.calls[-1] == ("cancel_connection", METER_HANDLE)
    assert machine.sessions == {}


def complete_read(machine, handle=METER_HANDLE):
    connect_through_characteristics(machine, handle)
    machine.on_characteristics_discovered(handle, SERVICE, [WRITE_CHAR, NOTIFY_CHAR])
    machine.on_value_updated(handle, NOTIFY_CHAR, NOTIFIED_17C)
    machine.on_disconnected(handle)


def test_meter_is_read_once_per_scan(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)

    complete_read(machine)
    machine.on_discovered(meter_event())
    machine.on_discovered(meter_event())

    assert peripheral.names().count("connect") == 1
    assert machine.sessions == {}
    assert machine.readings_captured == 1


def test_new_scan_reads_meter_again(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)
    complete_read(machine)

    machine.stop_scan()
    machine.start_scan()
    machine.on_discovered(meter_event())

    assert peripheral.names().count("connect") == 2


def test_power_cycle_reads_meter_again(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)
    complete_read(machine)

    machine.on_radio_state(RadioState.POWERED_OFF)
    machine.on_radio_state(RadioState.POWERED_ON)
    machine.on_discovered(meter_event())

    assert peripheral.names().count("connect") == 2


def test_session_without_reading_is_retried(make_machine, peripheral):
    machine = make_machine(mode=ScanMode.CONNECT)
    connect_through_characteristics(machine)
    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR])
    machine.on_disconnected(METER_HANDLE)

    machine.on_discovered(meter_event())

    assert peripheral.names().count("connect") == 2


@pytest.mark.asyncio
async def test_notification_timeout_disconnects():
    scanner, peripheral, store = FakeScanner(), FakePeripheral(), ReadingStore()
    machine = ConnectionStateMachine(
        scanner, peripheral, store, mode=ScanMode.CONNECT, notification_timeout=0.01
    )
    machine.on_radio_state(RadioState.POWERED_ON)
    connect_through_characteristics(machine)
    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR, NOTIFY_CHAR])

    await asyncio.sleep(0.05)

    assert peripheral.calls[-1] == ("cancel_connection", METER_HANDLE)
    assert machine.session_state(METER_HANDLE) is ConnectionState.DISCONNECTING


@pytest.mark.asyncio
async def test_notification_timeout_cancelled_by_reading():
    scanner, peripheral, store = FakeScanner(), FakePeripheral(), ReadingStore()
    machine = ConnectionStateMachine(
        scanner, peripheral, store, mode=ScanMode.CONNECT, notification_timeout=0.01
    )
    machine.on_radio_state(RadioState.POWERED_ON)
    connect_through_characteristics(machine)
    machine.on_characteristics_discovered(METER_HANDLE, SERVICE, [WRITE_CHAR, NOTIFY_CHAR])
    machine.on_value_updated(METER_HANDLE, NOTIFY_CHAR, NOTIFIED_17C)
    machine.on_disconnected(METER_HANDLE)

    await asyncio.sleep(0.05)

    assert peripheral.names().count("cancel_connection") == 1
    assert machine.last_error is None
