"""BLE central lifecycle for meter devices.

The machine never blocks: every radio operation is a request on the Scanner or
Peripheral capability, and its completion arrives later through one of the
``on_*`` event methods.

Machine level:   IDLE -> SCANNING, any -> POWERED_OFF
Per session:     CONNECTING -> CONNECTED -> DISCOVERING_SERVICE
                 -> DISCOVERING_CHARACTERISTICS -> SUBSCRIBING
                 -> AWAITING_NOTIFICATION -> DISCONNECTING -> IDLE
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from meterble.ble.base import EventSink, Peripheral, Scanner

from .codec import decode_advertisement, decode_notification, try_decode
from .errors import (
    ConnectFailed,
    DisconnectedUnexpectedly,
    ServiceNotFound,
    SessionError,
)
from .models import (
    COMMUNICATION_SERVICE_UUID,
    NOTIFY_CHARACTERISTIC_UUID,
    READ_DISPLAY_COMMAND,
    SCAN_SERVICE_UUIDS,
    WRITE_CHARACTERISTIC_UUID,
    ConnectionSession,
    ConnectionState,
    DeviceIdentity,
    DiscoveryEvent,
    RadioState,
    ScanMode,
    WriteMode,
    normalize_uuid,
)
from .store import ReadingStore

logger = logging.getLogger(__name__)

_NOTIFY_STATES = (ConnectionState.SUBSCRIBING, ConnectionState.AWAITING_NOTIFICATION)


def _find_by_uuid(attributes: List[Any], uuid: str) -> Optional[Any]:
    for attribute in attributes or []:
        if normalize_uuid(attribute.uuid) == uuid:
            return attribute
    return None


class ConnectionStateMachine(EventSink):
    """Drives scanning and the connect-write-notify-disconnect flow."""

    def __init__(
        self,
        scanner: Scanner,
        peripheral: Peripheral,
        store: ReadingStore,
        mode: ScanMode = ScanMode.ADVERTISEMENT,
        single_shot: bool = False,
        notification_timeout: Optional[float] = None,
        on_error: Optional[Callable[[str, SessionError], None]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """Initialize the state machine and attach it to both capabilities.

        Args:
            scanner: Scanner capability.
            peripheral: Peripheral capability.
            store: Destination for decoded readings and the radio flag.
            mode: Observe advertisements only, or connect and read.
            single_shot: Stop scanning after the first successful discovery.
            notification_timeout: Seconds to wait for the notified value
                before disconnecting. None waits indefinitely.
            on_error: Called with (handle, error) whenever a session fails.
            loop: Loop for the notification timer. If None, the running
                loop is used when there is one.
        """
        self.scanner = scanner
        self.peripheral = peripheral
        self.store = store
        self.mode = mode
        self.single_shot = single_shot
        self.notification_timeout = notification_timeout
        self.on_error = on_error
        self._loop = loop

        self._radio: Optional[RadioState] = None
        self._scanning = False
        self._sessions: Dict[str, ConnectionSession] = {}
        # Handles that delivered a reading during the current scan
        self._seen: Set[str] = set()
        self._sessions_lock = threading.Lock()
        self._timers: Dict[str, asyncio.TimerHandle] = {}

        self.readings_captured = 0
        self.last_error: Optional[SessionError] = None

        scanner.attach(self)
        peripheral.attach(self)

    @property
    def state(self) -> ConnectionState:
        """Machine-level state: POWERED_OFF, SCANNING or IDLE."""
        if self._radio is RadioState.POWERED_OFF:
            return ConnectionState.POWERED_OFF
        if self._scanning:
            return ConnectionState.SCANNING
        return ConnectionState.IDLE

    @property
    def radio_state(self) -> Optional[RadioState]:
        return self._radio

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def sessions(self) -> Dict[str, ConnectionSession]:
        """Copy of the open sessions keyed by peripheral handle."""
        with self._sessions_lock:
            return dict(self._sessions)

    def session_state(self, handle: str) -> Optional[ConnectionState]:
        with self._sessions_lock:
            session = self._sessions.get(handle)
        return session.state if session else None

    # Scan control

    def start_scan(self) -> bool:
        """Request a scan. Returns False when the radio is not powered on."""
        if self._radio is not RadioState.POWERED_ON:
            logger.warning("Bluetooth is not available, cannot scan")
            return False
        if self._scanning:
            logger.debug("Scan already in progress")
            return True
        logger.info("Scanning for meter advertisements")
        self._scanning = True
        with self._sessions_lock:
            self._seen.clear()
        self.scanner.request_scan(list(SCAN_SERVICE_UUIDS))
        return True

    def stop_scan(self):
        if not self._scanning:
            return
        logger.info("Stopping scan")
        self._scanning = False
        self.scanner.stop_scan()

    def shutdown(self):
        """Stop scanning and cancel every open connection."""
        self.stop_scan()
        for session in self._clear_sessions():
            self.peripheral.cancel_connection(session.handle)

    # Radio and discovery events

    def on_radio_state(self, state: RadioState):
        if state is RadioState.POWERED_ON:
            logger.info("Bluetooth is available")
            self._radio = RadioState.POWERED_ON
            self.store.set_active(True)
            self.start_scan()
        else:
            logger.warning("Bluetooth is not available, resetting")
            self._power_off()

    def _power_off(self):
        was_scanning = self._scanning
        self._scanning = False
        self._radio = RadioState.POWERED_OFF
        if was_scanning:
            self.scanner.stop_scan()
        with self._sessions_lock:
            self._seen.clear()
        for session in self._clear_sessions():
            logger.info(f"Cancelling connection to {session.handle} ({session.state.value})")
            self.peripheral.cancel_connection(session.handle)
        self.store.set_active(False)

    def on_discovered(self, event: DiscoveryEvent):
        identity = DeviceIdentity.match(event.name)
        if identity is None:
            return
        if not self._scanning:
            logger.debug(f"Ignoring {event.name} ({event.handle}), not scanning")
            return

        logger.debug(f"Discovered peripheral: {event.name} ({event.handle})")

        if self.mode is ScanMode.ADVERTISEMENT:
            if self._apply_advertisement(event):
                self.readings_captured += 1
                if self.single_shot:
                    self.stop_scan()
        else:
            self._open_session(event)

    def _apply_advertisement(self, event: DiscoveryEvent) -> bool:
        """Fold advertisement data into the store. Returns True if anything decoded."""
        found = False
        for uuid, data in event.service_data:
            reading = try_decode(data, decode_advertisement, source=f"service data {uuid}")
            if reading is not None:
                self.store.apply(reading)
                found = True
                break

        # Manufacturer data wins over service data when both decode
        if event.manufacturer_data is not None:
            reading = try_decode(
                event.manufacturer_data, decode_advertisement, source="manufacturer data"
            )
            if reading is not None:
                self.store.apply(reading)
                found = True

        return found

    def _open_session(self, event: DiscoveryEvent):
        with self._sessions_lock:
            if event.handle in self._sessions:
                logger.debug(f"Session already open for {event.handle}")
                return
            if event.handle in self._seen:
                logger.debug(f"Already read {event.handle} during this scan")
                return
            session = ConnectionSession(handle=event.handle, name=event.name)
            self._sessions[event.handle] = session

        logger.info(f"Connecting to {event.name} ({event.handle})")
        if self.single_shot:
            self.stop_scan()
        self.peripheral.connect(event.handle)

    # Connection events

    def on_connected(self, handle: str):
        session = self._session(handle, ConnectionState.CONNECTING)
        if session is None:
            return
        logger.info(f"Connected to {session.name} ({handle})")
        session.state = ConnectionState.CONNECTED
        session.state = ConnectionState.DISCOVERING_SERVICE
        self.peripheral.discover_services(handle, [COMMUNICATION_SERVICE_UUID])

    def on_connect_failed(self, handle: str, error: Optional[BaseException] = None):
        session = self._session(handle, ConnectionState.CONNECTING)
        if session is None:
            return
        self._drop(session)
        self._surface(ConnectFailed(handle, str(error) if error else None))

    def on_services_discovered(self, handle: str, services: List[Any],
                               error: Optional[BaseException] = None):
        session = self._session(handle, ConnectionState.DISCOVERING_SERVICE)
        if session is None:
            return

        service = None if error else _find_by_uuid(services, COMMUNICATION_SERVICE_UUID)
        if service is None:
            self._drop(session)
            self.peripheral.cancel_connection(handle)
            self._surface(ServiceNotFound(handle, str(error) if error else None))
            return

        session.service = service
        session.state = ConnectionState.DISCOVERING_CHARACTERISTICS
        self.peripheral.discover_characteristics(
            handle, service, [WRITE_CHARACTERISTIC_UUID, NOTIFY_CHARACTERISTIC_UUID]
        )

    def on_characteristics_discovered(self, handle: str, service: Any,
                                      characteristics: List[Any],
                                      error: Optional[BaseException] = None):
        session = self._session(handle, ConnectionState.DISCOVERING_CHARACTERISTICS)
        if session is None:
            return
        if error:
            logger.warning(f"Characteristic discovery failed on {handle}: {error}")
            characteristics = []

        write_char = _find_by_uuid(characteristics, WRITE_CHARACTERISTIC_UUID)
        notify_char = _find_by_uuid(characteristics, NOTIFY_CHARACTERISTIC_UUID)
        session.write_characteristic = write_char
        session.notify_characteristic = notify_char

        # Write and subscribe are requested together; the bleak backend holds
        # the write until notifications are enabled so the reply is not missed
        if write_char is not None:
            logger.debug(f"Writing read-display command to {handle}")
            self.peripheral.write(
                handle, write_char, READ_DISPLAY_COMMAND, WriteMode.WITHOUT_RESPONSE
            )
        else:
            logger.warning(f"Write characteristic not found on {handle}")

        if notify_char is None:
            # Nothing can be notified back, so the session is over
            logger.warning(f"Notify characteristic not found on {handle}")
            self._disconnect(session)
            return

        session.state = ConnectionState.SUBSCRIBING
        self.peripheral.set_notify(handle, notify_char, True)
        self._start_timer(session)

    def on_notification_state_updated(self, handle: str, characteristic: Any,
                                      enabled: bool,
                                      error: Optional[BaseException] = None):
        session = self._session(handle, *_NOTIFY_STATES)
        if session is None:
            return
        if error:
            logger.warning(f"Enabling notifications on {handle} failed: {error}")
            return
        logger.debug(f"Notifications {'enabled' if enabled else 'disabled'} on {handle}")
        if enabled and session.state is ConnectionState.SUBSCRIBING:
            session.state = ConnectionState.AWAITING_NOTIFICATION

    def on_value_updated(self, handle: str, characteristic: Any, value: bytes,
                         error: Optional[BaseException] = None):
        session = self._session(handle, *_NOTIFY_STATES)
        if session is None:
            return
        if normalize_uuid(characteristic.uuid) != NOTIFY_CHARACTERISTIC_UUID:
            return
        if error:
            logger.debug(f"Ignoring failed value update on {handle}: {error}")
            return

        reading = try_decode(value, decode_notification, source=f"notification from {handle}")
        if reading is None:
            return

        logger.info(
            f"Reading from {session.name}: {reading.temperature}C {reading.humidity}%"
        )
        self.store.apply(reading)
        session.completed = True
        with self._sessions_lock:
            self._seen.add(handle)
        self.readings_captured += 1
        self._disconnect(session)

    def on_disconnected(self, handle: str, error: Optional[BaseException] = None):
        with self._sessions_lock:
            session = self._sessions.pop(handle, None)
        if session is None:
            return
        self._cancel_timer(handle)

        expected = session.state is ConnectionState.DISCONNECTING
        session.state = ConnectionState.IDLE
        if expected:
            logger.info(f"Disconnected from {session.name} ({handle})")
        else:
            self._surface(DisconnectedUnexpectedly(handle, str(error) if error else None))

    # Internals

    def _session(self, handle: str, *states: ConnectionState) -> Optional[ConnectionSession]:
        with self._sessions_lock:
            session = self._sessions.get(handle)
        if session is None:
            logger.debug(f"Ignoring event for {handle}: no open session")
            return None
        if states and session.state not in states:
            logger.debug(f"Ignoring event for {handle} in state {session.state.value}")
            return None
        return session

    def _drop(self, session: ConnectionSession):
        with self._sessions_lock:
            self._sessions.pop(session.handle, None)
        self._cancel_timer(session.handle)
        session.state = ConnectionState.IDLE

    def _clear_sessions(self) -> List[ConnectionSession]:
        with self._sessions_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._cancel_timer(session.handle)
            session.state = ConnectionState.IDLE
        return sessions

    def _disconnect(self, session: ConnectionSession):
        self._cancel_timer(session.handle)
        session.state = ConnectionState.DISCONNECTING
        self.peripheral.cancel_connection(session.handle)

    def _surface(self, error: SessionError):
        logger.warning(str(error))
        self.last_error = error
        if self.on_error:
            self.on_error(error.handle, error)

    def _start_timer(self, session: ConnectionSession):
        if self.notification_timeout is None:
            return
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No event loop, notification wait is unbounded")
                return
        self._timers[session.handle] = loop.call_later(
            self.notification_timeout, self._on_notification_timeout, session.handle
        )

    def _cancel_timer(self, handle: str):
        timer = self._timers.pop(handle, None)
        if timer is not None:
            timer.cancel()

    def _on_notification_timeout(self, handle: str):
        self._timers.pop(handle, None)
        session = self._session(handle, *_NOTIFY_STATES)
        if session is None:
            return
        logger.warning(
            f"No reading from {handle} after {self.notification_timeout}s, disconnecting"
        )
        self._disconnect(session)
