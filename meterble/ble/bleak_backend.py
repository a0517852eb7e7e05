"""Scanner and Peripheral capabilities backed by bleak.

Each request is turned into an asyncio task; completions are handed back to
the event sink from the event loop, never from inside the request call.
"""

import asyncio
import functools
import logging
from typing import Any, Dict, Iterable, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakBluetoothNotAvailableError, BleakError

from meterble.meter.models import DiscoveryEvent, RadioState, WriteMode, normalize_uuid

from .base import Peripheral, Scanner

logger = logging.getLogger(__name__)

RADIO_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


def to_discovery_event(
    handle: str,
    name: Optional[str],
    adv: AdvertisementData,
) -> DiscoveryEvent:
    """Convert bleak advertisement data into a DiscoveryEvent.

    bleak strips the company id from manufacturer data; it is put back in
    front (little-endian, as sent on air) so offsets match the raw record.
    """
    service_data = [(normalize_uuid(uuid), bytes(data))
                    for uuid, data in (adv.service_data or {}).items()]

    manufacturer_data = None
    for company_id, data in (adv.manufacturer_data or {}).items():
        manufacturer_data = company_id.to_bytes(2, "little") + bytes(data)
        break

    return DiscoveryEvent(
        handle=handle,
        name=name,
        service_data=service_data,
        manufacturer_data=manufacturer_data,
        rssi=adv.rssi,
    )


class _TaskMixin:
    """Keeps references to fire-and-forget tasks until they finish."""

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit(self, callback, *args, **kwargs):
        """Deliver an event on the next loop iteration."""
        asyncio.get_running_loop().call_soon(functools.partial(callback, *args, **kwargs))


class BleakScannerBackend(_TaskMixin, Scanner):
    """Scanner capability using BleakScanner with a detection callback."""

    def __init__(self, scanning_mode: str = "active"):
        self.scanning_mode = scanning_mode
        self._scanner: Optional[BleakScanner] = None
        self._start_task: Optional[asyncio.Task] = None
        self._devices: Dict[str, BLEDevice] = {}
        self._tasks: Set[asyncio.Task] = set()

    def device(self, handle: str) -> Optional[BLEDevice]:
        """Last BLEDevice seen for an address."""
        return self._devices.get(handle)

    def request_scan(self, service_uuids: Iterable[str]):
        if self._scanner is not None:
            return
        self._scanner = BleakScanner(
            detection_callback=self._on_detection,
            service_uuids=list(service_uuids),
            scanning_mode=self.scanning_mode,
        )
        self._start_task = self._spawn(self._start(self._scanner))

    async def _start(self, scanner: BleakScanner):
        try:
            await scanner.start()
            logger.debug("Scanner started")
        except BleakBluetoothNotAvailableError as e:
            logger.warning(f"Bluetooth not available: {e}")
            self._scan_failed(scanner)
        except RADIO_ERRORS as e:
            logger.error(f"Failed to start scanner: {e}")
            self._scan_failed(scanner)

    def _scan_failed(self, scanner: BleakScanner):
        if self._scanner is scanner:
            self._scanner = None
        if self.sink:
            self.sink.on_radio_state(RadioState.POWERED_OFF)

    def stop_scan(self):
        scanner, self._scanner = self._scanner, None
        start_task, self._start_task = self._start_task, None
        if scanner is not None:
            self._spawn(self._stop(scanner, start_task))

    async def _stop(self, scanner: BleakScanner, start_task: Optional[asyncio.Task]):
        if start_task is not None and not start_task.done():
            await asyncio.gather(start_task, return_exceptions=True)
        try:
            await scanner.stop()
            logger.debug("Scanner stopped")
        except RADIO_ERRORS as e:
            logger.warning(f"Error stopping scanner: {e}")

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData):
        if self._scanner is None or self.sink is None:
            return
        self._devices[device.address] = device
        name = device.name or adv.local_name
        self.sink.on_discovered(to_discovery_event(device.address, name, adv))


class BleakPeripheralBackend(_TaskMixin, Peripheral):
    """Peripheral capability using one BleakClient per handle."""

    def __init__(self, scanner: Optional[BleakScannerBackend] = None,
                 connection_timeout: float = 20.0):
        """Initialize the peripheral backend.

        Args:
            scanner: Used to resolve handles to the BLEDevice seen while
                scanning. If None, handles are passed to bleak as addresses.
            connection_timeout: Seconds bleak waits for a connection.
        """
        self.scanner = scanner
        self.connection_timeout = connection_timeout
        self._clients: Dict[str, BleakClient] = {}
        self._connect_tasks: Dict[str, asyncio.Task] = {}
        self._notify_tasks: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    def connect(self, handle: str):
        if handle in self._clients:
            logger.debug(f"Already connecting to {handle}")
            return
        device = self.scanner.device(handle) if self.scanner else None
        client = BleakClient(
            device or handle,
            disconnected_callback=lambda c: self._on_disconnect(handle, c),
            timeout=self.connection_timeout,
        )
        self._clients[handle] = client
        self._connect_tasks[handle] = self._spawn(self._connect(handle, client))

    async def _connect(self, handle: str, client: BleakClient):
        try:
            await client.connect()
        except asyncio.CancelledError:
            self._forget(handle, client)
            raise
        except RADIO_ERRORS as e:
            logger.warning(f"Error connecting to {handle}: {e}")
            self._forget(handle, client)
            self.sink.on_connect_failed(handle, e)
            return
        finally:
            if self._connect_tasks.get(handle) is asyncio.current_task():
                del self._connect_tasks[handle]
        self.sink.on_connected(handle)

    def cancel_connection(self, handle: str):
        task = self._connect_tasks.pop(handle, None)
        client = self._clients.get(handle)
        if client is None:
            return
        if task is not None and not task.done():
            # An aborted connect reports nothing back
            task.cancel()
            self._forget(handle, client)
            self._spawn(self._disconnect(handle, client, notify=False))
            return
        self._spawn(self._disconnect(handle, client))

    async def _disconnect(self, handle: str, client: BleakClient, notify: bool = True):
        try:
            await client.disconnect()
        except RADIO_ERRORS as e:
            logger.warning(f"Error disconnecting from {handle}: {e}")
        # Some backends do not call disconnected_callback on a local disconnect
        if notify:
            self._on_disconnect(handle, client)

    def _on_disconnect(self, handle: str, client: BleakClient):
        if self._forget(handle, client) and self.sink:
            self.sink.on_disconnected(handle)

    def _forget(self, handle: str, client: BleakClient) -> bool:
        if self._clients.get(handle) is client:
            del self._clients[handle]
            return True
        return False

    def discover_services(self, handle: str, service_uuids: Iterable[str]):
        client = self._clients.get(handle)
        if client is None or not client.is_connected:
            self._emit(self.sink.on_services_discovered, handle, [],
                       error=BleakError(f"{handle} is not connected"))
            return
        wanted = {normalize_uuid(u) for u in service_uuids}
        services = [s for s in client.services if normalize_uuid(s.uuid) in wanted]
        self._emit(self.sink.on_services_discovered, handle, services)

    def discover_characteristics(self, handle: str, service: Any,
                                 characteristic_uuids: Optional[Iterable[str]] = None):
        characteristics = list(service.characteristics)
        if characteristic_uuids is not None:
            wanted = {normalize_uuid(u) for u in characteristic_uuids}
            characteristics = [c for c in characteristics
                               if normalize_uuid(c.uuid) in wanted]
        self._emit(self.sink.on_characteristics_discovered, handle, service,
                   characteristics)

    def set_notify(self, handle: str, characteristic: Any, enabled: bool):
        client = self._clients.get(handle)
        if client is None:
            return
        task = self._spawn(self._set_notify(handle, client, characteristic, enabled))
        self._notify_tasks[handle] = task
        task.add_done_callback(functools.partial(self._notify_done, handle))

    def _notify_done(self, handle: str, task: asyncio.Task):
        if self._notify_tasks.get(handle) is task:
            del self._notify_tasks[handle]

    async def _set_notify(self, handle: str, client: BleakClient,
                          characteristic: Any, enabled: bool):
        def handler(sender, data: bytearray):
            self.sink.on_value_updated(handle, characteristic, bytes(data))

        try:
            if enabled:
                await client.start_notify(characteristic, handler)
            else:
                await client.stop_notify(characteristic)
        except RADIO_ERRORS as e:
            self.sink.on_notification_state_updated(handle, characteristic, enabled, error=e)
            return
        self.sink.on_notification_state_updated(handle, characteristic, enabled)

    def write(self, handle: str, characteristic: Any, data: bytes, mode: WriteMode):
        client = self._clients.get(handle)
        if client is None:
            return
        self._spawn(self._write(handle, client, characteristic, data, mode))

    async def _write(self, handle: str, client: BleakClient, characteristic: Any,
                     data: bytes, mode: WriteMode):
        # A notify request made alongside the write is completed first, or
        # the device could answer before anyone is listening
        pending = self._notify_tasks.get(handle)
        if pending is not None:
            await asyncio.wait({pending})
        try:
            await client.write_gatt_char(
                characteristic, data, response=mode is WriteMode.WITH_RESPONSE
            )
        except RADIO_ERRORS as e:
            logger.warning(f"Write to {handle} failed: {e}")

    async def close(self):
        """Disconnect every client and wait for pending work."""
        for handle in list(self._clients):
            self.cancel_connection(handle)
        pending = list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
