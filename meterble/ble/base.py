"""Capability interfaces between the state machine and a BLE radio stack."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Iterable, List, Optional

if TYPE_CHECKING:
    from meterble.meter.models import DiscoveryEvent, RadioState, WriteMode


class EventSink(ABC):
    """Receiver of radio events. Implemented by ConnectionStateMachine.

    Every request made on a Scanner or Peripheral completes later through
    one of these calls.
    """

    @abstractmethod
    def on_radio_state(self, state: "RadioState"):
        pass

    @abstractmethod
    def on_discovered(self, event: "DiscoveryEvent"):
        pass

    @abstractmethod
    def on_connected(self, handle: str):
        pass

    @abstractmethod
    def on_connect_failed(self, handle: str, error: Optional[BaseException] = None):
        pass

    @abstractmethod
    def on_services_discovered(self, handle: str, services: List[Any],
                               error: Optional[BaseException] = None):
        pass

    @abstractmethod
    def on_characteristics_discovered(self, handle: str, service: Any,
                                      characteristics: List[Any],
                                      error: Optional[BaseException] = None):
        pass

    @abstractmethod
    def on_notification_state_updated(self, handle: str, characteristic: Any,
                                      enabled: bool,
                                      error: Optional[BaseException] = None):
        pass

    @abstractmethod
    def on_value_updated(self, handle: str, characteristic: Any, value: bytes,
                         error: Optional[BaseException] = None):
        pass

    @abstractmethod
    def on_disconnected(self, handle: str, error: Optional[BaseException] = None):
        pass


class Scanner(ABC):
    """Scanning half of the radio: discovery events and power state."""

    sink: Optional[EventSink] = None

    def attach(self, sink: EventSink):
        """Route discovery and power events to ``sink``."""
        self.sink = sink

    @abstractmethod
    def request_scan(self, service_uuids: Iterable[str]):
        """Start scanning for advertisements of the given services."""
        pass

    @abstractmethod
    def stop_scan(self):
        pass


class Peripheral(ABC):
    """Connection half of the radio. All methods return immediately."""

    sink: Optional[EventSink] = None

    def attach(self, sink: EventSink):
        self.sink = sink

    @abstractmethod
    def connect(self, handle: str):
        pass

    @abstractmethod
    def cancel_connection(self, handle: str):
        """Disconnect, or abort a connect that is still pending."""
        pass

    @abstractmethod
    def discover_services(self, handle: str, service_uuids: Iterable[str]):
        pass

    @abstractmethod
    def discover_characteristics(self, handle: str, service: Any,
                                 characteristic_uuids: Optional[Iterable[str]] = None):
        pass

    @abstractmethod
    def set_notify(self, handle: str, characteristic: Any, enabled: bool):
        pass

    @abstractmethod
    def write(self, handle: str, characteristic: Any, data: bytes, mode: "WriteMode"):
        pass


__all__ = ["EventSink", "Scanner", "Peripheral"]
