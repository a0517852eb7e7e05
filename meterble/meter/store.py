"""Latest-reading holder with change subscriptions."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import Reading

logger = logging.getLogger(__name__)

FIELDS = ("temperature", "humidity", "battery", "is_active")


@dataclass(frozen=True)
class FieldChange:
    """One published update: the field name with its previous and new value."""
    field: str
    old: Any
    new: Any


@dataclass(frozen=True)
class MeterSnapshot:
    """Read-only view of the store at one point in time."""
    temperature: Optional[float] = None
    humidity: Optional[int] = None
    battery: Optional[int] = None
    is_active: bool = False


class Subscription:
    """Handle returned by ReadingStore.subscribe()."""

    def __init__(self, store: "ReadingStore", callback: Callable[[FieldChange], None],
                 fields: Optional[Iterable[str]]):
        self._store = store
        self.callback = callback
        self.fields = frozenset(fields) if fields is not None else None

    def wants(self, field: str) -> bool:
        return self.fields is None or field in self.fields

    def cancel(self):
        """Stop receiving updates. Safe to call more than once."""
        self._store._remove(self)


class ReadingStore:
    """Holds the latest temperature, humidity and battery plus the radio flag.

    Each field is updated and published on its own, so observers may see a
    partially updated reading. Observers are invoked through the event loop
    (``call_soon_threadsafe``) when one is available, never from inside the
    update itself.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Initialize an empty store.

        Args:
            loop: Loop used to deliver change notifications. If None, the
                running loop at publish time is used, and callbacks run
                inline when there is none.
        """
        self._loop = loop
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {
            "temperature": None,
            "humidity": None,
            "battery": None,
            "is_active": False,
        }
        self._subscriptions: List[Subscription] = []

    @property
    def temperature(self) -> Optional[float]:
        return self._values["temperature"]

    @property
    def humidity(self) -> Optional[int]:
        return self._values["humidity"]

    @property
    def battery(self) -> Optional[int]:
        return self._values["battery"]

    @property
    def is_active(self) -> bool:
        return self._values["is_active"]

    def snapshot(self) -> MeterSnapshot:
        with self._lock:
            return MeterSnapshot(**self._values)

    def subscribe(
        self,
        callback: Callable[[FieldChange], None],
        fields: Optional[Iterable[str]] = None,
    ) -> Subscription:
        """Register an observer for field changes.

        Args:
            callback: Called with a FieldChange for every published update.
            fields: Restrict to these field names. If None, all fields.

        Returns:
            Subscription whose cancel() removes the observer.
        """
        if fields is not None:
            unknown = set(fields) - set(FIELDS)
            if unknown:
                raise ValueError(f"Unknown fields: {sorted(unknown)}")
        subscription = Subscription(self, callback, fields)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def apply(self, reading: Reading):
        """Fold a decoded reading into the store.

        Fields the reading does not carry keep their previous value.
        """
        if reading.temperature is not None:
            self._set("temperature", reading.temperature)
        if reading.humidity is not None:
            self._set("humidity", reading.humidity)
        if reading.battery is not None:
            self._set("battery", reading.battery)

    def set_active(self, active: bool):
        self._set("is_active", bool(active))

    def _set(self, field: str, value: Any):
        with self._lock:
            old = self._values[field]
            if old == value:
                return
            self._values[field] = value
            targets = [s for s in self._subscriptions if s.wants(field)]

        change = FieldChange(field, old, value)
        logger.debug(f"{field}: {old} -> {value}")
        for subscription in targets:
            self._dispatch(subscription.callback, change)

    def _dispatch(self, callback: Callable[[FieldChange], None], change: FieldChange):
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._deliver, callback, change)
        else:
            self._deliver(callback, change)

    @staticmethod
    def _deliver(callback: Callable[[FieldChange], None], change: FieldChange):
        try:
            callback(change)
        except Exception as e:
            logger.error(f"Observer failed on {change.field} update: {e}")
