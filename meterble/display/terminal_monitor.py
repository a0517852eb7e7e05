"""
Terminal Monitor for meter readings.
Live terminal view of the ReadingStore using the Rich library.
"""

import logging
from datetime import datetime
from typing import Optional

from rich.align import Align
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from meterble.meter.store import FieldChange, MeterSnapshot, ReadingStore, Subscription

logger = logging.getLogger(__name__)


def format_value(value, unit: str) -> str:
    """Render a reading field, '-' while it is unknown"""
    if value is None:
        return "-"
    return f"{value}{unit}"


class TerminalMonitor:
    """Terminal-based display of the latest meter reading"""

    def __init__(self, store: ReadingStore, console: Optional[Console] = None,
                 refresh_per_second: float = 4.0):
        self.store = store
        self.console = console or Console()
        self.refresh_per_second = refresh_per_second
        self.live_display: Optional[Live] = None
        self.last_update: Optional[datetime] = None
        self._subscription: Optional[Subscription] = None

    def render(self, snapshot: Optional[MeterSnapshot] = None) -> Panel:
        """Build the panel for a snapshot of the store"""
        snapshot = snapshot or self.store.snapshot()

        table = Table(show_header=False, box=None)
        table.add_column("Field", style="bold cyan", width=14)
        table.add_column("Value", style="white")

        table.add_row("Temperature", format_value(snapshot.temperature, "°C"))
        table.add_row("Humidity", format_value(snapshot.humidity, "%"))
        table.add_row("Battery", format_value(snapshot.battery, "%"))

        radio = Text("ON", style="green") if snapshot.is_active else Text("OFF", style="red")
        table.add_row("Bluetooth", radio)

        updated = self.last_update.strftime("%H:%M:%S") if self.last_update else "-"
        table.add_row("Updated", updated)

        return Panel(Align.left(table), title="METER", style="cyan")

    def _on_change(self, change: FieldChange):
        self.last_update = datetime.now()
        if self.live_display is not None:
            self.live_display.update(self.render())

    def start(self):
        """Start the live display and follow store updates"""
        self._subscription = self.store.subscribe(self._on_change)
        self.live_display = Live(
            self.render(),
            console=self.console,
            refresh_per_second=self.refresh_per_second,
            transient=False,
        )
        self.live_display.start()
        logger.debug("Terminal monitor started")

    def stop(self):
        """Stop following the store and close the live display"""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self.live_display is not None:
            self.live_display.stop()
            self.live_display = None
