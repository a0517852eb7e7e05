"""Meter bridge service - main orchestrator."""

import asyncio
import logging
import signal
import sys
import time
from typing import Optional

from meterble.ble.bleak_backend import BleakPeripheralBackend, BleakScannerBackend
from meterble.ble.base import Peripheral, Scanner
from meterble.display.terminal_monitor import TerminalMonitor
from meterble.meter.errors import SessionError
from meterble.meter.models import RadioState
from meterble.meter.state_machine import ConnectionStateMachine
from meterble.meter.store import ReadingStore

from .config import Config, load_config
from .mqtt_publisher import MQTTPublisher

logger = logging.getLogger(__name__)


class MeterBridge:
    """Main service that reads meters over BLE and publishes the readings."""

    def __init__(
        self,
        config: Config,
        scanner: Optional[Scanner] = None,
        peripheral: Optional[Peripheral] = None,
    ):
        """Initialize the bridge service.

        Args:
            config: Configuration object.
            scanner: Scanner capability. If None, a bleak scanner is used.
            peripheral: Peripheral capability. If None, a bleak peripheral
                backend sharing the scanner is used.
        """
        self.config = config
        self.store = ReadingStore()
        if scanner is None:
            scanner = BleakScannerBackend(scanning_mode=config.ble.scanning_mode)
        if peripheral is None:
            peripheral = BleakPeripheralBackend(
                scanner if isinstance(scanner, BleakScannerBackend) else None,
                connection_timeout=config.ble.connection_timeout,
            )
        self.scanner = scanner
        self.peripheral = peripheral
        self.machine = ConnectionStateMachine(
            scanner,
            peripheral,
            self.store,
            mode=config.ble.mode,
            single_shot=config.ble.single_shot,
            notification_timeout=config.ble.notification_timeout,
            on_error=self._on_session_error,
        )
        self.mqtt_publisher: Optional[MQTTPublisher] = None
        self.monitor: Optional[TerminalMonitor] = None
        self._running = False

    def _on_session_error(self, handle: str, error: SessionError):
        """Session failures are logged; a new discovery starts over."""
        logger.error(f"Session with {handle} failed: {error}")

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signame = signal.Signals(signum).name
            logger.info(f"Received {signame}, shutting down...")
            self._running = False

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    @property
    def finished(self) -> bool:
        """True once a single-shot run has its reading and nothing is open."""
        return (
            self.config.ble.single_shot
            and self.machine.readings_captured > 0
            and not self.machine.is_scanning
            and not self.machine.sessions
        )

    def stop(self):
        self._running = False

    async def run(self, install_signal_handlers: bool = True):
        """Run the bridge service until stopped."""
        if install_signal_handlers:
            self._setup_signal_handlers()
        self._running = True

        if self.config.mqtt.enabled:
            self.mqtt_publisher = MQTTPublisher(self.config.mqtt)
            if self.mqtt_publisher.connect():
                self.mqtt_publisher.attach(self.store)
            else:
                logger.error("Failed to connect to MQTT broker, readings will not be published")

        if self.config.display.enabled:
            self.monitor = TerminalMonitor(
                self.store, refresh_per_second=self.config.display.refresh_per_second
            )
            self.monitor.start()

        self.machine.on_radio_state(RadioState.POWERED_ON)
        last_radio_attempt = time.monotonic()

        logger.info("Meter bridge is running. Press Ctrl+C to stop.")
        try:
            while self._running and not self.finished:
                await asyncio.sleep(0.5)
                if self.machine.radio_state is RadioState.POWERED_OFF:
                    now = time.monotonic()
                    if now - last_radio_attempt >= self.config.ble.radio_retry_interval:
                        last_radio_attempt = now
                        logger.info("Retrying Bluetooth...")
                        self.machine.on_radio_state(RadioState.POWERED_ON)
        except asyncio.CancelledError:
            pass

        await self.shutdown()

    async def shutdown(self):
        logger.info("Shutting down meter bridge...")

        self.machine.shutdown()
        if isinstance(self.peripheral, BleakPeripheralBackend):
            await self.peripheral.close()

        if self.monitor:
            self.monitor.stop()

        if self.mqtt_publisher:
            self.mqtt_publisher.disconnect()

        logger.info("Meter bridge stopped.")


def run_bridge(config: Optional[Config] = None, config_path: Optional[str] = None):
    """Run the meter bridge service.

    Args:
        config: Already loaded configuration. If None, it is loaded.
        config_path: Optional path to config file.
    """
    if config is None:
        config = load_config(config_path)

    logger.info("Starting meter bridge...")

    bridge = MeterBridge(config)

    try:
        asyncio.run(bridge.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    snapshot = bridge.store.snapshot()
    logger.info(
        f"Last reading: temperature={snapshot.temperature} "
        f"humidity={snapshot.humidity} battery={snapshot.battery}"
    )
