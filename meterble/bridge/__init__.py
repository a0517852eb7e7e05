"""Meter bridge - reads meters over BLE and publishes the readings."""

from .bridge_service import MeterBridge


def main(argv=None):
    """Entry point for the meter bridge service."""
    import argparse

    from meterble.meter.models import ScanMode
    from meterble.shared.logging import setup_logging

    from .config import load_config

    parser = argparse.ArgumentParser(description="Read temperature and humidity from BLE meters")
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--mode", choices=[m.value for m in ScanMode],
                        help="Observe advertisements or connect and read")
    parser.add_argument("--once", action="store_true",
                        help="Stop after the first reading")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Override the configured log level")
    parser.add_argument("--no-display", action="store_true",
                        help="Disable the terminal display")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.mode:
        config.ble.mode = ScanMode(args.mode)
    if args.once:
        config.ble.single_shot = True
    if args.log_level:
        config.log_level = args.log_level
    if args.no_display:
        config.display.enabled = False

    setup_logging(config.log_level)

    from .bridge_service import run_bridge
    run_bridge(config)


__all__ = ["MeterBridge", "main"]
