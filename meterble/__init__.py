"""Decoding and BLE connection handling for temperature/humidity meters."""

__version__ = "0.1.0"


def main(argv=None):
    """Entry point for the meterble command."""
    from .bridge import main as bridge_main
    bridge_main(argv)


__all__ = ["main", "__version__"]
