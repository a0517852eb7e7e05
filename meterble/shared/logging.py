"""Logging setup for the meterble command and payload formatting for logs."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Their DEBUG output drowns out the meter traffic
NOISY_LOGGERS = ("bleak", "asyncio")


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the whole process.

    Unknown level names fall back to INFO. bleak and asyncio stay at WARNING
    whatever the level.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def hex_bytes(data: bytes) -> str:
    """Render raw payload bytes the way they show up in debug logs."""
    return " ".join(f"{b:02x}" for b in data)
