"""Configuration loading for the meter bridge."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from dotenv import find_dotenv, load_dotenv

from meterble.meter.models import ScanMode
from meterble.shared.config import default_config_path, read_config_file
from meterble.shared.mqtt import MQTTConfig

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class BLEConfig:
    """BLE scanning and connection configuration."""
    mode: ScanMode = ScanMode.ADVERTISEMENT
    single_shot: bool = False
    connection_timeout: float = 20.0
    notification_timeout: Optional[float] = 30.0
    radio_retry_interval: float = 10.0
    scanning_mode: str = "active"


@dataclass
class DisplayConfig:
    """Terminal display configuration."""
    enabled: bool = True
    refresh_per_second: float = 4.0


@dataclass
class Config:
    """Main configuration."""
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    ble: BLEConfig = field(default_factory=BLEConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    log_level: str = "INFO"


def _parse_mode(value) -> ScanMode:
    try:
        return ScanMode(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in ScanMode)
        raise ValueError(f"ble.mode must be one of: {choices} (got {value!r})")


def _optional_seconds(value, name: str) -> Optional[float]:
    if value is None:
        return None
    seconds = float(value)
    if seconds <= 0:
        raise ValueError(f"{name} must be positive or null")
    return seconds


def parse_config(data: dict) -> Config:
    """Build a Config from an already loaded YAML dictionary.

    Raises:
        ValueError: If a value has the wrong type or is out of range.
    """
    ble_data = data.get("ble") or {}
    ble_config = BLEConfig(
        mode=_parse_mode(ble_data.get("mode", "advertisement")),
        single_shot=bool(ble_data.get("single_shot", False)),
        connection_timeout=float(ble_data.get("connection_timeout", 20.0)),
        notification_timeout=_optional_seconds(
            ble_data.get("notification_timeout", 30.0), "ble.notification_timeout"
        ),
        radio_retry_interval=float(ble_data.get("radio_retry_interval", 10.0)),
        scanning_mode=ble_data.get("scanning_mode", "active"),
    )
    if ble_config.scanning_mode not in ("active", "passive"):
        raise ValueError("ble.scanning_mode must be 'active' or 'passive'")

    display_data = data.get("display") or {}
    display_config = DisplayConfig(
        enabled=bool(display_data.get("enabled", True)),
        refresh_per_second=float(display_data.get("refresh_per_second", 4.0)),
    )

    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    return Config(
        mqtt=MQTTConfig.from_dict(data.get("mqtt") or {}),
        ble=ble_config,
        display=display_config,
        log_level=log_level,
    )


def load_config(config_path: Optional[Union[str, Path]] = None) -> Config:
    """Load configuration from YAML file.

    A .env file in the working directory is loaded first, so it can set
    METERBLE_CONFIG, METERBLE_ENV and the MQTT credentials.

    Args:
        config_path: Path to config file. If None, uses METERBLE_CONFIG or
            config/config-{METERBLE_ENV}.yaml, falling back to defaults when
            that file does not exist.

    Returns:
        Config object with loaded settings.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
    """
    load_dotenv(find_dotenv(usecwd=True))

    if config_path is None:
        default_path = default_config_path()
        if not default_path.exists():
            logger.debug(f"No config at {default_path}, using defaults")
            return parse_config({})
        config_path = default_path

    return parse_config(read_config_file(config_path))
