"""MQTT configuration and utilities."""

import json
import os
import time
from dataclasses import dataclass
from typing import Optional, Union


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""
    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    client_id: str = "meterble"
    keepalive: int = 60
    qos: int = 1
    topic_prefix: str = "meter"
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "MQTTConfig":
        """Create config from dictionary.

        METERBLE_MQTT_USERNAME and METERBLE_MQTT_PASSWORD, usually set in
        .env, take precedence over the file so credentials stay out of it.
        """
        return cls(
            enabled=bool(data.get("enabled", False)),
            broker=data.get("broker", "localhost"),
            port=int(data.get("port", 1883)),
            client_id=data.get("client_id", "meterble"),
            keepalive=int(data.get("keepalive", 60)),
            qos=int(data.get("qos", 1)),
            topic_prefix=str(data.get("topic_prefix", "meter")).rstrip("/"),
            username=os.getenv("METERBLE_MQTT_USERNAME", data.get("username")),
            password=os.getenv("METERBLE_MQTT_PASSWORD", data.get("password")),
        )


def create_sensor_payload(
    value: Optional[Union[float, int, bool]],
    unit: str,
    sensor_id: str,
    timestamp: Optional[float] = None,
) -> str:
    """Create a standardized MQTT payload for sensor readings.

    Args:
        value: The sensor value, None when it was cleared.
        unit: Unit of measurement (e.g., 'C', '%').
        sensor_id: Identifier for the sensor.
        timestamp: Unix timestamp (defaults to current time).

    Returns:
        JSON string payload.
    """
    return json.dumps({
        "value": value,
        "unit": unit,
        "ts": timestamp or time.time(),
        "sensor": sensor_id,
    })
