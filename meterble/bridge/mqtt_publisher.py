"""MQTT publisher for meter readings."""

import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

from meterble.meter.store import FieldChange, ReadingStore, Subscription
from meterble.shared.mqtt import MQTTConfig, create_sensor_payload

logger = logging.getLogger(__name__)

UNITS = {
    "temperature": "C",
    "humidity": "%",
    "battery": "%",
    "is_active": "",
}

TOPIC_NAMES = {
    "is_active": "active",
}


class MQTTPublisher:
    """Publishes ReadingStore changes to an MQTT broker."""

    def __init__(self, config: MQTTConfig, sensor_id: str = "meter"):
        """Initialize MQTT publisher.

        Args:
            config: MQTT configuration.
            sensor_id: Value of the "sensor" key in every payload.
        """
        self.config = config
        self.sensor_id = sensor_id
        self.client: Optional[mqtt.Client] = None
        self._connected = False
        self._connect_event = threading.Event()
        self._subscription: Optional[Subscription] = None

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Handle connection to broker."""
        if reason_code == 0:
            logger.info(
                f"Connected to MQTT broker at {self.config.broker}:{self.config.port}"
            )
            self._connected = True
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            self._connected = False
        self._connect_event.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """Handle disconnection from broker."""
        self._connected = False
        if reason_code != 0:
            logger.warning(f"Unexpected MQTT disconnection (reason={reason_code})")
        else:
            logger.info("Disconnected from MQTT broker")

    def connect(self, timeout: float = 10.0) -> bool:
        """Connect to the MQTT broker.

        Args:
            timeout: Timeout in seconds to wait for connection.

        Returns:
            True if connected successfully, False otherwise.
        """
        self._connect_event.clear()

        self.client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=self.config.client_id,
            reconnect_on_failure=False,
        )
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        if self.config.username:
            self.client.username_pw_set(self.config.username, self.config.password)

        logger.info(
            f"Connecting to MQTT broker at {self.config.broker}:{self.config.port}"
        )

        try:
            self.client.connect(
                self.config.broker, self.config.port, keepalive=self.config.keepalive
            )
            self.client.loop_start()

            if self._connect_event.wait(timeout=timeout):
                return self._connected
            logger.error("Timeout waiting for MQTT connection")
            return False
        except OSError as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self):
        """Stop observing the store and disconnect from the broker."""
        self.detach()
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.client = None
            self._connected = False

    def attach(self, store: ReadingStore):
        """Publish every change of ``store`` from now on."""
        self.detach()
        self._subscription = store.subscribe(self.on_change)

    def detach(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def topic_for(self, field: str) -> str:
        return f"{self.config.topic_prefix}/{TOPIC_NAMES.get(field, field)}"

    def on_change(self, change: FieldChange):
        """Store observer: publish the new value of one field."""
        self.publish(change.field, change.new)

    def publish(self, field: str, value):
        """Publish one field value.

        Args:
            field: Store field name (e.g., "temperature").
            value: The new value.
        """
        if not self._connected or not self.client:
            logger.warning(f"MQTT not connected, dropping {field}={value}")
            return

        topic = self.topic_for(field)
        payload = create_sensor_payload(value, UNITS.get(field, ""), self.sensor_id)

        result = self.client.publish(topic, payload, qos=self.config.qos)
        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"Published to {topic}: {payload}")
        else:
            logger.warning(f"Failed to publish to {topic}: rc={result.rc}")

    @property
    def is_connected(self) -> bool:
        """Check if connected to MQTT broker."""
        return self._connected
