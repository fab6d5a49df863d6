"""
MQTT Client for Remote Communication
Publishes engine snapshots and wake commands with paho-mqtt.

MQTT Topic Structure:
- publishes: powernap/{user_id}/{device_id}/state
- publishes: powernap/{user_id}/{device_id}/wake

JSON Payload Format (from EngineSnapshot.to_json()):
{
  "timestamp": "2026-02-03T14:30:00",
  "state": "Asleep",
  "conditions": {"hrv": true, "motion": true, "combined": true},
  "readings": {"hrv": 61.2, "baseline_hrv": 50.0, "motion_level": 0.004,
               "is_still": true, "still_duration": 240.0},
  "sleep_detected": true,
  "sleep_start_time": 1770128820.0,
  "device_id": "watch_1",
  "user_id": "user_001"
}
"""

import logging
from typing import Optional

import paho.mqtt.client as mqtt

from powernap.data.models import ChangeNotification, EngineSnapshot

logger = logging.getLogger(__name__)


class MQTTError(Exception):
    """Custom exception for MQTT errors"""
    pass


class MQTTClient:
    """
    MQTT client for remote state transmission.

    Example Usage:
    >>> client = MQTTClient(broker_host="test.mosquitto.org")
    >>> client.connect()
    >>> client.attach(engine)     # publish a snapshot on every change
    >>> client.disconnect()
    """

    def __init__(self, broker_host: str = "localhost",
                 broker_port: int = 1883,
                 topic_prefix: str = "powernap",
                 user_id: str = "user_001",
                 device_id: str = "watch_1",
                 keepalive: int = 60,
                 qos: int = 1):
        """
        Initialize MQTT client.

        Args:
            broker_host: MQTT broker hostname or IP
            broker_port: MQTT broker port
            topic_prefix: Base topic prefix
            user_id: User identifier for topic structure
            device_id: Device identifier for topic structure
            keepalive: Keepalive interval in seconds
            qos: Quality of service for publishes
        """
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.topic_prefix = topic_prefix
        self.user_id = user_id
        self.device_id = device_id
        self.keepalive = keepalive
        self.qos = qos

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2,
                                  client_id=f"{topic_prefix}-{device_id}")
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.connected = False
        self.published_count = 0

    def topic(self, suffix: str) -> str:
        return f"{self.topic_prefix}/{self.user_id}/{self.device_id}/{suffix}"

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self.connected = not reason_code.is_failure
        if self.connected:
            logger.info(f"Connected to MQTT broker {self.broker_host}:{self.broker_port}")
        else:
            logger.error(f"MQTT connection refused: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected = False
        logger.info(f"Disconnected from MQTT broker ({reason_code})")

    def connect(self) -> bool:
        """
        Connect to MQTT broker and start the network loop.

        Returns:
            True if the connection request succeeded

        Raises:
            MQTTError: If the broker cannot be reached
        """
        try:
            rc = self.client.connect(self.broker_host, self.broker_port, self.keepalive)
        except OSError as e:
            raise MQTTError(f"Cannot reach broker {self.broker_host}:{self.broker_port}: {e}") from e

        self.connected = (rc == mqtt.MQTT_ERR_SUCCESS)
        if self.connected:
            self.client.loop_start()
        else:
            logger.error(f"MQTT connect failed: {mqtt.error_string(rc)}")
        return self.connected

    def disconnect(self):
        """Disconnect from MQTT broker"""
        self.client.loop_stop()
        self.client.disconnect()
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def publish(self, topic: str, payload: str, qos: Optional[int] = None) -> bool:
        """
        Publish a payload.

        Returns:
            True if the message was queued for delivery

        Raises:
            MQTTError: If not connected
        """
        if not self.connected:
            raise MQTTError("Not connected to MQTT broker")

        info = self.client.publish(topic, payload, qos=self.qos if qos is None else qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")
            return False
        self.published_count += 1
        return True

    def publish_snapshot(self, snapshot: EngineSnapshot) -> bool:
        return self.publish(self.topic("state"),
                            snapshot.to_json(device_id=self.device_id, user_id=self.user_id))

    # ------------------------------------------------------------------
    # Engine bridge
    # ------------------------------------------------------------------

    def attach(self, engine):
        """Publish a snapshot on every engine change notification"""
        engine.subscribe(self._on_engine_change)

    def detach(self, engine):
        engine.unsubscribe(self._on_engine_change)

    def _on_engine_change(self, notification: ChangeNotification):
        try:
            self.publish_snapshot(notification.snapshot)
        except MQTTError as e:
            logger.error(f"Failed to publish state: {e}")
