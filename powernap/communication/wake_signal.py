"""
Wake Signal Outputs
The alarm fired when a nap countdown expires. Playback itself (haptics,
sound) is done by whatever device receives the signal.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import List, Tuple

from powernap.communication.mqtt_client import MQTTClient, MQTTError

logger = logging.getLogger(__name__)

HAPTIC_LEVELS = ("light", "medium", "strong")


class WakeSignalError(Exception):
    """Custom exception for wake signal errors"""
    pass


def haptic_level(strength: int) -> str:
    """Map a 0-2 strength to its haptic level name (clamped)"""
    return HAPTIC_LEVELS[min(max(int(strength), 0), len(HAPTIC_LEVELS) - 1)]


class WakeSignal(ABC):
    """Wake alarm output"""

    @abstractmethod
    def trigger(self, strength: int, with_sound: bool):
        """
        Fire the wake alarm.

        Args:
            strength: Haptic strength, 0 light, 1 medium, 2 strong
            with_sound: Play a sound alongside the haptic
        """


class LoggingWakeSignal(WakeSignal):
    """Logs wake alarms and keeps them for inspection"""

    def __init__(self):
        self.triggers: List[Tuple[int, bool]] = []

    def trigger(self, strength: int, with_sound: bool):
        self.triggers.append((strength, with_sound))
        logger.info(f"WAKE UP! haptic={haptic_level(strength)}, sound={'on' if with_sound else 'off'}")


class MQTTWakeSignal(WakeSignal):
    """Sends the wake alarm as a JSON command on the wake topic"""

    def __init__(self, client: MQTTClient):
        self.client = client

    def trigger(self, strength: int, with_sound: bool):
        payload = json.dumps({
            'command': 'wake',
            'haptic': haptic_level(strength),
            'sound': bool(with_sound),
            'timestamp': time.time(),
            'device_id': self.client.device_id,
            'user_id': self.client.user_id,
        })
        try:
            published = self.client.publish(self.client.topic("wake"), payload)
        except MQTTError as e:
            raise WakeSignalError(f"Wake command not sent: {e}") from e
        if not published:
            raise WakeSignalError("Wake command rejected by MQTT client")
        logger.info(f"Wake command sent (haptic={haptic_level(strength)})")
