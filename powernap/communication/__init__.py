# PowerNap - Communication Module
# Wake alarm outputs and MQTT state publishing

from .mqtt_client import MQTTClient, MQTTError
from .wake_signal import (
    WakeSignal,
    WakeSignalError,
    LoggingWakeSignal,
    MQTTWakeSignal,
    haptic_level,
)

__all__ = [
    "MQTTClient",
    "MQTTError",
    "WakeSignal",
    "WakeSignalError",
    "LoggingWakeSignal",
    "MQTTWakeSignal",
    "haptic_level",
]
