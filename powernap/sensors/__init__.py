# PowerNap - Sensors Module
# Collaborator contracts for HRV and accelerometer data providers

from .biometric_source import (
    HRV_METRIC,
    BiometricSource,
    BiometricSourceError,
    InMemoryBiometricSource,
    PermissionDeniedError,
    QueryFailureError,
    BackgroundDeliveryError,
    Subscription,
)
from .motion_source import (
    MotionSource,
    MotionSourceError,
    SensorUnavailableError,
    SimulatedMotionSource,
)

__all__ = [
    "HRV_METRIC",
    "BiometricSource",
    "BiometricSourceError",
    "InMemoryBiometricSource",
    "PermissionDeniedError",
    "QueryFailureError",
    "BackgroundDeliveryError",
    "Subscription",
    "MotionSource",
    "MotionSourceError",
    "SensorUnavailableError",
    "SimulatedMotionSource",
]
