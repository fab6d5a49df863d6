# PowerNap - Data Module
# In-process records shared across the engine and session layer

from .models import (
    MotionSample,
    HRVReading,
    Baseline,
    StillnessInterval,
    MotionSnapshot,
    NapStatus,
    NapSessionRecord,
    EngineSnapshot,
    ChangeNotification,
)

__all__ = [
    "MotionSample",
    "HRVReading",
    "Baseline",
    "StillnessInterval",
    "MotionSnapshot",
    "NapStatus",
    "NapSessionRecord",
    "EngineSnapshot",
    "ChangeNotification",
]
