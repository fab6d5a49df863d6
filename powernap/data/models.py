"""
PowerNap Data Models
Plain records shared by the sensors, processors and session layer.
All state is in-process and ephemeral per session.
"""

import json
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Any


@dataclass(frozen=True)
class MotionSample:
    """Gravity-removed acceleration magnitude (g) at a timestamp"""
    timestamp: float
    magnitude: float


@dataclass(frozen=True)
class HRVReading:
    """Single HRV (SDNN) sample in milliseconds"""
    timestamp: float
    value_ms: float
    end_timestamp: Optional[float] = None

    @property
    def end_time(self) -> float:
        return self.end_timestamp if self.end_timestamp is not None else self.timestamp

    def is_valid(self) -> bool:
        return self.value_ms > 0 and math.isfinite(self.value_ms)


@dataclass(frozen=True)
class Baseline:
    """
    Rolling HRV reference value.

    An unset baseline has value None. Zero is never used to mean "no data".
    """
    value: Optional[float] = None
    source_window_days: int = 7
    day_restricted: bool = False
    is_fallback: bool = False

    @property
    def is_empty(self) -> bool:
        return self.value is None

    def value_or(self, default: float) -> float:
        return default if self.value is None else self.value


@dataclass(frozen=True)
class StillnessInterval:
    """Exists only while motion stays below threshold"""
    start: float
    duration: float


@dataclass(frozen=True)
class MotionSnapshot:
    """Immutable view of the motion processor, handed off to the tick context"""
    timestamp: float
    motion_level: float = 0.0
    is_still: bool = False
    still_start: Optional[float] = None
    still_duration: float = 0.0
    threshold: float = 0.02
    sample_count: int = 0

    def has_been_still_for(self, seconds: float, now: float) -> bool:
        if not self.is_still or self.still_start is None:
            return False
        return now - self.still_start >= seconds

    @property
    def stillness(self) -> Optional[StillnessInterval]:
        if not self.is_still or self.still_start is None:
            return None
        return StillnessInterval(self.still_start, self.still_duration)


class NapStatus(Enum):
    """Nap session status"""
    MONITORING = "Monitoring"
    SLEEPING = "Sleeping"
    COMPLETED = "Completed"
    CANCELED = "Canceled"


@dataclass
class NapSessionRecord:
    """One power nap, from start to wake or cancel"""
    session_id: int
    start_time: float
    duration_minutes: int
    status: NapStatus = NapStatus.MONITORING
    sleep_detected_time: Optional[float] = None
    end_time: Optional[float] = None
    hrv_baseline: Optional[float] = None
    hrv_during_nap: List[HRVReading] = field(default_factory=list)

    @property
    def actual_duration(self) -> Optional[float]:
        """Seconds slept, counted from confirmed onset"""
        if self.end_time is not None and self.sleep_detected_time is not None:
            return self.end_time - self.sleep_detected_time
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['actual_duration'] = self.actual_duration
        return data


@dataclass(frozen=True)
class EngineSnapshot:
    """Every field the engine exposes to the session/UI layer at one tick"""
    timestamp: float
    sleep_state: str
    hrv_met: bool
    motion_met: bool
    combined_met: bool
    hrv: float
    baseline_hrv: float
    motion_level: float
    is_still: bool
    still_duration: float
    sleep_detected: bool
    sleep_start_time: Optional[float]
    time_in_state: float

    # Fields that change every tick by construction are not reported as changes
    VOLATILE_FIELDS = ('timestamp', 'time_in_state')

    def diff(self, other: Optional['EngineSnapshot']) -> Dict[str, Tuple[Any, Any]]:
        """
        Compare with a previous snapshot.

        Returns:
            Mapping of field name to (old, new) for every changed field
        """
        current = asdict(self)
        if other is None:
            return {k: (None, v) for k, v in current.items() if k not in self.VOLATILE_FIELDS}
        previous = asdict(other)
        return {
            k: (previous[k], v) for k, v in current.items()
            if k not in self.VOLATILE_FIELDS and previous[k] != v
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, device_id: str = "watch_1", user_id: str = "user_001") -> str:
        """
        Convert snapshot to JSON for MQTT transmission.

        JSON Schema:
        {
            "timestamp": "2026-02-03T14:30:00",
            "state": "Asleep",
            "conditions": {"hrv": true, "motion": true, "combined": true},
            "readings": {"hrv": 61.2, "baseline_hrv": 50.0, ...},
            "device_id": "watch_1",
            "user_id": "user_001"
        }
        """
        payload = {
            'timestamp': datetime.fromtimestamp(self.timestamp).isoformat(timespec='seconds'),
            'state': self.sleep_state,
            'conditions': {
                'hrv': self.hrv_met,
                'motion': self.motion_met,
                'combined': self.combined_met,
            },
            'readings': {
                'hrv': self.hrv,
                'baseline_hrv': self.baseline_hrv,
                'motion_level': self.motion_level,
                'is_still': self.is_still,
                'still_duration': self.still_duration,
            },
            'sleep_detected': self.sleep_detected,
            'sleep_start_time': self.sleep_start_time,
            'device_id': device_id,
            'user_id': user_id,
        }
        return json.dumps(payload)


@dataclass(frozen=True)
class ChangeNotification:
    """Fields that changed since the previous tick"""
    timestamp: float
    changes: Dict[str, Tuple[Any, Any]]
    snapshot: EngineSnapshot

    def changed(self, name: str) -> bool:
        return name in self.changes
