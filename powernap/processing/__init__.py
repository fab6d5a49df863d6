# PowerNap - Processing Module
# Signal processors, sleep state machine and the detection engine

from .motion_processor import MotionProcessor, MotionProcessorError
from .hrv_processor import HRVProcessor, FALLBACK_BASELINE_MS
from .sleep_detector import SleepStateMachine, SleepState, ConditionState, StateTransition
from .events import EventChannel, MotionUpdate, HRVUpdate, BaselineUpdate
from .scheduler import PeriodicScheduler
from .engine import SleepDetectionEngine, EngineError

__all__ = [
    "MotionProcessor",
    "MotionProcessorError",
    "HRVProcessor",
    "FALLBACK_BASELINE_MS",
    "SleepStateMachine",
    "SleepState",
    "ConditionState",
    "StateTransition",
    "EventChannel",
    "MotionUpdate",
    "HRVUpdate",
    "BaselineUpdate",
    "PeriodicScheduler",
    "SleepDetectionEngine",
    "EngineError",
]
