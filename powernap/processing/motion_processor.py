"""
Motion Signal Processor
Converts raw wrist accelerometer samples into a stillness decision.

Two views over one buffer:
- Short window (last 20 samples, ~20s): responsive current motion level
- Long window (last 300 samples, ~5min): stable stillness decision

The stillness threshold adapts to the wearer (mean + 1 std dev of the
long window, clamped) unless a manual threshold has been set.
"""

import logging
import time
from collections import deque
from typing import Dict, List, Optional

import numpy as np

from powernap.data.models import MotionSample, MotionSnapshot, StillnessInterval

logger = logging.getLogger(__name__)


class MotionProcessorError(Exception):
    """Custom exception for motion processor errors"""
    pass


class MotionProcessor:
    """
    Accelerometer stillness tracker.

    Not thread-safe by itself: a single consumer (the engine's motion
    worker) owns all mutation. Other threads read snapshot() results.
    """

    DEFAULT_LONG_WINDOW = 300       # samples (~5 min at 1 Hz)
    DEFAULT_SHORT_WINDOW = 20       # samples (~20 s at 1 Hz)
    DEFAULT_THRESHOLD = 0.02        # g

    # Auto-adjust bounds
    AUTO_THRESHOLD_MIN = 0.015
    AUTO_THRESHOLD_MAX = 0.05
    ADJUST_INTERVAL = 60.0          # seconds between adjustments
    MIN_ADJUST_SAMPLES = 60         # need ~1 min of data

    # Manual threshold bounds
    MANUAL_THRESHOLD_MIN = 0.005
    MANUAL_THRESHOLD_MAX = 0.1

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize motion processor.

        Args:
            config: Configuration dictionary:
                - long_window: Long window capacity in samples
                - short_window: Short window size in samples
                - motion_threshold: Initial stillness threshold (g)
                - auto_adjust_threshold: Adapt threshold to the wearer
                - adjust_interval: Seconds between auto adjustments
                - min_adjust_samples: Samples required before adjusting
        """
        self.config = config or {}

        self.long_window = int(self.config.get('long_window', self.DEFAULT_LONG_WINDOW))
        self.short_window = int(self.config.get('short_window', self.DEFAULT_SHORT_WINDOW))
        if self.long_window < 1 or not 1 <= self.short_window <= self.long_window:
            raise MotionProcessorError(
                f"Invalid window sizes: long={self.long_window}, short={self.short_window}"
            )

        self.motion_threshold = self.config.get('motion_threshold', self.DEFAULT_THRESHOLD)
        self.auto_adjust_threshold = self.config.get('auto_adjust_threshold', True)
        self.adjust_interval = self.config.get('adjust_interval', self.ADJUST_INTERVAL)
        self.min_adjust_samples = self.config.get('min_adjust_samples', self.MIN_ADJUST_SAMPLES)

        self.samples: deque = deque(maxlen=self.long_window)

        self.current_motion_level = 0.0
        self.is_still = False
        self.still_start: Optional[float] = None
        self.still_duration = 0.0
        self._last_adjust_time: Optional[float] = None
        self._last_update_time: Optional[float] = None

        logger.info(f"MotionProcessor initialized")
        logger.info(f"  Windows: long={self.long_window}, short={self.short_window}")
        logger.info(f"  Threshold: {self.motion_threshold:.3f}g "
                    f"(auto-adjust {'on' if self.auto_adjust_threshold else 'off'})")

    @staticmethod
    def magnitude(x: float, y: float, z: float) -> float:
        """Acceleration magnitude with gravity (1g) removed"""
        return abs(float(np.linalg.norm([x, y, z])) - 1.0)

    def add_sample(self, x: float, y: float, z: float,
                   timestamp: Optional[float] = None) -> MotionSample:
        """
        Ingest one raw accelerometer vector.

        Args:
            x, y, z: Acceleration in g
            timestamp: Sample time (default: now)

        Returns:
            The stored MotionSample
        """
        return self.add_magnitude(self.magnitude(x, y, z), timestamp)

    def add_magnitude(self, magnitude: float, timestamp: Optional[float] = None) -> MotionSample:
        """Ingest an already gravity-removed magnitude"""
        sample = MotionSample(
            timestamp=time.time() if timestamp is None else timestamp,
            magnitude=float(magnitude),
        )
        # deque(maxlen) evicts the oldest sample first
        self.samples.append(sample)
        self.current_motion_level = self._short_mean()
        return sample

    def _magnitudes(self) -> np.ndarray:
        return np.fromiter((s.magnitude for s in self.samples), dtype=float,
                           count=len(self.samples))

    def _short_mean(self) -> float:
        if not self.samples:
            return 0.0
        recent = list(self.samples)[-self.short_window:]
        return float(np.mean([s.magnitude for s in recent]))

    def long_average(self) -> Optional[float]:
        """Mean magnitude of the long window (None if empty)"""
        if not self.samples:
            return None
        return float(np.mean(self._magnitudes()))

    def short_window_samples(self) -> List[MotionSample]:
        return list(self.samples)[-self.short_window:]

    def update(self, now: Optional[float] = None) -> bool:
        """
        Periodic stillness evaluation (motion-update cadence, ~2s).

        Args:
            now: Evaluation time (default: now)

        Returns:
            Current stillness
        """
        now = time.time() if now is None else now
        self._last_update_time = now

        average = self.long_average()
        new_is_still = average is not None and average < self.motion_threshold

        if new_is_still != self.is_still:
            if new_is_still:
                self.still_start = now
                logger.info(f"Stillness started (avg {average:.4f}g < {self.motion_threshold:.4f}g)")
            else:
                still_for = now - self.still_start if self.still_start is not None else 0.0
                self.still_start = None
                logger.info(f"Stillness ended after {still_for:.1f}s")
            self.still_duration = 0.0
            self.is_still = new_is_still
        elif self.is_still and self.still_start is not None:
            self.still_duration = now - self.still_start

        if self.auto_adjust_threshold:
            if self._last_adjust_time is None:
                self._last_adjust_time = now
            elif now - self._last_adjust_time >= self.adjust_interval:
                self._last_adjust_time = now
                self.adjust_threshold()

        return self.is_still

    def adjust_threshold(self) -> bool:
        """
        Set threshold to mean + 1 std dev of the long window, clamped.

        Returns:
            True if the threshold was recomputed
        """
        if len(self.samples) < self.min_adjust_samples:
            return False

        magnitudes = self._magnitudes()
        mean = float(np.mean(magnitudes))
        std_dev = float(np.std(magnitudes))
        new_threshold = min(max(mean + std_dev, self.AUTO_THRESHOLD_MIN), self.AUTO_THRESHOLD_MAX)

        if new_threshold != self.motion_threshold:
            logger.debug(f"Motion threshold adjusted: {self.motion_threshold:.4f}g -> {new_threshold:.4f}g")
        self.motion_threshold = new_threshold
        return True

    def set_threshold(self, threshold: float) -> float:
        """
        Manually set the stillness threshold. Disables auto-adjust.

        Returns:
            The clamped threshold actually applied
        """
        safe_threshold = min(max(threshold, self.MANUAL_THRESHOLD_MIN), self.MANUAL_THRESHOLD_MAX)
        self.motion_threshold = safe_threshold
        self.auto_adjust_threshold = False
        logger.info(f"Manual motion threshold set: {safe_threshold:.4f}g (auto-adjust off)")
        return safe_threshold

    def has_been_still_for(self, seconds: float, now: Optional[float] = None) -> bool:
        """Check if the wearer has been continuously still for `seconds`"""
        if not self.is_still or self.still_start is None:
            return False
        now = time.time() if now is None else now
        return now - self.still_start >= seconds

    def stillness(self) -> Optional[StillnessInterval]:
        if not self.is_still or self.still_start is None:
            return None
        return StillnessInterval(self.still_start, self.still_duration)

    def get_motion_data_for_last_minutes(self, minutes: int) -> List[float]:
        """Magnitudes for the last `minutes` (assuming 1 Hz sampling)"""
        points_needed = min(max(minutes, 0) * 60, len(self.samples))
        if points_needed == 0:
            return []
        return [s.magnitude for s in list(self.samples)[-points_needed:]]

    def snapshot(self, now: Optional[float] = None) -> MotionSnapshot:
        """Immutable copy of the current motion state for other threads"""
        if now is None:
            now = self._last_update_time if self._last_update_time is not None else time.time()
        return MotionSnapshot(
            timestamp=now,
            motion_level=self.current_motion_level,
            is_still=self.is_still,
            still_start=self.still_start,
            still_duration=self.still_duration,
            threshold=self.motion_threshold,
            sample_count=len(self.samples),
        )

    def get_stats(self) -> Dict:
        average = self.long_average()
        return {
            'sample_count': len(self.samples),
            'current_motion_level': self.current_motion_level,
            'long_average': average if average is not None else 0.0,
            'motion_threshold': self.motion_threshold,
            'auto_adjust_threshold': self.auto_adjust_threshold,
            'is_still': self.is_still,
            'still_duration': self.still_duration,
        }

    def reset(self):
        """Clear samples and stillness state (threshold settings are kept)"""
        self.samples.clear()
        self.current_motion_level = 0.0
        self.is_still = False
        self.still_start = None
        self.still_duration = 0.0
        self._last_adjust_time = None
        self._last_update_time = None
        logger.debug("MotionProcessor reset")
