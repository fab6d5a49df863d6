"""
Motion Source Interface
Contract for the 3-axis accelerometer provider plus a simulated
implementation that generates wrist-worn accelerometer data.

Acceleration is reported in g. At rest the vector magnitude is ~1g
(gravity only); the processor removes gravity downstream.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)

# Callback signature: (x, y, z, timestamp)
MotionCallback = Callable[[float, float, float, float], None]


class MotionSourceError(Exception):
    """Custom exception for motion source errors"""
    pass


class SensorUnavailableError(MotionSourceError):
    """Accelerometer hardware is absent or not accessible"""
    pass


class MotionSource(ABC):
    """
    Abstract base class for accelerometer providers.
    """

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def subscribe(self, interval: float, callback: MotionCallback) -> None:
        """
        Start delivering samples every `interval` seconds.

        Raises:
            SensorUnavailableError: If the accelerometer is not available
        """
        pass

    @abstractmethod
    def unsubscribe(self) -> None:
        pass


class SimulatedMotionSource(MotionSource):
    """
    Simulated wrist accelerometer.

    Generates gravity plus Gaussian noise on a background thread.
    `activity` is the noise standard deviation in g: ~0.005 for a still
    sleeper, 0.05+ for someone fidgeting.

    With autorun=False no thread is started and samples are pushed
    manually via emit(), which keeps tests deterministic.
    """

    GRAVITY = (0.0, 0.0, -1.0)

    def __init__(self, available: bool = True, activity: float = 0.005,
                 autorun: bool = True, seed: Optional[int] = None):
        self.available = available
        self.activity = activity
        self.autorun = autorun

        self._rng = np.random.default_rng(seed)
        self._callback: Optional[MotionCallback] = None
        self._interval = 1.0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        logger.info(f"SimulatedMotionSource initialized (activity {activity:.3f}g)")

    def is_available(self) -> bool:
        return self.available

    def subscribe(self, interval: float, callback: MotionCallback) -> None:
        if not self.available:
            raise SensorUnavailableError("Accelerometer not available")

        self.unsubscribe()
        self._interval = interval
        self._callback = callback

        if self.autorun:
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="simulated-motion", daemon=True
            )
            self._thread.start()

    def unsubscribe(self) -> None:
        self._callback = None
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

    @property
    def is_subscribed(self) -> bool:
        return self._callback is not None

    def set_activity(self, activity: float):
        """Change the simulated movement level (noise std dev in g)"""
        self.activity = max(0.0, activity)

    def generate(self) -> np.ndarray:
        """One simulated (x, y, z) acceleration vector"""
        noise = self._rng.normal(0.0, self.activity, 3)
        return np.array(self.GRAVITY) + noise

    def emit(self, x: float, y: float, z: float, timestamp: Optional[float] = None) -> bool:
        """
        Deliver one sample to the subscriber.

        Returns:
            True if a subscriber received the sample
        """
        callback = self._callback
        if callback is None:
            return False
        callback(x, y, z, time.time() if timestamp is None else timestamp)
        return True

    def _run(self):
        while not self._stop_event.wait(self._interval):
            x, y, z = self.generate()
            try:
                self.emit(float(x), float(y), float(z))
            except Exception as e:
                logger.error(f"Motion callback failed: {e}")
