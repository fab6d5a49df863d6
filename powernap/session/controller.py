"""
Nap Session Controller
Runs the nap countdown on top of the sleep detection engine and fires the
wake signal when it expires.

Countdown reference:
- From session start while the wearer is still awake
- From confirmed sleep onset (sleep_start_time) once the engine reports
  sleep, so the nap length counts sleep rather than time lying down
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, Optional

from powernap.communication.wake_signal import WakeSignal, WakeSignalError
from powernap.data.models import ChangeNotification, HRVReading, NapSessionRecord, NapStatus
from powernap.processing.engine import SleepDetectionEngine
from powernap.processing.scheduler import PeriodicScheduler
from powernap.processing.sleep_detector import SleepState
from powernap.sensors.biometric_source import PermissionDeniedError

logger = logging.getLogger(__name__)


class NapSessionController:
    """
    One nap at a time: countdown, pause/resume, cancel and wake.

    Countdown state is guarded by a lock; the engine is always started and
    stopped outside it so engine listeners never wait on a joining thread.
    """

    DEFAULT_DURATION_MINUTES = 20
    MIN_DURATION_MINUTES = 1
    MAX_DURATION_MINUTES = 30
    DEFAULT_HAPTIC_STRENGTH = 1     # 0 light, 1 medium, 2 strong
    TICK_INTERVAL = 1.0

    STATUS_TEXT = {
        SleepState.AWAKE: "Monitoring",
        SleepState.POTENTIAL_SLEEP: "Possibly falling asleep",
        SleepState.ASLEEP: "Sleeping",
        SleepState.DISTURBED: "Sleep disturbed",
    }

    def __init__(self, engine: SleepDetectionEngine, wake_signal: WakeSignal,
                 config: Optional[Dict] = None, clock: Optional[Callable[[], float]] = None):
        """
        Initialize session controller.

        Args:
            engine: Sleep detection engine
            wake_signal: Wake alarm output
            config: Configuration dictionary:
                - nap_duration_minutes: Countdown length (1-30)
                - haptic_strength: 0 light, 1 medium, 2 strong
                - sound_enabled: Play a sound with the wake haptic
                - sleep_detection_enabled: Run the engine during naps
            clock: Time source returning POSIX seconds (default: time.time)
        """
        self.config = config or {}
        self.engine = engine
        self.wake_signal = wake_signal
        self.clock = clock or time.time

        self.is_active = False
        self.duration_minutes = self.DEFAULT_DURATION_MINUTES
        self.set_duration(self.config.get('nap_duration_minutes', self.DEFAULT_DURATION_MINUTES))
        self.haptic_strength = self.config.get('haptic_strength', self.DEFAULT_HAPTIC_STRENGTH)
        self.sound_enabled = self.config.get('sound_enabled', True)
        self.sleep_detection_enabled = self.config.get('sleep_detection_enabled', True)

        self._lock = threading.RLock()
        self._scheduler: Optional[PeriodicScheduler] = None
        self._session_counter = 0

        self.is_paused = False
        self.is_completed = False
        self.record: Optional[NapSessionRecord] = None
        self.sleep_state = SleepState.AWAKE
        self.counting_from_onset = False

        self._reference_time: Optional[float] = None
        self._paused_total = 0.0
        self._paused_at: Optional[float] = None

        self.engine.subscribe(self._on_engine_change)

        logger.info(f"NapSessionController initialized ({self.duration_minutes} min, "
                    f"sleep detection {'on' if self.sleep_detection_enabled else 'off'})")

    # ------------------------------------------------------------------
    # Settings (idle only)
    # ------------------------------------------------------------------

    def set_duration(self, minutes: int) -> bool:
        """
        Set the nap length.

        Returns:
            False if a session is active or the value is out of range
        """
        if self.is_active:
            logger.warning("Cannot change nap duration during a session")
            return False
        if not self.MIN_DURATION_MINUTES <= minutes <= self.MAX_DURATION_MINUTES:
            logger.warning(f"Nap duration {minutes} min outside "
                           f"{self.MIN_DURATION_MINUTES}-{self.MAX_DURATION_MINUTES} min")
            return False
        self.duration_minutes = int(minutes)
        return True

    def toggle_sleep_detection(self, enabled: bool) -> bool:
        """Enable or disable the engine for the next session"""
        with self._lock:
            if self.is_active:
                logger.warning("Cannot toggle sleep detection during a session")
                return False
            self.sleep_detection_enabled = bool(enabled)
            logger.info(f"Sleep detection {'enabled' if enabled else 'disabled'}")
            return True

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start(self, now: Optional[float] = None, run_scheduler: bool = True) -> bool:
        """
        Start a nap.

        Args:
            now: Start time (default: clock())
            run_scheduler: Drive tick() from a 1s scheduler thread

        Returns:
            True if the nap started
        """
        with self._lock:
            if self.is_active:
                logger.warning("Nap session already active")
                return False

        readings = None
        if self.sleep_detection_enabled:
            try:
                self.engine.start(run_scheduler=run_scheduler)
            except PermissionDeniedError as e:
                logger.error(f"Cannot start nap with sleep detection: {e}")
                return False
            # Ticks fired before the session is active are not delivered
            readings = self.engine.readings_snapshot()

        with self._lock:
            now = self.clock() if now is None else now
            self._session_counter += 1
            self.record = NapSessionRecord(
                session_id=self._session_counter,
                start_time=now,
                duration_minutes=self.duration_minutes,
            )
            self._reference_time = now
            self._paused_total = 0.0
            self._paused_at = None
            self.counting_from_onset = False
            self.sleep_state = SleepState.AWAKE
            self.is_paused = False
            self.is_completed = False
            self.is_active = True
            if readings:
                self._record_readings(now, readings['hrv'], readings['baseline_hrv'])

            if run_scheduler:
                self._scheduler = PeriodicScheduler(self.TICK_INTERVAL, self.tick, "nap-countdown")
                self._scheduler.start()

        logger.info(f"Nap started: {self.duration_minutes} min (session {self._session_counter})")
        return True

    def pause(self, now: Optional[float] = None) -> bool:
        with self._lock:
            if not self.is_active or self.is_paused:
                return False
            self._paused_at = self.clock() if now is None else now
            self.is_paused = True
            logger.info("Nap paused")
            return True

    def resume(self, now: Optional[float] = None) -> bool:
        with self._lock:
            if not self.is_active or not self.is_paused:
                return False
            now = self.clock() if now is None else now
            self._paused_total += max(0.0, now - self._paused_at)
            self._paused_at = None
            self.is_paused = False
            logger.info("Nap resumed")
            return True

    def stop(self, now: Optional[float] = None) -> bool:
        """
        Cancel the nap without waking.

        Returns:
            True if an active nap was canceled
        """
        with self._lock:
            if not self.is_active:
                return False
            now = self.clock() if now is None else now
            self.record.status = NapStatus.CANCELED
            self.record.end_time = now
            self.is_active = False
            self.is_paused = False
            scheduler, self._scheduler = self._scheduler, None

        self._shutdown(scheduler)
        logger.info("Nap canceled")
        return True

    def tick(self, now: Optional[float] = None):
        """Countdown step; wakes the user once the time is up"""
        with self._lock:
            if not self.is_active or self.is_paused:
                return
            now = self.clock() if now is None else now
            if self.time_remaining(now) > 0:
                return
        self._complete(now)

    def _complete(self, now: float):
        with self._lock:
            if not self.is_active:
                return
            self.record.status = NapStatus.COMPLETED
            self.record.end_time = now
            self.is_active = False
            self.is_completed = True
            scheduler, self._scheduler = self._scheduler, None

        logger.info("Nap complete - waking user")
        try:
            self.wake_signal.trigger(self.haptic_strength, self.sound_enabled)
        except WakeSignalError as e:
            logger.error(f"Failed to trigger wake signal: {e}")

        self._shutdown(scheduler)

    def _shutdown(self, scheduler: Optional[PeriodicScheduler]):
        if self.sleep_detection_enabled:
            self.engine.stop()
        if scheduler:
            scheduler.stop()

    # ------------------------------------------------------------------
    # Engine notifications
    # ------------------------------------------------------------------

    def _on_engine_change(self, notification: ChangeNotification):
        with self._lock:
            if not self.is_active:
                return
            snapshot = notification.snapshot
            self.sleep_state = SleepState(snapshot.sleep_state)

            if notification.changed('baseline_hrv') or notification.changed('hrv'):
                self._record_readings(notification.timestamp, snapshot.hrv, snapshot.baseline_hrv)

            if (snapshot.sleep_detected and not self.counting_from_onset
                    and snapshot.sleep_start_time is not None):
                self._restart_countdown_from(snapshot.sleep_start_time)
                self.record.sleep_detected_time = snapshot.sleep_start_time
                self.record.status = NapStatus.SLEEPING

    def _record_readings(self, timestamp: float, hrv: Optional[float], baseline: Optional[float]):
        """Store baseline and a new HRV value on the record (caller holds the lock)"""
        if baseline and baseline > 0:
            self.record.hrv_baseline = baseline
        if hrv and hrv > 0:
            seen = self.record.hrv_during_nap
            if not seen or seen[-1].value_ms != hrv:
                seen.append(HRVReading(timestamp=timestamp, value_ms=hrv))

    def _restart_countdown_from(self, onset: float):
        self.counting_from_onset = True
        self._reference_time = onset
        self._paused_total = 0.0
        if self._paused_at is not None:
            self._paused_at = max(self._paused_at, onset)
        logger.info("Sleep detected - countdown now runs from sleep onset")

    # ------------------------------------------------------------------
    # Countdown
    # ------------------------------------------------------------------

    @property
    def total_seconds(self) -> float:
        return self.duration_minutes * 60.0

    def time_remaining(self, now: Optional[float] = None) -> float:
        """Seconds left in the countdown"""
        with self._lock:
            if not self.is_active:
                return 0.0 if self.is_completed else self.total_seconds
            now = self.clock() if now is None else now
            elapsed = now - self._reference_time - self._paused_total
            if self._paused_at is not None:
                elapsed -= now - self._paused_at
            return min(self.total_seconds, max(0.0, self.total_seconds - elapsed))

    def progress(self, now: Optional[float] = None) -> float:
        """Countdown progress in [0, 1]"""
        return 1.0 - self.time_remaining(now) / self.total_seconds

    def formatted_time_remaining(self, now: Optional[float] = None) -> str:
        """Remaining time as MM:SS"""
        remaining = int(math.ceil(self.time_remaining(now)))
        minutes, seconds = divmod(remaining, 60)
        return f"{minutes:02d}:{seconds:02d}"

    @property
    def monitoring_status(self) -> str:
        with self._lock:
            if not self.is_active:
                return "Completed" if self.is_completed else "Ready"
            if self.is_paused:
                return "Paused"
            if not self.sleep_detection_enabled:
                return "Timer running"
            return self.STATUS_TEXT[self.sleep_state]

    def get_stats(self, now: Optional[float] = None) -> Dict:
        with self._lock:
            return {
                'active': self.is_active,
                'paused': self.is_paused,
                'completed': self.is_completed,
                'duration_minutes': self.duration_minutes,
                'time_remaining': self.time_remaining(now),
                'status': self.monitoring_status,
                'counting_from_onset': self.counting_from_onset,
                'record': self.record.to_dict() if self.record else None,
            }
