"""
Sleep Detection Engine
Integrates the motion processor, HRV processor and sleep state machine
into one monitoring session.

Threading model:
- Motion: sensor callbacks push onto a bounded queue; a single worker
  thread drains it and is the only writer of MotionProcessor state.
- HRV: payload-free update signals trigger re-queries on a small thread
  pool; baselines are queried there too, never on the tick.
- Tick: all sleep-state mutation happens in tick(), run every second by
  a PeriodicScheduler. Worker results reach it through an EventChannel.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Set

from powernap.data.models import ChangeNotification, EngineSnapshot, MotionSnapshot
from powernap.processing.events import (
    BaselineUpdate,
    EngineEvent,
    EventChannel,
    HRVUpdate,
    MotionUpdate,
)
from powernap.processing.hrv_processor import HRVProcessor
from powernap.processing.motion_processor import MotionProcessor
from powernap.processing.scheduler import PeriodicScheduler
from powernap.processing.sleep_detector import SleepState, SleepStateMachine, StateTransition
from powernap.sensors.biometric_source import (
    HRV_METRIC,
    BiometricSource,
    BiometricSourceError,
    PermissionDeniedError,
    Subscription,
)
from powernap.sensors.motion_source import MotionSource, MotionSourceError

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeNotification], None]

# Motion queue item kinds
_SAMPLE = "sample"
_UPDATE = "update"
_STOP = "stop"


class EngineError(Exception):
    """Custom exception for engine errors"""
    pass


class SleepDetectionEngine:
    """
    Streaming sleep-onset detector.

    Features:
    - One active session at a time; start() while running restarts
    - Session ids invalidate callbacks and events from older sessions
    - Exposes current state, condition and reading snapshots
    - Change notifications to listeners at tick granularity
    """

    DEFAULT_TICK_INTERVAL = 1.0             # state machine cadence (s)
    DEFAULT_MOTION_UPDATE_INTERVAL = 2.0    # stillness evaluation cadence (s)
    DEFAULT_MOTION_SAMPLE_INTERVAL = 1.0    # accelerometer sampling (s)
    MOTION_STILL_TIME = 120.0               # stillness required for motion condition (s)
    MOTION_QUEUE_SIZE = 600
    HRV_WORKERS = 2

    def __init__(self, biometric_source: BiometricSource, motion_source: MotionSource,
                 config: Optional[Dict] = None, clock: Optional[Callable[[], float]] = None):
        """
        Initialize engine.

        Args:
            biometric_source: HRV data provider
            motion_source: Accelerometer provider
            config: Configuration dictionary, shared with the processors:
                - tick_interval: State machine cadence (s)
                - motion_update_interval: Stillness evaluation cadence (s)
                - motion_sample_interval: Accelerometer sampling interval (s)
                - motion_still_time: Stillness required for the motion condition (s)
                - motion_queue_size: Bounded motion queue capacity
            clock: Time source returning POSIX seconds (default: time.time)
        """
        if biometric_source is None or motion_source is None:
            raise EngineError("Both a biometric source and a motion source are required")

        self.config = config or {}
        self.biometric_source = biometric_source
        self.motion_source = motion_source
        self.clock = clock or time.time

        self.tick_interval = self.config.get('tick_interval', self.DEFAULT_TICK_INTERVAL)
        self.motion_update_interval = self.config.get(
            'motion_update_interval', self.DEFAULT_MOTION_UPDATE_INTERVAL)
        self.motion_sample_interval = self.config.get(
            'motion_sample_interval', self.DEFAULT_MOTION_SAMPLE_INTERVAL)
        self.motion_still_time = self.config.get('motion_still_time', self.MOTION_STILL_TIME)
        self.motion_queue_size = self.config.get('motion_queue_size', self.MOTION_QUEUE_SIZE)

        # Processors
        self.motion = MotionProcessor(self.config)
        self.hrv = HRVProcessor(self.config)
        self.state_machine = SleepStateMachine(self.config, now=self.clock())

        # Session state
        self._state_lock = threading.RLock()
        self._running = False
        self.session_id = 0
        self.motion_available = False
        self.tick_count = 0
        self.dropped_samples = 0
        self._motion_snapshot = MotionSnapshot(timestamp=self.clock(),
                                               threshold=self.motion.motion_threshold)
        self._last_snapshot: Optional[EngineSnapshot] = None

        # Hand-off and workers
        self._events = EventChannel()
        self._motion_queue: Optional[queue.Queue] = None
        self._motion_worker: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._hrv_subscription: Optional[Subscription] = None
        self._tick_scheduler: Optional[PeriodicScheduler] = None
        self._motion_scheduler: Optional[PeriodicScheduler] = None

        self._listeners: List[ChangeListener] = []
        self._listeners_lock = threading.Lock()

        logger.info(f"SleepDetectionEngine initialized")
        logger.info(f"  Tick: {self.tick_interval}s, motion update: {self.motion_update_interval}s")
        logger.info(f"  Motion still time: {self.motion_still_time}s")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def start(self, run_scheduler: bool = True) -> bool:
        """
        Start a monitoring session.

        Args:
            run_scheduler: If False, no tick/motion schedulers are started and
                the caller drives tick() and request_motion_update() directly

        Returns:
            True once monitoring is running

        Raises:
            PermissionDeniedError: If health data authorization is refused
        """
        if self.is_running:
            logger.info("Monitoring already active - restarting session")
            self.stop()

        now = self.clock()
        with self._state_lock:
            self.session_id += 1
            session_id = self.session_id
            self._reset_state(now)

        logger.info(f"Starting sleep detection (session {session_id})...")

        # 1. Authorization
        try:
            authorized = self.biometric_source.request_authorization()
        except BiometricSourceError as e:
            logger.error(f"Authorization request failed: {e}")
            authorized = False
        if not authorized:
            logger.error("Health data permission denied - sleep detection not started")
            raise PermissionDeniedError("Health data authorization refused")

        self._executor = ThreadPoolExecutor(max_workers=self.HRV_WORKERS,
                                            thread_name_prefix="powernap-hrv")
        with self._state_lock:
            self._running = True

        # 2. Baselines and first HRV value (asynchronous)
        self._submit(self._load_baselines, session_id)
        self._submit(self._load_latest_hrv, session_id)

        # 3. HRV update signals
        try:
            self._hrv_subscription = self.biometric_source.subscribe_updates(
                HRV_METRIC, lambda: self._on_hrv_signal(session_id)
            )
        except BiometricSourceError as e:
            logger.error(f"Failed to subscribe to HRV updates: {e}")
        try:
            self.biometric_source.enable_background_delivery(HRV_METRIC)
        except BiometricSourceError as e:
            logger.error(f"Failed to enable HRV background delivery: {e}")

        # 4. Motion
        self._start_motion(session_id)

        # 5. Schedulers
        if run_scheduler:
            self._tick_scheduler = PeriodicScheduler(self.tick_interval, self.tick, "powernap-tick")
            self._tick_scheduler.start()
            if self.motion_available:
                self._motion_scheduler = PeriodicScheduler(
                    self.motion_update_interval, self.request_motion_update, "powernap-motion"
                )
                self._motion_scheduler.start()

        logger.info(f"✓ Sleep detection running (motion {'on' if self.motion_available else 'off'})")
        return True

    def stop(self) -> bool:
        """
        Stop monitoring. Afterwards tick() is a no-op and the state is AWAKE.

        Returns:
            True if a running session was stopped
        """
        with self._state_lock:
            if not self._running:
                return False
            self._running = False
            # Invalidates every callback bound to the old session id
            self.session_id += 1

        for scheduler in (self._tick_scheduler, self._motion_scheduler):
            if scheduler:
                scheduler.stop()
        self._tick_scheduler = None
        self._motion_scheduler = None

        self._stop_motion()

        if self._hrv_subscription:
            self._hrv_subscription.cancel()
            self._hrv_subscription = None
        try:
            self.biometric_source.disable_background_delivery(HRV_METRIC)
        except BiometricSourceError as e:
            logger.error(f"Failed to disable HRV background delivery: {e}")

        if self._executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        with self._pending_lock:
            self._pending.clear()

        now = self.clock()
        with self._state_lock:
            self._reset_state(now)
            snapshot = self._build_snapshot(now)
            changes = snapshot.diff(self._last_snapshot)
            self._last_snapshot = snapshot

        if changes:
            self._notify(ChangeNotification(now, changes, snapshot))

        logger.info("Sleep detection stopped")
        return True

    def _reset_state(self, now: float):
        self.state_machine.reset(now)
        self.motion.reset()
        self.hrv.reset()
        self._events.clear()
        self.motion_available = False
        self._motion_snapshot = MotionSnapshot(timestamp=now, threshold=self.motion.motion_threshold)

    # ------------------------------------------------------------------
    # Motion ingestion
    # ------------------------------------------------------------------

    def _start_motion(self, session_id: int):
        try:
            available = self.motion_source.is_available()
        except MotionSourceError as e:
            logger.error(f"Failed to query accelerometer availability: {e}")
            available = False
        if not available:
            logger.warning("Accelerometer unavailable - motion condition disabled for this session")
            return

        self._motion_queue = queue.Queue(maxsize=self.motion_queue_size)
        self._motion_worker = threading.Thread(
            target=self._motion_worker_loop, args=(session_id, self._motion_queue),
            name="powernap-motion-worker", daemon=True,
        )
        self._motion_worker.start()

        try:
            self.motion_source.subscribe(
                self.motion_sample_interval,
                lambda x, y, z, ts: self._on_motion_sample(session_id, x, y, z, ts),
            )
        except MotionSourceError as e:
            logger.warning(f"Accelerometer subscription failed - motion condition disabled: {e}")
            self._stop_motion()
            return

        self.motion_available = True

    def _stop_motion(self):
        try:
            self.motion_source.unsubscribe()
        except MotionSourceError as e:
            logger.error(f"Failed to unsubscribe from accelerometer: {e}")

        motion_queue, worker = self._motion_queue, self._motion_worker
        if worker and worker.is_alive():
            try:
                motion_queue.put((None, _STOP, None), timeout=1.0)
            except queue.Full:
                logger.warning("Motion queue full while stopping worker")
            worker.join(timeout=2.0)
        self._motion_queue = None
        self._motion_worker = None

    def _on_motion_sample(self, session_id: int, x: float, y: float, z: float, timestamp: float):
        """Sensor callback (any thread): enqueue for the motion worker"""
        motion_queue = self._motion_queue
        if session_id != self.session_id or motion_queue is None:
            return
        try:
            motion_queue.put_nowait((session_id, _SAMPLE, (x, y, z, timestamp)))
        except queue.Full:
            with self._pending_lock:
                self.dropped_samples += 1
                dropped = self.dropped_samples
            logger.warning(f"Motion queue full - dropped sample ({dropped} total)")

    def request_motion_update(self, now: Optional[float] = None) -> bool:
        """
        Ask the motion worker to re-evaluate stillness.

        Returns:
            True if the request was queued
        """
        motion_queue = self._motion_queue
        if not self.is_running or motion_queue is None:
            return False
        now = self.clock() if now is None else now
        try:
            motion_queue.put_nowait((self.session_id, _UPDATE, now))
            return True
        except queue.Full:
            logger.warning("Motion queue full - skipped stillness update")
            return False

    def _motion_worker_loop(self, session_id: int, motion_queue: queue.Queue):
        while True:
            item_session, kind, payload = motion_queue.get()
            try:
                if kind == _STOP:
                    break
                if item_session != session_id or item_session != self.session_id:
                    continue
                if kind == _SAMPLE:
                    x, y, z, timestamp = payload
                    self.motion.add_sample(x, y, z, timestamp)
                    snapshot = self.motion.snapshot(timestamp)
                else:
                    self.motion.update(payload)
                    snapshot = self.motion.snapshot(payload)
                self._events.publish(MotionUpdate(session_id, snapshot))
            except Exception as e:
                logger.error(f"Motion worker error: {e}")
            finally:
                motion_queue.task_done()

    def drain_motion(self):
        """Block until every queued motion item has been processed"""
        motion_queue = self._motion_queue
        if motion_queue is not None:
            motion_queue.join()

    # ------------------------------------------------------------------
    # HRV ingestion
    # ------------------------------------------------------------------

    def _submit(self, fn: Callable[[int], None], session_id: int) -> Optional[Future]:
        executor = self._executor
        if executor is None:
            return None
        try:
            future = executor.submit(fn, session_id)
        except RuntimeError:
            # Executor already shut down by stop()
            return None
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)
        return future

    def _discard_pending(self, future: Future):
        with self._pending_lock:
            self._pending.discard(future)

    def wait_for_queries(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Wait for in-flight HRV and baseline queries.

        Returns:
            True if all queries finished within the timeout
        """
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _on_hrv_signal(self, session_id: int):
        """Payload-free HRV update signal: re-query the latest value"""
        if session_id != self.session_id:
            return
        self._submit(self._load_latest_hrv, session_id)

    def _load_latest_hrv(self, session_id: int):
        reading = self.hrv.fetch_latest(self.biometric_source, self.clock())
        if reading is not None and session_id == self.session_id:
            self._events.publish(HRVUpdate(session_id, reading))

    def _load_baselines(self, session_id: int):
        baseline, daytime_baseline = self.hrv.fetch_baselines(self.biometric_source, self.clock())
        if session_id == self.session_id:
            self._events.publish(BaselineUpdate(session_id, baseline, daytime_baseline))

    def refresh_baselines(self) -> bool:
        """
        Recompute baselines in the background.

        Returns:
            True if a refresh was scheduled
        """
        if not self.is_running:
            return False
        return self._submit(self._load_baselines, self.session_id) is not None

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> Optional[StateTransition]:
        """
        Apply pending events and run one state machine step.

        Args:
            now: Tick time (default: clock())

        Returns:
            The accepted transition, or None
        """
        with self._state_lock:
            if not self._running:
                return None
            now = self.clock() if now is None else now

            for event in self._events.drain():
                self._apply_event(event)

            hrv_met = self.hrv.condition_met()
            motion_met = (
                self.motion_available
                and self._motion_snapshot.has_been_still_for(self.motion_still_time, now)
            )
            self.state_machine.update_conditions(hrv_met, motion_met, now)
            transition = self.state_machine.evaluate(now)

            snapshot = self._build_snapshot(now)
            changes = snapshot.diff(self._last_snapshot)
            self._last_snapshot = snapshot
            self.tick_count += 1

        if changes:
            self._notify(ChangeNotification(now, changes, snapshot))
        return transition

    def _apply_event(self, event: EngineEvent):
        if event.session_id != self.session_id:
            return
        if isinstance(event, MotionUpdate):
            self._motion_snapshot = event.snapshot
        elif isinstance(event, HRVUpdate):
            self.hrv.update_current(event.reading)
        elif isinstance(event, BaselineUpdate):
            self.hrv.set_baselines(event.baseline, event.daytime_baseline)

    def _build_snapshot(self, now: float) -> EngineSnapshot:
        conditions = self.state_machine.conditions
        motion = self._motion_snapshot
        return EngineSnapshot(
            timestamp=now,
            sleep_state=self.state_machine.current_state.value,
            hrv_met=conditions.hrv_met,
            motion_met=conditions.motion_met,
            combined_met=conditions.combined_met,
            hrv=self.hrv.current_value or 0.0,
            baseline_hrv=self.hrv.active_baseline.value_or(0.0),
            motion_level=motion.motion_level,
            is_still=motion.is_still,
            still_duration=motion.still_duration,
            sleep_detected=self.state_machine.sleep_detected,
            sleep_start_time=self.state_machine.sleep_start_time,
            time_in_state=self.state_machine.time_in_state,
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener):
        """Register a change-notification listener"""
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: ChangeListener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, notification: ChangeNotification):
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(notification)
            except Exception as e:
                logger.error(f"Change listener failed: {e}")

    # ------------------------------------------------------------------
    # Exposed state
    # ------------------------------------------------------------------

    def current_sleep_state(self) -> SleepState:
        with self._state_lock:
            return self.state_machine.current_state

    def condition_snapshot(self) -> Dict[str, bool]:
        with self._state_lock:
            conditions = self.state_machine.conditions
            return {
                'hrv': conditions.hrv_met,
                'motion': conditions.motion_met,
                'combined': conditions.combined_met,
            }

    def readings_snapshot(self) -> Dict[str, float]:
        """Latest readings; 0.0 means no data yet"""
        with self._state_lock:
            motion = self._motion_snapshot
            return {
                'hrv': self.hrv.current_value or 0.0,
                'baseline_hrv': self.hrv.active_baseline.value_or(0.0),
                'motion_level': motion.motion_level,
                'is_still': motion.is_still,
                'still_duration': motion.still_duration,
            }

    def snapshot(self) -> Optional[EngineSnapshot]:
        """Snapshot published at the last tick (None before the first tick)"""
        with self._state_lock:
            return self._last_snapshot

    def hrv_condition_description(self) -> str:
        with self._state_lock:
            threshold = self.hrv.threshold
            return self.state_machine.describe_hrv_condition(
                self.hrv.current_value or 0.0,
                self.hrv.active_baseline.value_or(0.0),
                threshold if threshold is not None else 0.0,
            )

    def motion_condition_description(self) -> str:
        with self._state_lock:
            motion = self._motion_snapshot
            return self.state_machine.describe_motion_condition(
                motion.still_duration, motion.motion_level
            )

    def get_stats(self) -> Dict:
        with self._state_lock:
            stats = self.state_machine.get_stats(self.clock())
            stats.update({
                'session_id': self.session_id,
                'running': self._running,
                'motion_available': self.motion_available,
                'tick_count': self.tick_count,
                'dropped_samples': self.dropped_samples,
                'hrv': self.hrv.get_stats(),
                'motion': self.readings_snapshot(),
            })
            return stats
