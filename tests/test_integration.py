"""
Integration tests for PowerNap
Tests the complete pipeline: sources -> engine -> session controller -> wake
"""

import unittest
import sys
import time
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from powernap.communication.wake_signal import LoggingWakeSignal
from powernap.data.models import HRVReading, NapStatus
from powernap.processing.engine import SleepDetectionEngine
from powernap.processing.sleep_detector import SleepState
from powernap.sensors.biometric_source import InMemoryBiometricSource
from powernap.sensors.motion_source import SimulatedMotionSource
from powernap.session.controller import NapSessionController

T0 = 1_770_000_000.0


class FakeClock:
    """Settable time source"""
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


def seeded_health(now, baseline=50.0, current=60.0):
    health = InMemoryBiometricSource(
        [HRVReading(timestamp=now - (d + 1) * 86400.0, value_ms=baseline) for d in range(7)]
    )
    health.extend([HRVReading(timestamp=now - 30, value_ms=current)])
    return health


class TestNapPipeline(unittest.TestCase):
    """Deterministic end-to-end nap with a manually driven clock"""

    def setUp(self):
        self.clock = FakeClock()
        self.health = seeded_health(T0)
        self.motion = SimulatedMotionSource(autorun=False)
        self.engine = SleepDetectionEngine(
            self.health, self.motion,
            {'long_window': 10, 'short_window': 5, 'auto_adjust_threshold': False,
             'motion_still_time': 20, 'confirmation_window': 30},
            clock=self.clock,
        )
        self.wake = LoggingWakeSignal()
        self.session = NapSessionController(self.engine, self.wake,
                                            {'nap_duration_minutes': 1, 'haptic_strength': 2},
                                            clock=self.clock)
        self.addCleanup(self.session.stop)
        self.addCleanup(self.engine.stop)

    def second(self, t, still=True):
        self.clock.now = t
        self.motion.emit(0.0, 0.0, -1.0 if still else -1.3, t)
        self.engine.request_motion_update(t)
        self.engine.drain_motion()
        self.engine.tick(t)
        self.session.tick(t)

    def test_nap_counts_from_onset(self):
        """Test a 1 min nap wakes 60s after confirmed onset"""
        self.assertTrue(self.session.start(now=T0, run_scheduler=False))
        self.assertTrue(self.engine.wait_for_queries(timeout=5.0))

        # Still from T0: motion met at T0+20, asleep at T0+50
        for i in range(0, 50):
            self.second(T0 + i)
        self.assertEqual(self.engine.current_sleep_state(), SleepState.POTENTIAL_SLEEP)
        self.assertFalse(self.session.counting_from_onset)

        self.second(T0 + 50)
        self.assertEqual(self.engine.current_sleep_state(), SleepState.ASLEEP)
        self.assertTrue(self.session.counting_from_onset)
        self.assertEqual(self.session.record.sleep_detected_time, T0 + 20)
        self.assertEqual(self.session.record.status, NapStatus.SLEEPING)

        # Without onset the timer would have expired at T0+60
        for i in range(51, 80):
            self.second(T0 + i)
        self.assertTrue(self.session.is_active)
        self.assertEqual(self.session.formatted_time_remaining(T0 + 79), "00:01")

        self.second(T0 + 80)
        self.assertFalse(self.session.is_active)
        self.assertEqual(self.wake.triggers, [(2, True)])
        self.assertEqual(self.session.record.status, NapStatus.COMPLETED)
        self.assertEqual(self.session.record.actual_duration, 60.0)
        self.assertFalse(self.engine.is_running)
        self.assertEqual(self.engine.current_sleep_state(), SleepState.AWAKE)
        self.assertEqual(self.health.subscriber_count, 0)
        self.assertGreater(self.session.record.hrv_baseline, 50.0)
        self.assertEqual([r.value_ms for r in self.session.record.hrv_during_nap], [60.0])

    def test_timer_expires_without_sleep(self):
        """Test the countdown runs from start when sleep is never confirmed"""
        self.session.start(now=T0, run_scheduler=False)
        self.engine.wait_for_queries(timeout=5.0)
        for i in range(0, 61):
            self.second(T0 + i, still=False)

        self.assertTrue(self.session.is_completed)
        self.assertIsNone(self.session.record.sleep_detected_time)
        self.assertEqual(len(self.wake.triggers), 1)

    def test_denied_health_access(self):
        self.health.authorized = False
        self.assertFalse(self.session.start(now=T0, run_scheduler=False))
        self.assertFalse(self.engine.is_running)


class TestThreadedPipeline(unittest.TestCase):
    """Real schedulers and sensor thread with shortened timings"""

    def test_reaches_asleep(self):
        now = time.time()
        health = seeded_health(now)
        motion = SimulatedMotionSource(activity=0.0, seed=1)
        engine = SleepDetectionEngine(health, motion, {
            'long_window': 5,
            'short_window': 2,
            'auto_adjust_threshold': False,
            'tick_interval': 0.02,
            'motion_update_interval': 0.02,
            'motion_sample_interval': 0.01,
            'motion_still_time': 0.1,
            'confirmation_window': 0.2,
        })
        session = NapSessionController(engine, LoggingWakeSignal())
        self.addCleanup(session.stop)

        self.assertTrue(session.start())
        deadline = time.time() + 5.0
        while time.time() < deadline and not session.counting_from_onset:
            time.sleep(0.02)

        self.assertTrue(session.counting_from_onset)
        self.assertEqual(session.monitoring_status, "Sleeping")
        self.assertTrue(session.stop())
        self.assertFalse(engine.is_running)

    def test_record_keeps_readings_from_first_tick(self):
        """Test baseline and HRV are recorded when the first tick beats the session"""
        now = time.time()
        health = seeded_health(now, baseline=55.0, current=61.0)
        motion = SimulatedMotionSource(autorun=False)
        engine = SleepDetectionEngine(health, motion, {'tick_interval': 5.0})
        session = NapSessionController(engine, LoggingWakeSignal())
        self.addCleanup(session.stop)

        # Baselines and HRV land before the scheduler's immediate first tick
        original_start = engine.start

        def start_and_tick(run_scheduler=True):
            started = original_start(run_scheduler=False)
            self.assertTrue(engine.wait_for_queries(timeout=5.0))
            engine.tick()
            return started

        engine.start = start_and_tick
        self.assertTrue(session.start())

        record = session.record
        self.assertGreater(record.hrv_baseline, 55.0)
        self.assertEqual([r.value_ms for r in record.hrv_during_nap], [61.0])


if __name__ == '__main__':
    unittest.main()
