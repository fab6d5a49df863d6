"""
Unit tests for the nap session controller
Tests countdown, onset switch, pause/resume and wake
"""

import unittest
import sys
from pathlib import Path
from unittest.mock import Mock

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from powernap.communication.wake_signal import LoggingWakeSignal, WakeSignalError
from powernap.data.models import ChangeNotification, EngineSnapshot, NapStatus
from powernap.processing.sleep_detector import SleepState
from powernap.sensors.biometric_source import PermissionDeniedError
from powernap.session.controller import NapSessionController

T0 = 1_770_000_000.0


def make_snapshot(t, state=SleepState.AWAKE, sleep_start=None, hrv=0.0, baseline=0.0):
    asleep = sleep_start is not None
    return EngineSnapshot(
        timestamp=t,
        sleep_state=state.value,
        hrv_met=asleep,
        motion_met=asleep,
        combined_met=asleep,
        hrv=hrv,
        baseline_hrv=baseline,
        motion_level=0.0,
        is_still=asleep,
        still_duration=0.0,
        sleep_detected=asleep,
        sleep_start_time=sleep_start,
        time_in_state=0.0,
    )


class MockEngine:
    """Mock engine capturing the change listener"""
    def __init__(self):
        self.listener = None
        self.start = Mock(return_value=True)
        self.stop = Mock(return_value=True)
        self.last = None
        self.readings = {'hrv': 0.0, 'baseline_hrv': 0.0}

    def subscribe(self, listener):
        self.listener = listener

    def unsubscribe(self, listener):
        self.listener = None

    def readings_snapshot(self):
        return dict(self.readings)

    def notify(self, snapshot):
        changes = snapshot.diff(self.last)
        self.last = snapshot
        self.listener(ChangeNotification(snapshot.timestamp, changes, snapshot))


class TestNapSessionController(unittest.TestCase):
    """Test cases for NapSessionController"""

    def setUp(self):
        """Set up test fixtures"""
        self.engine = MockEngine()
        self.wake = LoggingWakeSignal()
        self.controller = NapSessionController(self.engine, self.wake,
                                               {'nap_duration_minutes': 20})

    def test_init(self):
        self.assertEqual(self.controller.duration_minutes, 20)
        self.assertEqual(self.controller.haptic_strength, 1)
        self.assertTrue(self.controller.sound_enabled)
        self.assertFalse(self.controller.is_active)
        self.assertEqual(self.controller.formatted_time_remaining(), "20:00")
        self.assertEqual(self.controller.monitoring_status, "Ready")

    def test_start_runs_engine(self):
        self.assertTrue(self.controller.start(now=T0, run_scheduler=False))
        self.engine.start.assert_called_once_with(run_scheduler=False)
        self.assertTrue(self.controller.is_active)
        self.assertEqual(self.controller.record.status, NapStatus.MONITORING)
        self.assertFalse(self.controller.start(now=T0 + 1, run_scheduler=False))

    def test_permission_denied_returns_false(self):
        self.engine.start.side_effect = PermissionDeniedError("denied")
        with self.assertLogs('powernap.session.controller', level='ERROR'):
            self.assertFalse(self.controller.start(now=T0, run_scheduler=False))
        self.assertFalse(self.controller.is_active)

    def test_countdown_from_start(self):
        """Test countdown without sleep onset"""
        self.controller.start(now=T0, run_scheduler=False)
        self.assertEqual(self.controller.time_remaining(T0 + 60), 1140.0)
        self.assertEqual(self.controller.formatted_time_remaining(T0 + 60.5), "19:00")
        self.assertAlmostEqual(self.controller.progress(T0 + 600), 0.5)

    def test_onset_switches_reference(self):
        """Test countdown restarts from sleep_start_time on first ASLEEP"""
        self.controller.start(now=T0, run_scheduler=False)
        self.engine.notify(make_snapshot(T0 + 300, SleepState.POTENTIAL_SLEEP))
        self.assertFalse(self.controller.counting_from_onset)

        self.engine.notify(make_snapshot(T0 + 480, SleepState.ASLEEP, sleep_start=T0 + 300))
        self.assertTrue(self.controller.counting_from_onset)
        self.assertEqual(self.controller.record.status, NapStatus.SLEEPING)
        self.assertEqual(self.controller.record.sleep_detected_time, T0 + 300)
        self.assertEqual(self.controller.time_remaining(T0 + 480), 1200.0 - 180.0)
        self.assertEqual(self.controller.monitoring_status, "Sleeping")

        # Expiry counted from onset, not session start
        self.controller.tick(T0 + 1200)
        self.assertTrue(self.controller.is_active)
        self.controller.tick(T0 + 1500)
        self.assertFalse(self.controller.is_active)

    def test_onset_switch_happens_once(self):
        self.controller.start(now=T0, run_scheduler=False)
        self.engine.notify(make_snapshot(T0 + 480, SleepState.ASLEEP, sleep_start=T0 + 300))
        self.engine.notify(make_snapshot(T0 + 900, SleepState.DISTURBED, sleep_start=T0 + 300))
        self.engine.notify(make_snapshot(T0 + 1000, SleepState.ASLEEP, sleep_start=T0 + 300))
        self.assertEqual(self.controller.time_remaining(T0 + 1000), 500.0)

    def test_expiry_wakes_then_stops(self):
        """Test wake signal then engine stop on expiry"""
        order = []
        self.wake.trigger = Mock(side_effect=lambda s, w: order.append('wake'))
        self.engine.stop.side_effect = lambda: order.append('stop')

        self.controller.haptic_strength = 2
        self.controller.sound_enabled = False
        self.controller.start(now=T0, run_scheduler=False)
        self.controller.tick(T0 + 1199)
        self.assertEqual(order, [])

        self.controller.tick(T0 + 1200)
        self.assertEqual(order, ['wake', 'stop'])
        self.wake.trigger.assert_called_once_with(2, False)
        self.assertTrue(self.controller.is_completed)
        self.assertEqual(self.controller.record.status, NapStatus.COMPLETED)
        self.assertEqual(self.controller.record.end_time, T0 + 1200)
        self.assertEqual(self.controller.formatted_time_remaining(), "00:00")
        self.assertEqual(self.controller.monitoring_status, "Completed")

    def test_wake_failure_still_stops_engine(self):
        self.wake.trigger = Mock(side_effect=WakeSignalError("no broker"))
        self.controller.start(now=T0, run_scheduler=False)
        with self.assertLogs('powernap.session.controller', level='ERROR'):
            self.controller.tick(T0 + 1200)
        self.engine.stop.assert_called_once()

    def test_pause_resume(self):
        """Test paused time does not count"""
        self.controller.start(now=T0, run_scheduler=False)
        self.assertTrue(self.controller.pause(now=T0 + 100))
        self.assertFalse(self.controller.pause(now=T0 + 101))
        self.assertEqual(self.controller.monitoring_status, "Paused")
        self.assertEqual(self.controller.time_remaining(T0 + 500), 1100.0)

        self.controller.tick(T0 + 5000)
        self.assertTrue(self.controller.is_active)

        self.assertTrue(self.controller.resume(now=T0 + 400))
        self.assertEqual(self.controller.time_remaining(T0 + 500), 1000.0)

    def test_stop_cancels(self):
        self.controller.start(now=T0, run_scheduler=False)
        self.assertTrue(self.controller.stop(now=T0 + 60))
        self.assertEqual(self.controller.record.status, NapStatus.CANCELED)
        self.engine.stop.assert_called_once()
        self.assertEqual(self.wake.triggers, [])
        self.assertFalse(self.controller.stop(now=T0 + 61))

    def test_set_duration(self):
        self.assertTrue(self.controller.set_duration(5))
        self.assertEqual(self.controller.duration_minutes, 5)
        self.assertFalse(self.controller.set_duration(0))
        self.assertFalse(self.controller.set_duration(31))

        self.controller.start(now=T0, run_scheduler=False)
        self.assertFalse(self.controller.set_duration(10))
        self.assertEqual(self.controller.record.duration_minutes, 5)

    def test_sleep_detection_disabled(self):
        """Test timer-only naps never touch the engine"""
        self.assertTrue(self.controller.toggle_sleep_detection(False))
        self.controller.start(now=T0, run_scheduler=False)
        self.engine.start.assert_not_called()
        self.assertEqual(self.controller.monitoring_status, "Timer running")
        self.assertFalse(self.controller.toggle_sleep_detection(True))

        self.controller.tick(T0 + 1200)
        self.engine.stop.assert_not_called()
        self.assertEqual(len(self.wake.triggers), 1)

    def test_record_collects_hrv(self):
        self.controller.start(now=T0, run_scheduler=False)
        self.engine.notify(make_snapshot(T0 + 1, hrv=48.0, baseline=50.0))
        self.engine.notify(make_snapshot(T0 + 2, hrv=48.0, baseline=50.0))
        self.engine.notify(make_snapshot(T0 + 3, hrv=60.0, baseline=50.0))

        record = self.controller.record
        self.assertEqual(record.hrv_baseline, 50.0)
        self.assertEqual([r.value_ms for r in record.hrv_during_nap], [48.0, 60.0])

    def test_record_seeded_from_engine_readings(self):
        """Test readings loaded before the session went active are recorded"""
        self.engine.readings = {'hrv': 61.0, 'baseline_hrv': 55.0}
        self.controller.start(now=T0, run_scheduler=False)

        record = self.controller.record
        self.assertEqual(record.hrv_baseline, 55.0)
        self.assertEqual([r.value_ms for r in record.hrv_during_nap], [61.0])

        # The first notification repeats the same value
        self.engine.notify(make_snapshot(T0 + 1, hrv=61.0, baseline=55.0))
        self.assertEqual([r.value_ms for r in record.hrv_during_nap], [61.0])

    def test_notifications_ignored_when_idle(self):
        self.engine.notify(make_snapshot(T0, SleepState.ASLEEP, sleep_start=T0))
        self.assertIsNone(self.controller.record)
        self.assertFalse(self.controller.counting_from_onset)


if __name__ == '__main__':
    unittest.main()
