"""
Unit tests for the motion signal processor
Tests windowing, stillness edges and threshold adjustment
"""

import unittest
import sys
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from powernap.processing.motion_processor import MotionProcessor, MotionProcessorError


class TestMotionProcessor(unittest.TestCase):
    """Test cases for MotionProcessor"""

    def setUp(self):
        """Set up test fixtures"""
        self.processor = MotionProcessor()

    def fill(self, magnitude, count, start=0.0):
        for i in range(count):
            self.processor.add_magnitude(magnitude, start + i)

    def test_init_defaults(self):
        """Test default configuration"""
        self.assertEqual(self.processor.long_window, 300)
        self.assertEqual(self.processor.short_window, 20)
        self.assertEqual(self.processor.motion_threshold, 0.02)
        self.assertTrue(self.processor.auto_adjust_threshold)
        self.assertFalse(self.processor.is_still)

    def test_invalid_windows(self):
        """Test rejection of a short window larger than the long window"""
        with self.assertRaises(MotionProcessorError):
            MotionProcessor({'long_window': 10, 'short_window': 20})
        with self.assertRaises(MotionProcessorError):
            MotionProcessor({'long_window': 0})

    def test_magnitude_removes_gravity(self):
        """Test gravity removal from the acceleration vector"""
        self.assertAlmostEqual(MotionProcessor.magnitude(0.0, 0.0, -1.0), 0.0)
        self.assertAlmostEqual(MotionProcessor.magnitude(0.0, 0.0, -1.1), 0.1)
        self.assertAlmostEqual(MotionProcessor.magnitude(0.0, 0.0, -0.9), 0.1)
        self.assertAlmostEqual(MotionProcessor.magnitude(0.6, 0.0, 0.8), 0.0)

    def test_window_never_exceeds_capacity(self):
        """Test buffer length stays bounded for arbitrary append counts"""
        rng = np.random.default_rng(1)
        for count in (1, 299, 300, 301, 1000):
            processor = MotionProcessor()
            for i, value in enumerate(rng.random(count)):
                processor.add_magnitude(float(value), float(i))
                self.assertLessEqual(len(processor.samples), processor.long_window)
            self.assertEqual(len(processor.samples), min(count, 300))

    def test_eviction_keeps_most_recent(self):
        """Test oldest samples are evicted first"""
        processor = MotionProcessor({'long_window': 5, 'short_window': 2})
        for i in range(8):
            processor.add_magnitude(float(i), float(i))

        self.assertEqual([s.magnitude for s in processor.samples], [3.0, 4.0, 5.0, 6.0, 7.0])

    def test_current_motion_level_uses_short_window(self):
        """Test motion level is the mean of the last 20 samples"""
        self.fill(1.0, 100)
        self.fill(0.0, 20, start=100)
        self.assertEqual(self.processor.current_motion_level, 0.0)
        self.assertEqual(len(self.processor.short_window_samples()), 20)

        self.processor.add_magnitude(0.2, 120)
        self.assertAlmostEqual(self.processor.current_motion_level, 0.01)

    def test_constant_low_motion_is_still(self):
        """Test 300 samples at 0.01g are still under the 0.02g threshold"""
        self.fill(0.01, 300)
        self.assertTrue(self.processor.update(now=300.0))
        self.assertTrue(self.processor.is_still)

    def test_empty_window_not_still(self):
        """Test no samples means not still"""
        self.assertFalse(self.processor.update(now=10.0))
        self.assertIsNone(self.processor.still_start)

    def test_still_start_only_on_edges(self):
        """Test still_start is set on false->true and cleared on true->false"""
        processor = MotionProcessor({'long_window': 10, 'short_window': 5,
                                     'auto_adjust_threshold': False})
        for i in range(10):
            processor.add_magnitude(0.001, float(i))

        processor.update(now=10.0)
        self.assertEqual(processor.still_start, 10.0)
        self.assertEqual(processor.still_duration, 0.0)

        # Steady still: start preserved, duration grows
        processor.update(now=12.0)
        processor.update(now=14.0)
        self.assertEqual(processor.still_start, 10.0)
        self.assertEqual(processor.still_duration, 4.0)

        # Movement: cleared
        for i in range(10):
            processor.add_magnitude(0.5, 15.0 + i)
        processor.update(now=26.0)
        self.assertFalse(processor.is_still)
        self.assertIsNone(processor.still_start)
        self.assertEqual(processor.still_duration, 0.0)

        # Steady not-still: still cleared
        processor.update(now=28.0)
        self.assertIsNone(processor.still_start)

    def test_has_been_still_for(self):
        """Test stillness duration check"""
        self.fill(0.001, 300)
        self.processor.update(now=300.0)

        self.assertFalse(self.processor.has_been_still_for(120, now=419.0))
        self.assertTrue(self.processor.has_been_still_for(120, now=420.0))

        interval = self.processor.stillness()
        self.assertIsNotNone(interval)
        self.assertEqual(interval.start, 300.0)

    def test_has_been_still_for_when_moving(self):
        """Test duration check is false while moving"""
        self.fill(0.5, 300)
        self.processor.update(now=300.0)
        self.assertFalse(self.processor.has_been_still_for(0, now=1000.0))
        self.assertIsNone(self.processor.stillness())

    def test_adjust_requires_min_samples(self):
        """Test auto-adjust does nothing below 60 samples"""
        self.fill(0.04, 59)
        self.assertFalse(self.processor.adjust_threshold())
        self.assertEqual(self.processor.motion_threshold, 0.02)

        self.processor.add_magnitude(0.04, 59)
        self.assertTrue(self.processor.adjust_threshold())
        self.assertAlmostEqual(self.processor.motion_threshold, 0.04)

    def test_adjust_clamps_to_bounds(self):
        """Test auto threshold stays in [0.015, 0.05] for arbitrary data"""
        rng = np.random.default_rng(42)
        distributions = [
            np.zeros(300),
            np.full(300, 5.0),
            rng.exponential(0.02, 300),
            rng.random(300),
            rng.normal(0.01, 0.001, 300).clip(0),
        ]
        for values in distributions:
            processor = MotionProcessor()
            for i, value in enumerate(values):
                processor.add_magnitude(float(value), float(i))
            processor.adjust_threshold()
            self.assertGreaterEqual(processor.motion_threshold, 0.015)
            self.assertLessEqual(processor.motion_threshold, 0.05)

    def test_auto_adjust_interval(self):
        """Test update() adjusts only after the adjust interval"""
        self.fill(0.03, 100)
        self.processor.update(now=100.0)
        self.assertEqual(self.processor.motion_threshold, 0.02)

        self.processor.update(now=159.0)
        self.assertEqual(self.processor.motion_threshold, 0.02)

        self.processor.update(now=160.0)
        self.assertAlmostEqual(self.processor.motion_threshold, 0.03)

    def test_manual_threshold_disables_auto(self):
        """Test set_threshold clamps and disables auto-adjust"""
        self.assertEqual(self.processor.set_threshold(0.03), 0.03)
        self.assertFalse(self.processor.auto_adjust_threshold)

        self.fill(0.001, 100)
        self.processor.update(now=0.0)
        self.processor.update(now=120.0)
        self.assertEqual(self.processor.motion_threshold, 0.03)

        self.assertEqual(self.processor.set_threshold(1.0), 0.1)
        self.assertEqual(self.processor.set_threshold(0.0), 0.005)

    def test_motion_data_for_last_minutes(self):
        """Test history extraction at 1 Hz"""
        self.fill(0.01, 200)
        self.assertEqual(len(self.processor.get_motion_data_for_last_minutes(1)), 60)
        self.assertEqual(len(self.processor.get_motion_data_for_last_minutes(10)), 200)
        self.assertEqual(self.processor.get_motion_data_for_last_minutes(0), [])

    def test_snapshot(self):
        """Test immutable snapshot contents"""
        self.fill(0.001, 300)
        self.processor.update(now=300.0)
        self.processor.update(now=302.0)

        snapshot = self.processor.snapshot()
        self.assertEqual(snapshot.timestamp, 302.0)
        self.assertTrue(snapshot.is_still)
        self.assertEqual(snapshot.still_start, 300.0)
        self.assertEqual(snapshot.still_duration, 2.0)
        self.assertEqual(snapshot.sample_count, 300)
        self.assertTrue(snapshot.has_been_still_for(2, now=302.0))

    def test_reset(self):
        """Test reset clears samples but keeps threshold settings"""
        self.processor.set_threshold(0.03)
        self.fill(0.001, 50)
        self.processor.update(now=50.0)

        self.processor.reset()

        self.assertEqual(len(self.processor.samples), 0)
        self.assertFalse(self.processor.is_still)
        self.assertIsNone(self.processor.still_start)
        self.assertEqual(self.processor.current_motion_level, 0.0)
        self.assertEqual(self.processor.motion_threshold, 0.03)


if __name__ == '__main__':
    unittest.main()
