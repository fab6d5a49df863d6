"""
HRV Signal Processor
Tracks the latest heart-rate variability (SDNN) reading against a
personal 7-day baseline.

HRV rises as the body relaxes toward sleep, so the HRV condition is met
when the current value reaches baseline x 1.15.

Baselines:
- All-samples: mean of every sample in the last 7 days
- Daytime: mean of samples taken between 06:00 and 22:00 local time
If no samples exist the FALLBACK_BASELINE_MS policy value is used.
"""

import logging
import math
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pandas as pd

from powernap.data.models import Baseline, HRVReading
from powernap.sensors.biometric_source import (
    HRV_METRIC,
    BiometricSource,
    BiometricSourceError,
)

logger = logging.getLogger(__name__)

# Baseline used when the health store has no usable history (ms)
FALLBACK_BASELINE_MS = 50.0

SECONDS_PER_DAY = 86400


class HRVProcessor:
    """
    HRV condition evaluator.

    Query helpers (fetch_latest, fetch_baselines) are pure and may run on
    worker threads; the resulting values are applied with update_current()
    and set_baselines() on the engine tick.
    """

    DEFAULT_MULTIPLIER = 1.15
    BASELINE_DAYS = 7
    DAY_START_HOUR = 6
    DAY_END_HOUR = 22
    LOOKBACK_SECONDS = 600  # 10 minutes

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize HRV processor.

        Args:
            config: Configuration dictionary:
                - hrv_multiplier: Baseline multiplier for the condition
                - baseline_days: History window for baselines
                - day_start_hour / day_end_hour: Daytime filter [start, end)
                - hrv_lookback: Seconds to look back for the latest value
                - use_daytime_baseline: Compare against the daytime baseline
        """
        self.config = config or {}

        self.multiplier = self.config.get('hrv_multiplier', self.DEFAULT_MULTIPLIER)
        self.baseline_days = self.config.get('baseline_days', self.BASELINE_DAYS)
        self.day_start_hour = self.config.get('day_start_hour', self.DAY_START_HOUR)
        self.day_end_hour = self.config.get('day_end_hour', self.DAY_END_HOUR)
        self.lookback = self.config.get('hrv_lookback', self.LOOKBACK_SECONDS)
        self.use_daytime_baseline = self.config.get('use_daytime_baseline', False)

        self.current: Optional[HRVReading] = None
        self.baseline = Baseline(source_window_days=self.baseline_days)
        self.daytime_baseline = Baseline(source_window_days=self.baseline_days, day_restricted=True)

        logger.info(f"HRVProcessor initialized (multiplier {self.multiplier:.2f}, "
                    f"{'daytime' if self.use_daytime_baseline else 'all-samples'} baseline)")

    # ------------------------------------------------------------------
    # Condition
    # ------------------------------------------------------------------

    @property
    def active_baseline(self) -> Baseline:
        return self.daytime_baseline if self.use_daytime_baseline else self.baseline

    @property
    def current_value(self) -> Optional[float]:
        return self.current.value_ms if self.current is not None else None

    @property
    def threshold(self) -> Optional[float]:
        """HRV value required for the condition (None without a baseline)"""
        baseline = self.active_baseline.value
        if baseline is None:
            return None
        return baseline * self.multiplier

    def is_condition_met(self, current: Optional[float], baseline: Optional[float]) -> bool:
        """
        Evaluate the HRV condition for explicit values.

        Returns:
            True only if both values are positive and current >= baseline x multiplier
        """
        if current is None or baseline is None:
            return False
        if not (current > 0 and baseline > 0):
            return False
        return current >= baseline * self.multiplier

    def condition_met(self) -> bool:
        return self.is_condition_met(self.current_value, self.active_baseline.value)

    # ------------------------------------------------------------------
    # State updates (tick context)
    # ------------------------------------------------------------------

    def update_current(self, reading: Optional[HRVReading]) -> bool:
        """
        Apply a newly observed reading. Older readings never replace newer ones.

        Returns:
            True if the current reading changed
        """
        if reading is None or not reading.is_valid():
            return False
        if self.current is not None and reading.end_time < self.current.end_time:
            return False
        changed = reading != self.current
        self.current = reading
        if changed:
            logger.debug(f"HRV updated: {reading.value_ms:.1f}ms")
        return changed

    def set_baselines(self, baseline: Baseline, daytime_baseline: Baseline):
        self.baseline = baseline
        self.daytime_baseline = daytime_baseline
        logger.info(f"HRV baselines set: all={baseline.value_or(0.0):.1f}ms"
                    f"{' (fallback)' if baseline.is_fallback else ''}, "
                    f"daytime={daytime_baseline.value_or(0.0):.1f}ms"
                    f"{' (fallback)' if daytime_baseline.is_fallback else ''}")

    # ------------------------------------------------------------------
    # Queries (safe off the tick context)
    # ------------------------------------------------------------------

    def daytime_average(self, readings: List[HRVReading]) -> Optional[float]:
        """
        Mean of valid readings whose local start hour is in [day_start, day_end).

        Returns:
            Average in ms, or None if no sample qualifies
        """
        if not readings:
            return None

        df = pd.DataFrame(
            [{'timestamp': r.timestamp, 'value_ms': r.value_ms} for r in readings]
        )
        df = df[df['value_ms'].map(lambda v: v > 0 and math.isfinite(v))]
        if df.empty:
            return None

        hours = df['timestamp'].map(lambda t: datetime.fromtimestamp(t).hour)
        daytime = df[(hours >= self.day_start_hour) & (hours < self.day_end_hour)]
        if daytime.empty:
            return None
        return float(daytime['value_ms'].mean())

    def query_baselines(self, source: BiometricSource,
                        now: Optional[float] = None) -> Tuple[Baseline, Baseline]:
        """
        Query raw (unresolved) baselines from the health store.

        Query failures are logged and yield empty baselines.
        """
        now = time.time() if now is None else now
        start = now - self.baseline_days * SECONDS_PER_DAY

        try:
            average = source.query_average(HRV_METRIC, start, now)
        except BiometricSourceError as e:
            logger.error(f"Failed to query baseline HRV: {e}")
            average = None
        if average is not None and not (average > 0 and math.isfinite(average)):
            average = None

        try:
            daytime = self.daytime_average(source.query_samples(HRV_METRIC, start, now))
        except BiometricSourceError as e:
            logger.error(f"Failed to query daytime baseline HRV: {e}")
            daytime = None

        return (
            Baseline(value=average, source_window_days=self.baseline_days),
            Baseline(value=daytime, source_window_days=self.baseline_days, day_restricted=True),
        )

    def resolve_baselines(self, baseline: Baseline,
                          daytime_baseline: Baseline) -> Tuple[Baseline, Baseline]:
        """
        Apply the fallback policy to empty baselines.

        - Empty all-samples baseline -> FALLBACK_BASELINE_MS
        - Empty daytime baseline -> all-samples value if real, else FALLBACK_BASELINE_MS
        """
        if baseline.is_empty:
            logger.warning(f"No HRV history, using fallback baseline {FALLBACK_BASELINE_MS:.1f}ms")
            resolved = Baseline(value=FALLBACK_BASELINE_MS, source_window_days=self.baseline_days,
                                is_fallback=True)
        else:
            resolved = baseline

        if daytime_baseline.is_empty:
            resolved_daytime = Baseline(
                value=baseline.value if not baseline.is_empty else FALLBACK_BASELINE_MS,
                source_window_days=self.baseline_days,
                day_restricted=True,
                is_fallback=True,
            )
        else:
            resolved_daytime = daytime_baseline

        return resolved, resolved_daytime

    def fetch_baselines(self, source: BiometricSource,
                        now: Optional[float] = None) -> Tuple[Baseline, Baseline]:
        """Query and resolve both baselines (never raises on query failure)"""
        return self.resolve_baselines(*self.query_baselines(source, now))

    def fetch_latest(self, source: BiometricSource,
                     now: Optional[float] = None) -> Optional[HRVReading]:
        """
        Latest valid reading within the lookback window.

        Returns:
            HRVReading, or None if there is no recent data or the query failed
        """
        try:
            reading = source.observe_latest(HRV_METRIC, self.lookback, now=now)
        except BiometricSourceError as e:
            logger.error(f"Failed to fetch latest HRV: {e}")
            return None

        if reading is None or not reading.is_valid():
            return None
        return reading

    def get_stats(self) -> Dict:
        threshold = self.threshold
        return {
            'current_hrv': self.current_value or 0.0,
            'baseline_hrv': self.baseline.value_or(0.0),
            'daytime_baseline_hrv': self.daytime_baseline.value_or(0.0),
            'threshold': threshold if threshold is not None else 0.0,
            'multiplier': self.multiplier,
            'condition_met': self.condition_met(),
        }

    def reset(self):
        """Forget the current reading and baselines"""
        self.current = None
        self.baseline = Baseline(source_window_days=self.baseline_days)
        self.daytime_baseline = Baseline(source_window_days=self.baseline_days, day_restricted=True)
        logger.debug("HRVProcessor reset")
