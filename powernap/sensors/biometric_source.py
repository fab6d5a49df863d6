"""
Biometric Source Interface
Contract for the HRV data provider (health store) plus an in-memory
implementation backed by pandas for simulation and testing.

The provider owns authorization and raw acquisition. Update signals carry
no payload: consumers re-query the latest value when notified.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import pandas as pd

from powernap.data.models import HRVReading

logger = logging.getLogger(__name__)

# Metric identifier for heart-rate variability (SDNN, ms)
HRV_METRIC = "hrv_sdnn"


class BiometricSourceError(Exception):
    """Custom exception for biometric source errors"""
    pass


class PermissionDeniedError(BiometricSourceError):
    """Authorization to read health data was refused"""
    pass


class QueryFailureError(BiometricSourceError):
    """A historical or latest-value query failed"""
    pass


class BackgroundDeliveryError(BiometricSourceError):
    """Background delivery could not be enabled or disabled"""
    pass


class Subscription:
    """Handle returned by subscribe_updates(); cancel() stops delivery"""

    def __init__(self, cancel_fn: Optional[Callable[[], None]] = None):
        self._cancel_fn = cancel_fn
        self.active = True

    def cancel(self):
        if self.active and self._cancel_fn:
            self._cancel_fn()
        self.active = False


class BiometricSource(ABC):
    """
    Abstract base class for HRV data providers.
    """

    @abstractmethod
    def request_authorization(self) -> bool:
        """Ask for read access. Returns True if granted."""
        pass

    @abstractmethod
    def query_average(self, metric: str, start: float, end: float) -> Optional[float]:
        """Mean value over [start, end]; None if there are no samples."""
        pass

    @abstractmethod
    def query_samples(self, metric: str, start: float, end: float) -> List[HRVReading]:
        """All samples starting within [start, end]."""
        pass

    @abstractmethod
    def observe_latest(self, metric: str, lookback: float,
                       now: Optional[float] = None) -> Optional[HRVReading]:
        """Most recent sample (by end time) within the lookback window."""
        pass

    @abstractmethod
    def subscribe_updates(self, metric: str, callback: Callable[[], None]) -> Subscription:
        """Register a payload-free callback fired when new samples arrive."""
        pass

    @abstractmethod
    def enable_background_delivery(self, metric: str) -> None:
        pass

    @abstractmethod
    def disable_background_delivery(self, metric: str) -> None:
        pass


class InMemoryBiometricSource(BiometricSource):
    """
    In-memory health store for simulation and tests.

    Features:
    - Authorization outcome is configurable (authorized=False simulates denial)
    - fail_queries=True makes every query raise QueryFailureError
    - fail_background_delivery=True makes enable/disable raise
    - add_reading() stores a sample and notifies subscribers
    """

    def __init__(self, readings: Optional[List[HRVReading]] = None,
                 authorized: bool = True):
        self.authorized = authorized
        self.fail_queries = False
        self.fail_background_delivery = False
        self.background_delivery_enabled = False

        self._lock = threading.Lock()
        self._readings: List[HRVReading] = list(readings or [])
        self._subscribers: Dict[int, Callable[[], None]] = {}
        self._next_subscriber_id = 0

        logger.info(f"InMemoryBiometricSource initialized with {len(self._readings)} readings")

    def request_authorization(self) -> bool:
        if not self.authorized:
            logger.warning("Health data authorization refused")
        return self.authorized

    def _frame(self, metric: str) -> pd.DataFrame:
        if metric != HRV_METRIC:
            raise QueryFailureError(f"Unsupported metric: {metric}")
        if self.fail_queries:
            raise QueryFailureError("Health store query failed")

        with self._lock:
            rows = [
                {'timestamp': r.timestamp, 'end_time': r.end_time, 'value_ms': r.value_ms}
                for r in self._readings
            ]
        return pd.DataFrame(rows, columns=['timestamp', 'end_time', 'value_ms'])

    def query_average(self, metric: str, start: float, end: float) -> Optional[float]:
        df = self._frame(metric)
        in_range = df[(df['timestamp'] >= start) & (df['timestamp'] <= end) & (df['value_ms'] > 0)]
        if in_range.empty:
            return None
        return float(in_range['value_ms'].mean())

    def query_samples(self, metric: str, start: float, end: float) -> List[HRVReading]:
        df = self._frame(metric)
        in_range = df[(df['timestamp'] >= start) & (df['timestamp'] <= end)]
        return [
            HRVReading(timestamp=float(row.timestamp), value_ms=float(row.value_ms),
                       end_timestamp=float(row.end_time))
            for row in in_range.itertuples(index=False)
        ]

    def observe_latest(self, metric: str, lookback: float,
                       now: Optional[float] = None) -> Optional[HRVReading]:
        now = time.time() if now is None else now
        df = self._frame(metric)
        recent = df[(df['end_time'] >= now - lookback) & (df['end_time'] <= now)]
        if recent.empty:
            return None
        row = recent.loc[recent['end_time'].idxmax()]
        return HRVReading(
            timestamp=float(row['timestamp']),
            value_ms=float(row['value_ms']),
            end_timestamp=float(row['end_time']),
        )

    def subscribe_updates(self, metric: str, callback: Callable[[], None]) -> Subscription:
        with self._lock:
            subscriber_id = self._next_subscriber_id
            self._next_subscriber_id += 1
            self._subscribers[subscriber_id] = callback

        def _cancel():
            with self._lock:
                self._subscribers.pop(subscriber_id, None)

        return Subscription(_cancel)

    def enable_background_delivery(self, metric: str) -> None:
        if self.fail_background_delivery:
            raise BackgroundDeliveryError("Background delivery could not be enabled")
        self.background_delivery_enabled = True
        logger.info("HRV background delivery enabled")

    def disable_background_delivery(self, metric: str) -> None:
        if self.fail_background_delivery:
            raise BackgroundDeliveryError("Background delivery could not be disabled")
        self.background_delivery_enabled = False
        logger.info("HRV background delivery disabled")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def add_reading(self, reading: HRVReading, notify: bool = True):
        """
        Store a new sample and signal subscribers.

        Args:
            reading: HRV sample to store
            notify: If True, fire every registered update callback
        """
        with self._lock:
            self._readings.append(reading)
            callbacks = list(self._subscribers.values())

        if not notify:
            return
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"HRV update callback failed: {e}")

    def extend(self, readings: List[HRVReading]):
        """Bulk-load history without notifying"""
        with self._lock:
            self._readings.extend(readings)
