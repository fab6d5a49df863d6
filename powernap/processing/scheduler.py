"""
Periodic Scheduler
Fixed-cadence callback runner on a daemon thread, independent of any UI
run loop. The engine uses one for the 1s state tick and one for the 2s
motion update; the session controller uses one for its countdown.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicScheduler:
    """
    Runs `callback` every `interval` seconds until stopped.

    The first call happens immediately on start. Missed deadlines are not
    replayed: if a callback overruns, the next one runs as soon as possible
    and the schedule continues from there.
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "scheduler"):
        if interval <= 0:
            raise ValueError(f"Scheduler interval must be positive, got {interval}")
        self.interval = interval
        self.callback = callback
        self.name = name

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.run_count = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self):
        if self.is_running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop_event,),
                                        name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Scheduler '{self.name}' started ({self.interval}s)")

    def stop(self, timeout: float = 2.0):
        """Stop the scheduler. Safe to call from inside the callback."""
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        logger.debug(f"Scheduler '{self.name}' stopped")

    def _run(self, stop_event: threading.Event):
        next_run = time.monotonic()
        while not stop_event.wait(max(0.0, next_run - time.monotonic())):
            try:
                self.callback()
                self.run_count += 1
            except Exception as e:
                logger.error(f"Scheduler '{self.name}' callback failed: {e}")
            next_run += self.interval
            now = time.monotonic()
            if next_run < now:
                next_run = now
