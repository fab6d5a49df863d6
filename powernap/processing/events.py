"""
Engine Events
Typed messages handed from worker threads (motion consumer, HRV queries)
to the tick context, which is the only place sleep state is mutated.
"""

import queue
from dataclasses import dataclass
from typing import List, Optional, Union

from powernap.data.models import Baseline, HRVReading, MotionSnapshot


@dataclass(frozen=True)
class MotionUpdate:
    """Motion processor state after a sample or stillness update"""
    session_id: int
    snapshot: MotionSnapshot


@dataclass(frozen=True)
class HRVUpdate:
    """Latest HRV reading re-queried after an update signal"""
    session_id: int
    reading: HRVReading


@dataclass(frozen=True)
class BaselineUpdate:
    """Resolved baselines from a historical query"""
    session_id: int
    baseline: Baseline
    daytime_baseline: Baseline


EngineEvent = Union[MotionUpdate, HRVUpdate, BaselineUpdate]


class EventChannel:
    """
    Thread-safe multi-producer, single-consumer event queue.

    Producers publish from any thread; the tick drains everything pending.
    """

    def __init__(self):
        self._queue: "queue.SimpleQueue[EngineEvent]" = queue.SimpleQueue()

    def publish(self, event: EngineEvent):
        self._queue.put(event)

    def drain(self, limit: Optional[int] = None) -> List[EngineEvent]:
        """Remove and return pending events in publish order"""
        events: List[EngineEvent] = []
        while limit is None or len(events) < limit:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def clear(self):
        self.drain()

    def empty(self) -> bool:
        return self._queue.empty()
