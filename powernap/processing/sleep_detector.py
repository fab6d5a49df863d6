"""
Sleep State Detection and Processing
Implements the debounced sleep-onset state machine fed by the HRV and
motion conditions.
"""

import time
import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class SleepState(Enum):
    """Sleep state enumeration"""
    AWAKE = "Awake"
    POTENTIAL_SLEEP = "Potential Sleep"
    ASLEEP = "Asleep"
    DISTURBED = "Disturbed"


@dataclass
class ConditionState:
    """
    Current sleep conditions.

    combined_since is set exactly when combined_met goes false -> true
    and cleared when it goes true -> false.
    """
    hrv_met: bool = False
    motion_met: bool = False
    combined_met: bool = False
    combined_since: Optional[float] = None

    def update(self, hrv_met: bool, motion_met: bool, now: float) -> bool:
        """
        Recompute the combined condition.

        Returns:
            True if combined_met changed
        """
        self.hrv_met = bool(hrv_met)
        self.motion_met = bool(motion_met)
        combined = self.hrv_met and self.motion_met

        if combined == self.combined_met:
            return False

        self.combined_met = combined
        self.combined_since = now if combined else None
        return True

    def held_for(self, now: float) -> float:
        """Seconds the combined condition has held continuously"""
        if not self.combined_met or self.combined_since is None:
            return 0.0
        return now - self.combined_since


@dataclass(frozen=True)
class StateTransition:
    """One accepted state change"""
    from_state: SleepState
    to_state: SleepState
    timestamp: float
    reason: str


class SleepStateMachine:
    """
    Sleep onset state machine.

    Implements state machine logic (evaluated once per tick):
    1. AWAKE -> POTENTIAL_SLEEP: combined condition is met
    2. POTENTIAL_SLEEP -> AWAKE: combined condition lost (no delay)
    3. POTENTIAL_SLEEP -> ASLEEP: combined held for confirmation_window seconds
    4. ASLEEP -> DISTURBED: combined condition lost
    5. DISTURBED -> ASLEEP: combined condition met again
    6. DISTURBED -> AWAKE: still disturbed after disturbed_timeout seconds

    Combined condition = HRV condition AND motion condition.
    """

    CONFIRMATION_WINDOW = 180.0     # seconds
    DISTURBED_TIMEOUT = 120.0       # seconds
    HISTORY_SIZE = 100

    def __init__(self, config: Optional[Dict] = None, now: Optional[float] = None):
        """
        Initialize state machine.

        Args:
            config: Configuration dictionary with timings:
                - confirmation_window: Seconds the combined condition must hold
                - disturbed_timeout: Seconds in DISTURBED before giving up on sleep
            now: Start time (default: now)
        """
        self.config = config or {}

        self.confirmation_window = self.config.get('confirmation_window', self.CONFIRMATION_WINDOW)
        self.disturbed_timeout = self.config.get('disturbed_timeout', self.DISTURBED_TIMEOUT)

        now = time.time() if now is None else now

        # State tracking
        self.current_state = SleepState.AWAKE
        self.last_transition_time = now
        self.time_in_state = 0.0
        self.sleep_detected = False
        self.sleep_start_time: Optional[float] = None
        self.conditions = ConditionState()

        self.history: deque = deque(maxlen=self.HISTORY_SIZE)

        logger.info(f"SleepStateMachine initialized")
        logger.info(f"  Confirmation window: {self.confirmation_window}s")
        logger.info(f"  Disturbed timeout: {self.disturbed_timeout}s")

    def update_conditions(self, hrv_met: bool, motion_met: bool,
                          now: Optional[float] = None) -> bool:
        """
        Feed the latest sub-conditions.

        Returns:
            True if the combined condition changed
        """
        now = time.time() if now is None else now
        changed = self.conditions.update(hrv_met, motion_met, now)
        if changed:
            logger.debug(f"Combined condition -> {self.conditions.combined_met} "
                         f"(hrv={self.conditions.hrv_met}, motion={self.conditions.motion_met})")
        return changed

    def evaluate(self, now: Optional[float] = None) -> Optional[StateTransition]:
        """
        Run one tick of the state machine.

        Args:
            now: Tick time (default: now)

        Returns:
            The accepted transition, or None if the state was kept
        """
        now = time.time() if now is None else now
        self.time_in_state = now - self.last_transition_time
        combined = self.conditions.combined_met

        if self.current_state == SleepState.AWAKE:
            if combined:
                return self._transition(SleepState.POTENTIAL_SLEEP, now, "Sleep conditions met")

        elif self.current_state == SleepState.POTENTIAL_SLEEP:
            if not combined:
                return self._transition(SleepState.AWAKE, now, "Sleep conditions lost")

            held = self.conditions.held_for(now)
            if held >= self.confirmation_window:
                onset = self.conditions.combined_since
                transition = self._transition(
                    SleepState.ASLEEP, now, f"Conditions held for {held:.0f}s"
                )
                self.sleep_start_time = onset
                self.sleep_detected = True
                return transition

        elif self.current_state == SleepState.ASLEEP:
            if not combined:
                return self._transition(SleepState.DISTURBED, now, "Sleep conditions lost")

        elif self.current_state == SleepState.DISTURBED:
            if combined:
                return self._transition(SleepState.ASLEEP, now, "Sleep conditions restored")

            if self.time_in_state > self.disturbed_timeout:
                transition = self._transition(
                    SleepState.AWAKE, now, f"Disturbed for {self.time_in_state:.0f}s"
                )
                self.sleep_detected = False
                self.sleep_start_time = None
                return transition

        return None

    def update(self, hrv_met: bool, motion_met: bool,
               now: Optional[float] = None) -> SleepState:
        """
        Update conditions and run one tick.

        Returns:
            Current sleep state
        """
        now = time.time() if now is None else now
        self.update_conditions(hrv_met, motion_met, now)
        self.evaluate(now)
        return self.current_state

    def _transition(self, new_state: SleepState, now: float,
                    reason: str) -> Optional[StateTransition]:
        if new_state == self.current_state:
            return None

        time_in_prev_state = now - self.last_transition_time
        logger.info(f"State change: {self.current_state.value} -> {new_state.value} "
                    f"(was {time_in_prev_state:.1f}s in previous state; {reason})")

        transition = StateTransition(self.current_state, new_state, now, reason)
        self.history.append(transition)
        self.current_state = new_state
        self.last_transition_time = now
        self.time_in_state = 0.0
        return transition

    def get_state(self) -> SleepState:
        """Get current sleep state"""
        return self.current_state

    def get_state_name(self) -> str:
        """Get current sleep state as string"""
        return self.current_state.value

    def get_time_in_state(self, now: Optional[float] = None) -> float:
        """Get seconds spent in current state"""
        now = time.time() if now is None else now
        return now - self.last_transition_time

    def is_sleeping(self) -> bool:
        """Check if sleep onset is confirmed and not yet lost"""
        return self.current_state in (SleepState.ASLEEP, SleepState.DISTURBED)

    def describe_hrv_condition(self, current: float, baseline: float,
                               threshold: float) -> str:
        """Human-readable HRV condition status"""
        if baseline <= 0:
            return "Waiting for baseline HRV data"
        if self.conditions.hrv_met:
            return f"HRV elevated: {current:.1f} >= {threshold:.1f}"
        return f"HRV below threshold: {current:.1f} < {threshold:.1f}"

    def describe_motion_condition(self, still_duration: float, motion_level: float) -> str:
        """Human-readable motion condition status"""
        if self.conditions.motion_met:
            return f"Still for {int(still_duration)}s"
        return f"Moving: {motion_level:.3f}"

    def get_stats(self, now: Optional[float] = None) -> Dict:
        """
        Get current detection statistics.

        Returns:
            Dictionary with current state information
        """
        now = time.time() if now is None else now
        return {
            'state': self.current_state.value,
            'state_code': self.current_state.name,
            'time_in_state': self.get_time_in_state(now),
            'hrv_met': self.conditions.hrv_met,
            'motion_met': self.conditions.motion_met,
            'combined_met': self.conditions.combined_met,
            'combined_held_for': self.conditions.held_for(now),
            'sleep_detected': self.sleep_detected,
            'sleep_start_time': self.sleep_start_time,
            'transitions': len(self.history),
        }

    def reset(self, now: Optional[float] = None):
        """Reset state machine to AWAKE"""
        now = time.time() if now is None else now
        self.current_state = SleepState.AWAKE
        self.last_transition_time = now
        self.time_in_state = 0.0
        self.sleep_detected = False
        self.sleep_start_time = None
        self.conditions = ConditionState()
        self.history.clear()
        logger.info("SleepStateMachine reset")


# Convenience function for testing
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    print("\nSleepStateMachine Test")

    machine = SleepStateMachine({
        'confirmation_window': 3,
        'disturbed_timeout': 2,
    }, now=0.0)

    # (tick, hrv_met, motion_met, description)
    test_scenarios = [
        (0, False, True, "Still, HRV normal"),
        (1, True, True, "HRV elevated"),
        (3, True, True, "Holding"),
        (4, True, True, "Confirmed"),
        (5, True, False, "Wearer moved"),
        (6, True, True, "Settled again"),
        (7, False, False, "Woke up"),
        (10, False, False, "Still awake"),
    ]

    for tick, hrv_met, motion_met, desc in test_scenarios:
        state = machine.update(hrv_met, motion_met, now=float(tick))
        print(f"t={tick:>2} {desc:20s} -> {state.value} (sleep start {machine.sleep_start_time})")
