"""
PowerNap - Sleep Onset Detection
Main Entry Point

Runs a simulated power nap end to end:
- Health store: in-memory, seeded with 7 days of synthetic HRV history
- Accelerometer: simulated wrist noise (restless, then settling down)
- Engine: HRV + stillness fused by the sleep state machine
- Session: countdown that switches to sleep onset, then wakes the user
- Communication: optional MQTT state/wake publishing

Demo timings are shortened so a whole nap plays out in a few minutes.
"""

import logging
import signal
import sys
import time
from pathlib import Path

import numpy as np

# Add parent directory to path so we can import powernap modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from powernap.communication.mqtt_client import MQTTClient, MQTTError
from powernap.communication.wake_signal import LoggingWakeSignal, MQTTWakeSignal
from powernap.data.models import HRVReading
from powernap.processing.engine import SleepDetectionEngine
from powernap.processing.hrv_processor import SECONDS_PER_DAY
from powernap.sensors.biometric_source import InMemoryBiometricSource
from powernap.sensors.motion_source import SimulatedMotionSource
from powernap.session.controller import NapSessionController

# === CONFIGURATION ===
DEVICE_ID = "watch_1"
USER_ID = "user_001"

MQTT_ENABLED = False
MQTT_BROKER = "test.mosquitto.org"
MQTT_PORT = 1883

NAP_DURATION_MINUTES = 1
HISTORY_DAYS = 7
BASELINE_MEAN_MS = 45.0
BASELINE_STD_MS = 6.0
SLEEPY_HRV_MS = 58.0

RESTLESS_ACTIVITY = 0.06       # g, fidgeting
STILL_ACTIVITY = 0.003         # g, lying still
SETTLE_AFTER = 20              # seconds of restlessness before settling
HRV_SAMPLE_INTERVAL = 10       # seconds between simulated HRV samples
STATUS_INTERVAL = 1.0

ENGINE_CONFIG = {
    'long_window': 30,
    'short_window': 5,
    'auto_adjust_threshold': False,
    'confirmation_window': 30,
    'disturbed_timeout': 20,
    'motion_still_time': 15,
}

# === LOGGING SETUP ===
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout), logging.FileHandler("powernap.log")],
)
logger = logging.getLogger(__name__)

# === GLOBAL STATE ===
_components = {}
_running = True


def signal_handler(sig, frame):
    """Handle Ctrl+C for graceful shutdown"""
    global _running
    logger.info("Shutdown signal received...")
    _running = False


def synthetic_history(now: float, days: int = HISTORY_DAYS, seed: int = 7):
    """Hourly HRV samples for the last `days` days"""
    rng = np.random.default_rng(seed)
    hours = days * 24
    timestamps = now - SECONDS_PER_DAY * days + np.arange(hours) * 3600.0
    values = np.clip(rng.normal(BASELINE_MEAN_MS, BASELINE_STD_MS, hours), 20.0, None)
    return [HRVReading(timestamp=float(t), value_ms=float(v)) for t, v in zip(timestamps, values)]


def initialize_components():
    """
    Initialize data sources, engine, session and outputs.

    Returns:
        Dictionary with initialized components
    """
    logger.info("=" * 60)
    logger.info("PowerNap - Sleep Onset Detection")
    logger.info("=" * 60)

    components = {}
    now = time.time()

    # 1. Health store
    logger.info("[1/5] Seeding health store...")
    health = InMemoryBiometricSource(synthetic_history(now))
    health.add_reading(HRVReading(timestamp=now, value_ms=BASELINE_MEAN_MS), notify=False)
    components["health"] = health
    logger.info(f"✓ {HISTORY_DAYS} days of HRV history loaded")

    # 2. Accelerometer
    logger.info("[2/5] Initializing simulated accelerometer...")
    motion = SimulatedMotionSource(activity=RESTLESS_ACTIVITY)
    components["motion"] = motion
    logger.info(f"✓ Accelerometer ready ({RESTLESS_ACTIVITY:.3f}g noise)")

    # 3. Engine
    logger.info("[3/5] Initializing sleep detection engine...")
    engine = SleepDetectionEngine(health, motion, ENGINE_CONFIG)
    components["engine"] = engine
    logger.info("✓ SleepDetectionEngine initialized")

    # 4. MQTT (optional)
    logger.info("[4/5] Initializing MQTT client...")
    wake_signal = LoggingWakeSignal()
    if MQTT_ENABLED:
        mqtt_client = MQTTClient(MQTT_BROKER, MQTT_PORT, user_id=USER_ID, device_id=DEVICE_ID)
        try:
            if mqtt_client.connect():
                mqtt_client.attach(engine)
                wake_signal = MQTTWakeSignal(mqtt_client)
                components["mqtt"] = mqtt_client
                logger.info(f"✓ Publishing to {mqtt_client.topic('state')}")
        except MQTTError as e:
            logger.warning(f"MQTT unavailable, continuing offline: {e}")
    else:
        logger.info("○ MQTT disabled")

    # 5. Session
    logger.info("[5/5] Initializing nap session...")
    session = NapSessionController(engine, wake_signal,
                                   {'nap_duration_minutes': NAP_DURATION_MINUTES})
    components["session"] = session
    logger.info(f"✓ Nap length {NAP_DURATION_MINUTES} min")

    logger.info("\n" + "=" * 60)
    logger.info("System Ready - Starting Nap")
    logger.info("=" * 60)

    return components


def main_loop(components):
    """
    Drive the simulated wearer and print status once per second.

    Ends when the nap completes or on Ctrl+C.
    """
    global _running

    health = components["health"]
    motion = components["motion"]
    engine = components["engine"]
    session = components["session"]

    if not session.start():
        logger.error("Nap could not be started")
        return

    started = time.time()
    last_hrv = started
    settled = False

    print(f"\n{'T+':>5} | {'STATE':<16} | {'HRV':>6} | {'BASE':>6} | {'MOTION':>7} | {'STILL':>5} | {'LEFT'}")
    print("-" * 72)

    while _running and session.is_active:
        try:
            now = time.time()

            # 1. Simulated wearer settles down
            if not settled and now - started >= SETTLE_AFTER:
                logger.info("Wearer settles down")
                motion.set_activity(STILL_ACTIVITY)
                settled = True

            # 2. HRV rises once settled
            if now - last_hrv >= HRV_SAMPLE_INTERVAL:
                value = SLEEPY_HRV_MS if settled else BASELINE_MEAN_MS
                health.add_reading(HRVReading(timestamp=now, value_ms=value))
                last_hrv = now

            # 3. Display status
            readings = engine.readings_snapshot()
            print(
                f"{now - started:>5.0f} | {engine.current_sleep_state().value:<16} | "
                f"{readings['hrv']:>6.1f} | {readings['baseline_hrv']:>6.1f} | "
                f"{readings['motion_level']:>7.4f} | {readings['still_duration']:>5.0f} | "
                f"{session.formatted_time_remaining()} ({session.monitoring_status})"
            )

            time.sleep(STATUS_INTERVAL)

        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
            break


def shutdown(components):
    """Graceful shutdown and cleanup"""
    logger.info("\nShutting down...")

    session = components.get("session")
    if session is not None:
        session.stop()
        if session.record is not None:
            logger.info(f"Nap record: {session.record.to_dict()}")

    if "mqtt" in components:
        components["mqtt"].disconnect()
        logger.info("MQTT connection closed")

    logger.info("Shutdown complete. Goodbye!")


def main():
    """
    Main entry point

    Initializes all components and runs one simulated nap.
    Handles graceful shutdown on Ctrl+C.
    """
    global _components

    # Set up signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        _components = initialize_components()
        main_loop(_components)

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        shutdown(_components)


if __name__ == "__main__":
    main()
