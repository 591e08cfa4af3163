import logging
import threading
from typing import Optional

from config.settings import AGGREGATE_INTERVAL_SECONDS, REGISTER_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


class SimulationScheduler:
    """
    Drives the contract on two timers: a simulated registration every
    register_interval seconds and an aggregation every aggregate_interval
    seconds. Registration ticks are skipped while an aggregation runs.
    """

    def __init__(self, contract, register_interval: float = REGISTER_INTERVAL_SECONDS,
                 aggregate_interval: float = AGGREGATE_INTERVAL_SECONDS):
        self.contract = contract
        self.register_interval = register_interval
        self.aggregate_interval = aggregate_interval
        self._aggregating = threading.Event()
        self._aggregate_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads = []

    @property
    def is_aggregating(self) -> bool:
        return self._aggregating.is_set()

    def register_tick(self):
        """Registers one simulated reading. Returns None when skipped or failed."""
        if self._aggregating.is_set():
            logger.info("Skipping data registration while aggregation is in progress")
            return None
        try:
            result = self.contract.register_reading()
        except Exception as e:
            logger.error(f"Error registering simulated data: {e}")
            return None
        logger.info(f"Simulated data registered for {result.reading.sensor_id}")
        return result

    def aggregate_tick(self):
        """Runs one aggregation. A tick arriving while another one runs is skipped."""
        if not self._aggregate_lock.acquire(blocking=False):
            logger.info("Aggregation already in progress, skipping")
            return None
        self._aggregating.set()
        try:
            outcome = self.contract.aggregate()
            logger.info(f"Aggregation tick: {outcome.status.value} ({outcome.message})")
            return outcome
        except Exception as e:
            logger.error(f"Error during aggregation: {e}")
            return None
        finally:
            self._aggregating.clear()
            self._aggregate_lock.release()

    def _loop(self, interval: float, tick) -> None:
        while not self._stop.wait(interval):
            tick()

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(self.register_interval, self.register_tick),
                             name="register-tick", daemon=True),
            threading.Thread(target=self._loop, args=(self.aggregate_interval, self.aggregate_tick),
                             name="aggregate-tick", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Simulation started: register every {self.register_interval}s, "
                    f"aggregate every {self.aggregate_interval}s")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Simulation stopped")
