import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from config.settings import (
    AGGREGATION_MIN_INTERVAL_SECONDS,
    RECONCILE_BACKOFF_SECONDS,
    RECONCILE_MAX_ATTEMPTS,
)
from ledger_services.errors import MalformedInputError
from ledger_services.integrity.anchor import VERIFY_ROOT_MISMATCH, IntegrityAnchor, VerifyReport
from ledger_services.schemas import Aggregate, Measurement, Reading
from ledger_services.storage.ledger_store import LedgerStore
from ledger_services.storage.reading_store import ReadingStore
from ledger_services.timeutil import Clock, iso_timestamp, system_clock

logger = logging.getLogger(__name__)

AGGREGATION_PREFIX = "aggregation_"
LAST_AGGREGATION_KEY = "LastAggregation"
AGGREGATION_COUNTER_KEY = "AggregationCounter"


class PipelineState(str, Enum):
    IDLE = "idle"
    RECONCILING = "reconciling"
    COMPUTING = "computing"
    COMMITTING = "committing"
    ABORTED = "aborted"


class AggregationStatus(str, Enum):
    AGGREGATED = "aggregated"
    TOO_SOON = "too_soon"
    NO_DATA = "no_data"
    INTEGRITY_FAULT = "integrity_fault"
    DIVERGED = "diverged"


@dataclass(frozen=True)
class AggregationOutcome:
    status: AggregationStatus
    message: str
    aggregate: Optional[Aggregate] = None
    report: Optional[VerifyReport] = None

    @property
    def ok(self) -> bool:
        return self.status == AggregationStatus.AGGREGATED

    def to_response(self) -> dict:
        if self.ok:
            return {
                "message": self.message,
                "id": self.aggregate.id,
                "aggregatedData": self.aggregate.to_record(),
            }
        response = {"error": self.message, "status": self.status.value}
        if self.report is not None:
            response["verification"] = self.report.to_dict()
        return response


def aggregation_id(number: int, timestamp: str) -> str:
    """Keys sort by aggregation number first, so range scans come back in run order."""
    return f"{AGGREGATION_PREFIX}{number:08d}_{timestamp}"


def _channel_mean(readings: List[Reading], channel: str) -> Measurement:
    measurements = [getattr(reading, channel) for reading in readings]
    units = {m.unit for m in measurements}
    if len(units) != 1:
        raise MalformedInputError(f"Mixed units for {channel}: {sorted(units)}")
    values = np.array([m.value for m in measurements], dtype=float)
    return Measurement(value=float(np.mean(values)), unit=units.pop())


class AggregationPipeline:
    """
    Idle -> Reconciling -> Computing -> Committing -> Idle, with Aborted
    reachable from Reconciling when the anchor root does not match the store.

    The only writer of aggregates and the only component deleting readings.
    Aggregation is at-least-once: if a commit stops after the aggregate is
    stored, the leftover readings are aggregated again on a later run.
    """

    def __init__(
        self,
        anchor: IntegrityAnchor,
        readings: ReadingStore,
        ledger: LedgerStore,
        clock: Clock = system_clock,
        min_interval: float = AGGREGATION_MIN_INTERVAL_SECONDS,
        max_attempts: int = RECONCILE_MAX_ATTEMPTS,
        backoff: float = RECONCILE_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.anchor = anchor
        self.readings = readings
        self.ledger = ledger
        self.clock = clock
        self.min_interval = min_interval
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.sleep = sleep
        self.state = PipelineState.IDLE

    def last_aggregation(self) -> Optional[float]:
        raw = self.ledger.get(LAST_AGGREGATION_KEY)
        return float(raw) if raw else None

    def _next_number(self) -> int:
        raw = self.ledger.get(AGGREGATION_COUNTER_KEY)
        return (int(raw) if raw else 0) + 1

    def aggregate(self) -> AggregationOutcome:
        now = self.clock()
        last = self.last_aggregation()
        if last is not None and now - last < self.min_interval:
            remaining = self.min_interval - (now - last)
            logger.info(f"Not enough time has passed to aggregate data ({remaining:.0f}s left)")
            return AggregationOutcome(AggregationStatus.TOO_SOON,
                                      "Not enough time has passed to aggregate data")

        report = None
        for attempt in range(1, self.max_attempts + 1):
            self.state = PipelineState.RECONCILING
            with self.anchor.exclusive():
                report, snapshot = self.anchor.verify_snapshot()
                if report.ok:
                    return self._compute_and_commit(snapshot, now)
                if report.kind == VERIFY_ROOT_MISMATCH:
                    self.state = PipelineState.ABORTED
                    logger.warning("❌ Integrity compromised: Merkle root mismatch at equal count, refusing to aggregate")
                    return AggregationOutcome(AggregationStatus.INTEGRITY_FAULT,
                                              "Data integrity compromised: Merkle root mismatch",
                                              report=report)

            if attempt < self.max_attempts:
                delay = self.backoff * (2 ** (attempt - 1))
                logger.info(f"Reading count mismatch ({report.stored_count} anchored vs "
                            f"{report.actual_count} stored), retry {attempt}/{self.max_attempts - 1} in {delay}s")
                self.sleep(delay)

        self.state = PipelineState.IDLE
        logger.warning(f"Reading count still diverges after {self.max_attempts} attempts")
        return AggregationOutcome(AggregationStatus.DIVERGED,
                                  "Reading count does not match the anchor, try again later",
                                  report=report)

    def _compute_and_commit(self, snapshot: List[Reading], now: float) -> AggregationOutcome:
        self.state = PipelineState.COMPUTING
        if not snapshot:
            self.state = PipelineState.IDLE
            logger.info("No data available for aggregation")
            return AggregationOutcome(AggregationStatus.NO_DATA, "No data available for aggregation")

        try:
            averages = {channel: _channel_mean(snapshot, channel) for channel in ("co2", "pm25", "vocs")}
        except MalformedInputError:
            self.state = PipelineState.IDLE
            raise

        timestamp = iso_timestamp(now)
        number = self._next_number()
        aggregate = Aggregate(
            id=aggregation_id(number, timestamp),
            aggregationNumber=number,
            avgCO2=averages["co2"],
            avgPM25=averages["pm25"],
            avgVOCs=averages["vocs"],
            dataCount=len(snapshot),
            timestamp=timestamp,
        )

        self.state = PipelineState.COMMITTING
        try:
            logger.info(f"Saving aggregated data with ID: {aggregate.id}")
            self.ledger.put(AGGREGATION_COUNTER_KEY, str(number))
            self.ledger.put_json(aggregate.id, aggregate.to_record())
            self.ledger.put(LAST_AGGREGATION_KEY, repr(now))
            self.readings.clear()
            self.anchor.reset(timestamp)
        finally:
            self.state = PipelineState.IDLE

        logger.info(f"✅ Data aggregated successfully. ID: {aggregate.id} ({len(snapshot)} readings)")
        return AggregationOutcome(AggregationStatus.AGGREGATED, "Data aggregated successfully",
                                  aggregate=aggregate)
