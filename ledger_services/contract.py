import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config.settings import (
    LEDGER_COLLECTION,
    MONGODB_DATABASE,
    MONGODB_TIMEOUT_MS,
    MONGODB_URI,
    READINGS_COLLECTION,
)
from hardware_services.sensor_simulator import SimulatedReadingGenerator
from ledger_services.aggregation.pipeline import AggregationOutcome, AggregationPipeline
from ledger_services.alerts import PollutantAlert, check_thresholds
from ledger_services.consensus.credentials import OrgCredentials, credentials_from_arguments
from ledger_services.consensus.endorsement import EndorsementValidator, signers_from_credentials
from ledger_services.errors import MalformedInputError, StoreUnavailableError, UnknownOperationError
from ledger_services.integrity.anchor import IntegrityAnchor, VerifyReport
from ledger_services.integrity.merkle import canonicalize
from ledger_services.schemas import UNIT_CO2, UNIT_PM25, UNIT_VOCS, Measurement, Reading, ValidationResult
from ledger_services.storage.ledger_store import LedgerStore, MongoLedgerStore
from ledger_services.storage.reading_store import ReadingStore
from ledger_services.timeutil import Clock, iso_timestamp, system_clock

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    REGISTER_READING = "registerReading"
    QUERY_READINGS = "queryReadings"
    AGGREGATE = "aggregate"
    CLEAR_READINGS = "clearReadings"
    LIST_AGGREGATES = "listAggregates"
    VALIDATE = "validate"
    VERIFY_ANCHOR = "verifyAnchor"
    PROVE_READING = "proveReading"


@dataclass(frozen=True)
class RegistrationResult:
    reading: Reading
    alerts: List[PollutantAlert] = field(default_factory=list)
    simulated: bool = False

    def to_json(self) -> str:
        """The stored reading as canonical JSON."""
        return canonicalize(self.reading).decode("utf-8")


CredentialInput = Union[OrgCredentials, Mapping[str, str]]


def _parse_int(name: str, value: str) -> int:
    try:
        number = int(str(value).strip())
    except ValueError as e:
        raise MalformedInputError(f"{name} must be an integer, got {value!r}") from e
    if number < 0:
        raise MalformedInputError(f"{name} must not be negative, got {number}")
    return number


def _parse_float(name: str, value: str) -> float:
    try:
        number = float(str(value).strip())
    except ValueError as e:
        raise MalformedInputError(f"{name} must be a number, got {value!r}") from e
    if not math.isfinite(number) or number < 0:
        raise MalformedInputError(f"{name} must be a finite, non-negative number, got {value!r}")
    return number


class EdgeContract:
    """
    Entry point for every ledger function. Each Operation member is bound to
    exactly one handler when the contract is built.
    """

    def __init__(
        self,
        readings: ReadingStore,
        ledger: LedgerStore,
        clock: Clock = system_clock,
        anchor: Optional[IntegrityAnchor] = None,
        pipeline: Optional[AggregationPipeline] = None,
        validator: Optional[EndorsementValidator] = None,
        thresholds: Optional[Mapping[str, float]] = None,
    ):
        self.readings = readings
        self.ledger = ledger
        self.clock = clock
        self.anchor = anchor or IntegrityAnchor(readings, ledger, clock=clock)
        self.pipeline = pipeline or AggregationPipeline(self.anchor, readings, ledger, clock=clock)
        self.validator = validator or EndorsementValidator(ledger)
        self.thresholds = thresholds

        self._handlers: Dict[Operation, Callable[..., Any]] = {
            Operation.REGISTER_READING: self.register_reading,
            Operation.QUERY_READINGS: self.query_readings,
            Operation.AGGREGATE: self.aggregate,
            Operation.CLEAR_READINGS: self.clear_readings,
            Operation.LIST_AGGREGATES: self.list_aggregates,
            Operation.VALIDATE: self.validate,
            Operation.VERIFY_ANCHOR: self.verify_anchor,
            Operation.PROVE_READING: self.prove_reading,
        }
        missing = set(Operation) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler bound for {sorted(op.value for op in missing)}")

    @classmethod
    def from_settings(cls, uri: str = MONGODB_URI, database: str = MONGODB_DATABASE, **kwargs) -> "EdgeContract":
        """Contract over MongoDB: one client serves both the readings and the ledger collection."""
        client = MongoClient(uri, serverSelectionTimeoutMS=MONGODB_TIMEOUT_MS)
        try:
            client.admin.command("ping")
            readings = ReadingStore(client[database][READINGS_COLLECTION], client=client)
        except (PyMongoError, StoreUnavailableError) as e:
            client.close()
            raise StoreUnavailableError(f"MongoDB connection failed: {e}") from e
        ledger = MongoLedgerStore(client[database][LEDGER_COLLECTION])
        logger.info(f"✅ MongoDB connected successfully to {database}")
        return cls(readings, ledger, **kwargs)

    def close(self) -> None:
        self.readings.close()

    # --- Dispatch ---

    def invoke(self, operation: Operation, *args, **kwargs) -> Any:
        logger.debug(f"Invoking {operation.value}")
        return self._handlers[operation](*args, **kwargs)

    def invoke_name(self, name: str, *args, **kwargs) -> Any:
        try:
            operation = Operation(name)
        except ValueError:
            raise UnknownOperationError(f"Unknown operation: {name!r}") from None
        return self.invoke(operation, *args, **kwargs)

    # --- Handlers ---

    def register_reading(self, sensor_id: str = "", building: str = "", floor: str = "",
                         co2: str = "", pm25: str = "", vocs: str = "") -> RegistrationResult:
        """
        Any empty argument switches to a simulated reading seeded with the
        transaction second, so replaying the transaction replays the reading.
        """
        tx_seconds = int(self.clock())
        timestamp = iso_timestamp(tx_seconds)
        arguments = (sensor_id, building, floor, co2, pm25, vocs)
        simulated = any(arg is None or str(arg).strip() == "" for arg in arguments)

        if simulated:
            reading = SimulatedReadingGenerator(seed=tx_seconds).generate(timestamp)
        else:
            reading = Reading(
                timestamp=timestamp,
                sensorId=str(sensor_id).strip(),
                location=f"{str(building).strip()}, {str(floor).strip()}",
                CO2=Measurement(value=_parse_int("CO2", co2), unit=UNIT_CO2),
                PM25=Measurement(value=_parse_float("PM25", pm25), unit=UNIT_PM25),
                VOCs=Measurement(value=_parse_int("VOCs", vocs), unit=UNIT_VOCS),
            )

        stored = self.anchor.record(reading)
        logger.info(f"Reading registered for {stored.sensor_id} at {stored.timestamp}"
                    f"{' (simulated)' if simulated else ''}")
        return RegistrationResult(stored, check_thresholds(stored, self.thresholds), simulated)

    def query_readings(self) -> List[dict]:
        return [reading.to_record() for reading in self.readings.all()]

    def aggregate(self) -> AggregationOutcome:
        return self.pipeline.aggregate()

    def clear_readings(self) -> dict:
        """Bulk delete for recovery; the anchor is reset with it so the two stay in step."""
        with self.anchor.exclusive():
            deleted = self.readings.clear()
            self.anchor.reset()
        return {"status": "success", "deleted": deleted}

    def list_aggregates(self) -> List[dict]:
        return self.validator.list_aggregates()

    def validate(self, credentials: Mapping[str, CredentialInput]) -> ValidationResult:
        """
        Every credential is parsed before any aggregate is touched: one
        malformed PEM rejects the call without mutating the ledger.
        """
        parsed = {}
        for org_id, value in credentials.items():
            if isinstance(value, OrgCredentials):
                parsed[org_id] = value
                continue
            try:
                parsed[org_id] = credentials_from_arguments(org_id, value["privateKey"], value["certificate"])
            except (KeyError, TypeError) as e:
                raise MalformedInputError(f"Credentials for {org_id} need 'privateKey' and 'certificate'") from e
        signers = signers_from_credentials(parsed, clock=self.clock)
        return self.validator.validate(signers)

    def verify_anchor(self) -> VerifyReport:
        return self.anchor.verify()

    def prove_reading(self, timestamp: str, sensor_id: str) -> dict:
        if not str(timestamp or "").strip() or not str(sensor_id or "").strip():
            raise MalformedInputError("timestamp and sensorId are required")
        return self.anchor.prove(str(timestamp).strip(), str(sensor_id).strip())
