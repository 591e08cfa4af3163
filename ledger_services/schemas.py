from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

# Wire-format units attached to every pollutant channel
UNIT_CO2 = "ppm"
UNIT_PM25 = "ug/m3"
UNIT_VOCS = "ppb"


class LedgerModel(BaseModel):
    """
    Base for every record that is hashed, signed or persisted.
    Attributes are snake_case; the wire format uses the camelCase aliases.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# 1. A single pollutant value with its unit tag.
class Measurement(LedgerModel):
    value: float
    unit: str


# 2. A raw sensor reading, unique by (timestamp, sensorId).
class Reading(LedgerModel):
    timestamp: str                                   # RFC3339, UTC
    sensor_id: str = Field(alias="sensorId")
    location: str                                    # "<building>, <floor>"
    co2: Measurement = Field(alias="CO2")
    pm25: Measurement = Field(alias="PM25")
    vocs: Measurement = Field(alias="VOCs")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.timestamp, self.sensor_id)

    @property
    def reference(self) -> str:
        """Opaque reference stored as the anchor's lastProcessedKey."""
        return f"{self.timestamp}|{self.sensor_id}"


# 3. The ledger commitment the off-chain reading set must match.
class Anchor(LedgerModel):
    merkle_root: str = Field(default="", alias="merkleRoot")
    data_count: int = Field(default=0, alias="dataCount")
    timestamp: Optional[str] = None
    last_processed_key: Optional[str] = Field(default=None, alias="lastProcessedKey")

    @classmethod
    def empty(cls, timestamp: Optional[str] = None) -> "Anchor":
        return cls(merkleRoot="", dataCount=0, timestamp=timestamp, lastProcessedKey=None)

    @property
    def is_empty(self) -> bool:
        return self.data_count == 0 and self.merkle_root == ""


# 4. A compacted summary replacing a batch of readings.
class Aggregate(LedgerModel):
    id: str
    aggregation_number: int = Field(alias="aggregationNumber")
    avg_co2: Measurement = Field(alias="avgCO2")
    avg_pm25: Measurement = Field(alias="avgPM25")
    avg_vocs: Measurement = Field(alias="avgVOCs")
    data_count: int = Field(alias="dataCount")
    timestamp: str


# 5. One organization's detached signature over a canonical aggregate.
class Endorsement(LedgerModel):
    org_id: str = Field(alias="orgId")
    certificate: str                                 # PEM
    signature: str                                   # base64
    timestamp: str


# 6. The outcome of a validation pass.
class AggregateVerdict(LedgerModel):
    id: str
    result: bool


class ValidationStats(LedgerModel):
    total: int = 0
    successful: int = 0
    failed: int = 0


class ValidationResult(LedgerModel):
    status: str
    message: str
    statistics: ValidationStats
    validation_result_id: Optional[str] = Field(default=None, alias="validationResultId")
    results: List[AggregateVerdict] = Field(default_factory=list)
