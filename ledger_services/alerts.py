import logging
from dataclasses import asdict, dataclass
from typing import List, Mapping, Optional

from config.settings import THRESHOLD_CO2_PPM, THRESHOLD_PM25_UGM3, THRESHOLD_VOCS_PPB
from ledger_services.schemas import Reading

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = {
    "CO2": THRESHOLD_CO2_PPM,
    "PM25": THRESHOLD_PM25_UGM3,
    "VOCs": THRESHOLD_VOCS_PPB,
}


@dataclass(frozen=True)
class PollutantAlert:
    sensor_id: str
    pollutant: str
    value: float
    threshold: float
    unit: str

    def to_dict(self) -> dict:
        return asdict(self)


def check_thresholds(reading: Reading, thresholds: Optional[Mapping[str, float]] = None) -> List[PollutantAlert]:
    """One alert per pollutant strictly above its threshold."""
    thresholds = DEFAULT_THRESHOLDS if thresholds is None else thresholds
    alerts = []
    for pollutant, measurement in (("CO2", reading.co2), ("PM25", reading.pm25), ("VOCs", reading.vocs)):
        limit = thresholds.get(pollutant)
        if limit is not None and measurement.value > limit:
            alerts.append(PollutantAlert(reading.sensor_id, pollutant, measurement.value, limit, measurement.unit))
            logger.warning(f"⚠️ {pollutant} at {reading.sensor_id}: {measurement.value} {measurement.unit} "
                           f"exceeds {limit}")
    return alerts
