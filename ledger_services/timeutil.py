import time
from datetime import datetime, timezone
from typing import Callable

# Returns the logical transaction time in epoch seconds
Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


def iso_timestamp(epoch_seconds: float) -> str:
    """RFC3339 UTC with millisecond precision, e.g. 2024-05-01T10:00:00.000Z"""
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> float:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).timestamp()
