import os
import logging
from dotenv import load_dotenv

# --- Locate project root ---
# This assumes the 'config' folder is in the project's root directory.
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
dotenv_path = os.path.join(PROJECT_ROOT, ".env")

# --- Load variables from .env at project root ---
load_dotenv(dotenv_path)


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_list(name: str, default: str) -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _get_mapping(name: str) -> dict:
    """Parses 'Org1MSP=/path/a,Org2MSP=/path/b' into a dict."""
    mapping = {}
    for item in _get_list(name, ""):
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        mapping[key.strip()] = value.strip()
    return mapping


# --- Off-chain document store (MongoDB) ---
MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017/")
MONGODB_DATABASE = os.getenv("MONGODB_DATABASE", "iotDataDB")
READINGS_COLLECTION = os.getenv("READINGS_COLLECTION", "iotData")
LEDGER_COLLECTION = os.getenv("LEDGER_COLLECTION", "ledger")
MONGODB_TIMEOUT_MS = int(os.getenv("MONGODB_TIMEOUT_MS", "5000"))

# --- Aggregation policy ---
AGGREGATION_MIN_INTERVAL_SECONDS = float(os.getenv("AGGREGATION_MIN_INTERVAL_SECONDS", "900"))
RECONCILE_MAX_ATTEMPTS = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "3"))
RECONCILE_BACKOFF_SECONDS = float(os.getenv("RECONCILE_BACKOFF_SECONDS", "1.0"))

# --- Endorsement policy ---
ENDORSING_ORGANIZATIONS = _get_list("ENDORSING_ORGANIZATIONS", "Org1MSP,Org2MSP")
MIN_ENDORSEMENTS = int(os.getenv("MIN_ENDORSEMENTS", "2"))
DELETE_REJECTED_AGGREGATES = _get_bool("DELETE_REJECTED_AGGREGATES", True)
# Each value points at an MSP directory holding keystore/ and signcerts/
ORG_MSP_DIRS = _get_mapping("ORG_MSP_DIRS")
# Expected certificate subject O= per organization, e.g. "Org1MSP=org1.example.com"
CERT_ORGANIZATIONS = _get_mapping("CERT_ORGANIZATIONS")

# --- Pollutant alert thresholds ---
THRESHOLD_CO2_PPM = float(os.getenv("THRESHOLD_CO2_PPM", "1000"))
THRESHOLD_PM25_UGM3 = float(os.getenv("THRESHOLD_PM25_UGM3", "10"))
THRESHOLD_VOCS_PPB = float(os.getenv("THRESHOLD_VOCS_PPB", "100"))

# --- Sensor network ---
API_BASE_URL = os.getenv("API_BASE_URL", "http://127.0.0.1:5000")
MQTT_BROKER = os.getenv("MQTT_BROKER", "broker.hivemq.com")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
MQTT_TOPIC_PREFIX = os.getenv("MQTT_TOPIC_PREFIX", "airledger/sensors")

# --- Simulation schedule ---
REGISTER_INTERVAL_SECONDS = float(os.getenv("REGISTER_INTERVAL_SECONDS", "30"))
AGGREGATE_INTERVAL_SECONDS = float(os.getenv("AGGREGATE_INTERVAL_SECONDS", "300"))
SIMULATION_ENABLED = _get_bool("SIMULATION_ENABLED", False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "5000"))


def configure_logging(level: str = None) -> None:
    """Configures the root logger once for an entry point."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# --- Debug check (optional but recommended) ---
if MIN_ENDORSEMENTS > len(ENDORSING_ORGANIZATIONS):
    print(f"⚠️ WARNING: MIN_ENDORSEMENTS={MIN_ENDORSEMENTS} exceeds the {len(ENDORSING_ORGANIZATIONS)} configured organizations!")
