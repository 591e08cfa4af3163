"""Pytest configuration and shared fixtures."""

import base64
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from ledger_services.aggregation.pipeline import AggregationPipeline
from ledger_services.consensus.credentials import OrgCredentials
from ledger_services.consensus.endorsement import EndorsementPolicy, EndorsementValidator
from ledger_services.contract import EdgeContract
from ledger_services.integrity.anchor import IntegrityAnchor
from ledger_services.schemas import UNIT_CO2, UNIT_PM25, UNIT_VOCS, Measurement, Reading
from ledger_services.storage.ledger_store import InMemoryLedgerStore
from ledger_services.storage.reading_store import ReadingStore

# 2023-11-14T22:13:20Z
START_EPOCH = 1_700_000_000.0


class FakeClock:
    """Manually advanced transaction clock."""

    def __init__(self, now: float = START_EPOCH):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_reading(timestamp="2024-05-01T10:00:00.000Z", sensor_id="M01", co2=400, pm25=5.0, vocs=50,
                 location="Building_1, 1st floor") -> Reading:
    return Reading(
        timestamp=timestamp,
        sensorId=sensor_id,
        location=location,
        CO2=Measurement(value=co2, unit=UNIT_CO2),
        PM25=Measurement(value=pm25, unit=UNIT_PM25),
        VOCs=Measurement(value=vocs, unit=UNIT_VOCS),
    )


def _self_signed_certificate(private_key, org_id: str) -> str:
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, f"admin.{org_id}"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, org_id),
    ])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


def generate_credentials(org_id: str, key_type: str = "ec") -> OrgCredentials:
    if key_type == "rsa":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        private_key = ec.generate_private_key(ec.SECP256R1())
    key_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return OrgCredentials(org_id=org_id, private_key_pem=key_pem,
                          certificate_pem=_self_signed_certificate(private_key, org_id))


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


# ==================== FIXTURES ====================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return InMemoryLedgerStore()


@pytest.fixture
def mongo_client():
    client = mongomock.MongoClient()
    yield client
    client.close()


@pytest.fixture
def readings_collection(mongo_client):
    return mongo_client["iotDataDB"]["iotData"]


@pytest.fixture
def reading_store(readings_collection):
    return ReadingStore(readings_collection)


@pytest.fixture
def anchor(reading_store, ledger, clock):
    return IntegrityAnchor(reading_store, ledger, clock=clock)


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def pipeline(anchor, reading_store, ledger, clock, sleeps):
    return AggregationPipeline(anchor, reading_store, ledger, clock=clock, min_interval=900,
                               max_attempts=3, backoff=1.0, sleep=sleeps.append)


@pytest.fixture
def policy():
    return EndorsementPolicy(organizations=("Org1MSP", "Org2MSP"), min_endorsements=2)


@pytest.fixture
def validator(ledger, policy):
    return EndorsementValidator(ledger, policy=policy, delete_rejected=True)


@pytest.fixture
def contract(reading_store, ledger, clock, anchor, pipeline, validator):
    return EdgeContract(reading_store, ledger, clock=clock, anchor=anchor, pipeline=pipeline,
                        validator=validator)


@pytest.fixture(scope="session")
def org_credentials():
    """EC credentials for both endorsing organizations."""
    return {
        "Org1MSP": generate_credentials("Org1MSP"),
        "Org2MSP": generate_credentials("Org2MSP"),
    }


@pytest.fixture(scope="session")
def rsa_credentials():
    return generate_credentials("Org2MSP", key_type="rsa")
