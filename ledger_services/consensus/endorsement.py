import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.x509.oid import NameOID

from config.settings import (
    CERT_ORGANIZATIONS,
    DELETE_REJECTED_AGGREGATES,
    ENDORSING_ORGANIZATIONS,
    MIN_ENDORSEMENTS,
)
from ledger_services.aggregation.pipeline import AGGREGATION_PREFIX
from ledger_services.consensus.credentials import PEM_BLOCK, OrgCredentials
from ledger_services.errors import MalformedCredentialError
from ledger_services.integrity.merkle import canonicalize
from ledger_services.schemas import (
    UNIT_CO2,
    UNIT_PM25,
    UNIT_VOCS,
    AggregateVerdict,
    Endorsement,
    ValidationResult,
    ValidationStats,
)
from ledger_services.storage.ledger_store import LedgerStore
from ledger_services.timeutil import Clock, iso_timestamp, parse_timestamp, system_clock

logger = logging.getLogger(__name__)

VALIDATION_RESULT_PREFIX = "validation-result_"
AGGREGATION_RANGE_END = AGGREGATION_PREFIX + "\uffff"
_NUMBER_IN_KEY = re.compile(r"aggregation_(\d+)_")


# --- Signing capability ---

class Signer(Protocol):
    org_id: str

    def sign(self, data: bytes) -> Endorsement:
        ...


class Verifier(Protocol):
    def verify(self, endorsement: Endorsement, data: bytes) -> bool:
        ...


def _sign_bytes(private_key, data: bytes) -> bytes:
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(data, ec.ECDSA(hashes.SHA256()))
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(data)
    raise TypeError(f"Unsupported private key type: {type(private_key).__name__}")


def _verify_bytes(public_key, signature: bytes, data: bytes) -> None:
    """Raises InvalidSignature on mismatch."""
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
    elif isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    elif isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key.verify(signature, data)
    else:
        raise TypeError(f"Unsupported public key type: {type(public_key).__name__}")


class PemSigner:
    """
    In-process signer for one organization, built from a PEM private key and
    its PEM certificate. Both are parsed up front so a malformed block fails
    here with a readable message instead of as an opaque signing error.
    """

    def __init__(self, org_id: str, private_key_pem: str, certificate_pem: str, clock: Clock = system_clock):
        self.org_id = org_id
        self.clock = clock

        if not PEM_BLOCK.search(private_key_pem or ""):
            raise MalformedCredentialError(org_id, "private key is not a PEM block")
        if not certificate_pem or "BEGIN CERTIFICATE" not in certificate_pem:
            raise MalformedCredentialError(org_id, "certificate is not a PEM certificate")

        try:
            self._private_key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise MalformedCredentialError(org_id, f"private key cannot be loaded ({e})") from e
        if not isinstance(self._private_key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey,
                                              ed25519.Ed25519PrivateKey)):
            raise MalformedCredentialError(org_id, f"unsupported key type {type(self._private_key).__name__}")

        try:
            x509.load_pem_x509_certificate(certificate_pem.encode())
        except ValueError as e:
            raise MalformedCredentialError(org_id, f"certificate cannot be loaded ({e})") from e
        self.certificate_pem = certificate_pem

    @classmethod
    def from_credentials(cls, credentials: OrgCredentials, clock: Clock = system_clock) -> "PemSigner":
        return cls(credentials.org_id, credentials.private_key_pem, credentials.certificate_pem, clock=clock)

    def sign(self, data: bytes) -> Endorsement:
        signature = _sign_bytes(self._private_key, data)
        return Endorsement(
            orgId=self.org_id,
            certificate=self.certificate_pem,
            signature=base64.b64encode(signature).decode("ascii"),
            timestamp=iso_timestamp(self.clock()),
        )


class CertificateVerifier:
    """
    Checks an endorsement against the public key inside its own certificate.
    When an organization has an expected subject O= name, a certificate
    issued to another organization is refused even if the signature is good.
    """

    def __init__(self, organization_names: Optional[Mapping[str, str]] = None):
        self.organization_names = dict(CERT_ORGANIZATIONS if organization_names is None else organization_names)

    def _subject_matches(self, certificate: x509.Certificate, org_id: str) -> bool:
        expected = self.organization_names.get(org_id)
        if expected is None:
            return True
        names = [attr.value for attr in certificate.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)]
        if expected in names:
            return True
        logger.warning(f"❌ Certificate for {org_id} is issued to {names or 'no organization'}, expected {expected}")
        return False

    def verify(self, endorsement: Endorsement, data: bytes) -> bool:
        try:
            certificate = x509.load_pem_x509_certificate(endorsement.certificate.encode())
            if not self._subject_matches(certificate, endorsement.org_id):
                return False
            signature = base64.b64decode(endorsement.signature, validate=True)
            _verify_bytes(certificate.public_key(), signature, data)
            return True
        except InvalidSignature:
            logger.info(f"❌ Invalid endorsement signature from {endorsement.org_id}")
        except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm) as e:
            logger.warning(f"Could not process endorsement from {endorsement.org_id}: {e}")
        return False


def certificate_fingerprint(certificate_pem: str) -> Optional[str]:
    """SHA-256 over the DER certificate, or None when it cannot be parsed."""
    try:
        certificate = x509.load_pem_x509_certificate(certificate_pem.encode())
    except ValueError:
        return None
    return certificate.fingerprint(hashes.SHA256()).hex()


# --- Threshold policy ---

@dataclass(frozen=True)
class EndorsementPolicy:
    organizations: Tuple[str, ...] = field(default_factory=lambda: tuple(ENDORSING_ORGANIZATIONS))
    min_endorsements: int = MIN_ENDORSEMENTS

    def __post_init__(self):
        if self.min_endorsements < 1:
            raise ValueError("min_endorsements must be at least 1")
        object.__setattr__(self, "organizations", tuple(self.organizations))


def format_aggregation(data: dict, key: str) -> dict:
    """Attaches unit tags to bare averages and fills in a missing aggregation number."""
    formatted = dict(data)
    for name, unit in (("avgCO2", UNIT_CO2), ("avgPM25", UNIT_PM25), ("avgVOCs", UNIT_VOCS)):
        value = formatted.get(name)
        if value is not None and not (isinstance(value, dict) and "value" in value):
            formatted[name] = {"value": value, "unit": unit}
    if not formatted.get("aggregationNumber"):
        match = _NUMBER_IN_KEY.match(key)
        formatted["aggregationNumber"] = int(match.group(1)) if match else 0
    return formatted


def _sort_key(entry: Tuple[str, dict]) -> Tuple[int, float, str]:
    key, data = entry
    timestamp = data.get("timestamp")
    moment = 0.0
    if isinstance(timestamp, str):
        try:
            moment = parse_timestamp(timestamp)
        except ValueError:
            logger.warning(f"Aggregation {key} has an unreadable timestamp {timestamp!r}")
    number = data.get("aggregationNumber")
    if not isinstance(number, int):
        match = _NUMBER_IN_KEY.match(key)
        number = int(match.group(1)) if match else 0
    return (number, moment, key)


class EndorsementValidator:
    """
    Collecting -> Endorsing -> Checking -> Committing over every pending
    aggregate. The only writer of validation results and the only component
    deleting aggregates.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        policy: Optional[EndorsementPolicy] = None,
        verifier: Optional[Verifier] = None,
        delete_rejected: bool = DELETE_REJECTED_AGGREGATES,
    ):
        self.ledger = ledger
        self.policy = policy or EndorsementPolicy()
        self.verifier = verifier or CertificateVerifier()
        self.delete_rejected = delete_rejected

    # Collecting
    def pending(self) -> List[Tuple[str, dict]]:
        """Pending aggregates in processing order: aggregation number, then timestamp."""
        entries = []
        for key, value in self.ledger.range_scan(AGGREGATION_PREFIX, AGGREGATION_RANGE_END):
            try:
                data = json.loads(value)
            except json.JSONDecodeError as e:
                logger.warning(f"Error parsing aggregation {key}: {e}")
                continue
            if not isinstance(data, dict):
                logger.warning(f"Aggregation {key} is not a JSON object, skipping")
                continue
            entries.append((key, data))
        entries.sort(key=_sort_key)
        return entries

    def list_aggregates(self) -> List[dict]:
        """Non-consuming view, newest first."""
        aggregates = [{"id": key, "data": format_aggregation(data, key)} for key, data in self.pending()]
        aggregates.sort(key=lambda a: _sort_key((a["id"], a["data"])), reverse=True)
        return aggregates

    # Endorsing
    def endorse(self, aggregate: dict, signers: Mapping[str, Signer]) -> List[Endorsement]:
        payload = canonicalize(aggregate)
        endorsements = []
        for org_id in self.policy.organizations:
            signer = signers.get(org_id)
            if signer is None:
                logger.warning(f"No signer configured for {org_id}")
                continue
            try:
                endorsements.append(signer.sign(payload))
            except Exception as e:
                logger.error(f"Error simulating endorsement for {org_id}: {e}")
        return endorsements

    # Checking
    def count_valid(self, aggregate: dict, endorsements: Sequence[Endorsement]) -> int:
        """
        Distinct organizations with a verified signature. One certificate
        counts once even when it is presented under several organization ids.
        """
        payload = canonicalize(aggregate)
        counted = set()
        certificates = set()
        for endorsement in endorsements:
            if endorsement.org_id not in self.policy.organizations or endorsement.org_id in counted:
                continue
            fingerprint = certificate_fingerprint(endorsement.certificate)
            if fingerprint is not None and fingerprint in certificates:
                logger.warning(f"❌ Certificate presented by {endorsement.org_id} already endorsed for another organization")
                continue
            if self.verifier.verify(endorsement, payload):
                counted.add(endorsement.org_id)
                if fingerprint is not None:
                    certificates.add(fingerprint)
        return len(counted)

    def is_endorsed(self, aggregate: dict, endorsements: Sequence[Endorsement]) -> bool:
        valid = self.count_valid(aggregate, endorsements)
        passed = valid >= self.policy.min_endorsements
        level = logging.INFO if passed else logging.WARNING
        logger.log(level, f"Endorsement policy check: {valid}/{self.policy.min_endorsements} required, "
                          f"{'passed' if passed else 'failed'}")
        return passed

    # Committing
    def validate(self, signers: Mapping[str, Signer]) -> ValidationResult:
        logger.info("========== Starting Validation Process ==========")
        aggregates = self.pending()
        logger.info(f"Found {len(aggregates)} aggregations")

        verdicts = []
        for key, data in aggregates:
            endorsements = self.endorse(data, signers)
            verdicts.append(AggregateVerdict(id=key, result=self.is_endorsed(data, endorsements)))

        statistics = ValidationStats(
            total=len(verdicts),
            successful=sum(1 for v in verdicts if v.result),
            failed=sum(1 for v in verdicts if not v.result),
        )
        if not verdicts:
            return ValidationResult(status="SUCCESS", message="No pending aggregations to validate",
                                    statistics=statistics)

        result_id = VALIDATION_RESULT_PREFIX + "_".join(v.id for v in verdicts)
        retained = [v.id for v in verdicts if not v.result and not self.delete_rejected]
        message = "Validation process completed"
        if retained:
            message += f"; {len(retained)} rejected aggregation(s) retained for re-validation"

        result = ValidationResult(status="SUCCESS", message=message, statistics=statistics,
                                  validationResultId=result_id, results=verdicts)
        self.ledger.put_json(result_id, result.to_record())

        for verdict in verdicts:
            if verdict.id in retained:
                continue
            self.ledger.delete(verdict.id)
            logger.debug(f"Deleted aggregation: {verdict.id}")

        logger.info(f"✅ Validated {statistics.successful}/{statistics.total}, "
                    f"❌ failed {statistics.failed}, result id {result_id}")
        return result


def signers_from_credentials(credentials: Mapping[str, OrgCredentials], clock: Clock = system_clock) -> Dict[str, PemSigner]:
    """Builds every signer up front; a malformed credential rejects the whole set."""
    return {org_id: PemSigner.from_credentials(creds, clock=clock) for org_id, creds in credentials.items()}
