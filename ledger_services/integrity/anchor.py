import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from pydantic import ValidationError

from ledger_services.errors import MalformedInputError, ReadingNotFoundError
from ledger_services.integrity.merkle import hash_record, merkle_proof, merkle_root, verify_proof
from ledger_services.schemas import Anchor, Reading
from ledger_services.storage.ledger_store import LedgerStore
from ledger_services.storage.reading_store import ReadingStore
from ledger_services.timeutil import Clock, iso_timestamp, system_clock

logger = logging.getLogger(__name__)

ANCHOR_KEY = "MerkleAnchor"

VERIFY_OK = "ok"
VERIFY_COUNT_MISMATCH = "count_mismatch"
VERIFY_ROOT_MISMATCH = "root_mismatch"


@dataclass(frozen=True)
class VerifyReport:
    ok: bool
    stored_count: int
    actual_count: int
    stored_root: str
    actual_root: str

    @property
    def kind(self) -> str:
        """
        count_mismatch: a writer raced the check, retry later.
        root_mismatch: same count, different content. Treat as tampering.
        """
        if self.ok:
            return VERIFY_OK
        if self.stored_count != self.actual_count:
            return VERIFY_COUNT_MISMATCH
        return VERIFY_ROOT_MISMATCH

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "kind": self.kind,
            "storedCount": self.stored_count,
            "actualCount": self.actual_count,
            "storedRoot": self.stored_root,
            "actualRoot": self.actual_root,
        }


def reading_hashes(readings: List[Reading]) -> List[str]:
    """Leaf hashes in canonical (timestamp, sensorId) order."""
    return [hash_record(reading) for reading in sorted(readings, key=lambda r: r.key)]


class IntegrityAnchor:
    """
    Keeps the ledger's Merkle anchor in step with the off-chain reading set.
    Every write recomputes the root from one full read of the store instead
    of patching a tree incrementally. This is the only writer of ANCHOR_KEY.
    """

    def __init__(self, readings: ReadingStore, ledger: LedgerStore, clock: Clock = system_clock):
        self.readings = readings
        self.ledger = ledger
        self.clock = clock
        self._lock = threading.RLock()

    def exclusive(self) -> threading.RLock:
        """Lock held by callers that need the store and the anchor to stay still."""
        return self._lock

    def current(self) -> Anchor:
        stored = self.ledger.get_json(ANCHOR_KEY)
        if stored is None:
            return Anchor.empty()
        try:
            return Anchor.model_validate(stored)
        except ValidationError as e:
            raise MalformedInputError(f"Stored anchor is malformed: {e}") from e

    def _write(self, anchor: Anchor) -> None:
        self.ledger.put_json(ANCHOR_KEY, anchor.to_record())

    def record(self, reading: Reading) -> Reading:
        with self._lock:
            stored = self.readings.upsert(reading)
            snapshot = self.readings.all()
            root = merkle_root(reading_hashes(snapshot))
            anchor = Anchor(
                merkleRoot=root,
                dataCount=len(snapshot),
                timestamp=iso_timestamp(self.clock()),
                lastProcessedKey=stored.reference,
            )
            self._write(anchor)
        logger.debug(f"Anchor updated: root={root[:16]}... count={len(snapshot)}")
        return stored

    def verify(self) -> VerifyReport:
        report, _ = self.verify_snapshot()
        return report

    def verify_snapshot(self) -> Tuple[VerifyReport, List[Reading]]:
        """Like verify(), also returning the readings the check was run against."""
        anchor = self.current()
        snapshot = self.readings.all()
        actual_root = merkle_root(reading_hashes(snapshot))
        report = VerifyReport(
            ok=(anchor.data_count == len(snapshot) and anchor.merkle_root == actual_root),
            stored_count=anchor.data_count,
            actual_count=len(snapshot),
            stored_root=anchor.merkle_root,
            actual_root=actual_root,
        )
        if not report.ok:
            logger.warning(f"Anchor verification failed ({report.kind}): "
                           f"stored {report.stored_count}/{report.stored_root[:16]} "
                           f"vs actual {report.actual_count}/{report.actual_root[:16]}")
        return report, snapshot

    def prove(self, timestamp: str, sensor_id: str) -> dict:
        """
        Audit path for one stored reading against the anchored root. The path
        is built from the current store, so `verified` is false whenever the
        store has drifted from the anchor.
        """
        with self._lock:
            anchor = self.current()
            snapshot = sorted(self.readings.all(), key=lambda r: r.key)
        keys = [reading.key for reading in snapshot]
        try:
            index = keys.index((timestamp, sensor_id))
        except ValueError:
            raise ReadingNotFoundError(f"No reading for sensor {sensor_id} at {timestamp}") from None

        hashes = [hash_record(reading) for reading in snapshot]
        proof = merkle_proof(hashes, index)
        return {
            "timestamp": timestamp,
            "sensorId": sensor_id,
            "leaf": hashes[index],
            "index": index,
            "proof": [{"sibling": sibling, "side": side} for sibling, side in proof],
            "root": anchor.merkle_root,
            "verified": verify_proof(hashes[index], proof, anchor.merkle_root),
        }

    def reset(self, timestamp: Optional[str] = None) -> Anchor:
        anchor = Anchor.empty(timestamp or iso_timestamp(self.clock()))
        with self._lock:
            self._write(anchor)
        logger.info("Anchor reset to empty")
        return anchor
