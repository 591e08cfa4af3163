import hashlib
import json
import re
from typing import Any, List, Sequence, Tuple

from ledger_services.errors import MalformedInputError

# Root of an empty reading set
EMPTY_ROOT = ""

_DIGEST_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def canonicalize(record: Any) -> bytes:
    """
    Deterministic serialization: keys sorted at every depth, compact separators,
    UTF-8. Two records with the same content always produce the same bytes,
    whatever order their fields were inserted in.
    """
    if hasattr(record, "to_record"):
        record = record.to_record()
    try:
        text = json.dumps(record, sort_keys=True, separators=(",", ":"),
                          ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise MalformedInputError(f"Record cannot be canonicalized: {e}") from e
    return text.encode("utf-8")


def hash_data(data: bytes) -> str:
    """SHA-256 hex digest. Used for leaves and for pair combination."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise MalformedInputError(f"hash_data expects bytes, got {type(data).__name__}")
    return hashlib.sha256(data).hexdigest()


def hash_record(record: Any) -> str:
    return hash_data(canonicalize(record))


def hash_pair(left: str, right: str) -> str:
    return hash_data((left + right).encode("ascii"))


def _check_digests(hashes: Sequence[str]) -> List[str]:
    checked = []
    for position, digest in enumerate(hashes):
        if not isinstance(digest, str) or not _DIGEST_PATTERN.match(digest):
            raise MalformedInputError(f"Element {position} is not a SHA-256 hex digest: {digest!r}")
        checked.append(digest)
    return checked


def merkle_root(hashes: Sequence[str]) -> str:
    """
    Builds the root level by level, pairing adjacent hashes left to right.
    An unpaired trailing hash is promoted to the next level unchanged.

    Order matters: callers sort their leaves before calling.
    """
    level = _check_digests(hashes)
    if not level:
        return EMPTY_ROOT

    while len(level) > 1:
        next_level = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                next_level.append(hash_pair(level[i], level[i + 1]))
            else:
                next_level.append(level[i])
        level = next_level
    return level[0]


def merkle_proof(hashes: Sequence[str], index: int) -> List[Tuple[str, str]]:
    """
    Returns the audit path for the leaf at `index` as (sibling, side) pairs,
    where side tells whether the sibling sits on the 'left' or the 'right'.
    Levels where the node is promoted contribute nothing.
    """
    level = _check_digests(hashes)
    if not 0 <= index < len(level):
        raise MalformedInputError(f"Leaf index {index} out of range for {len(level)} hashes")

    proof = []
    position = index
    while len(level) > 1:
        if position % 2 == 0:
            if position + 1 < len(level):
                proof.append((level[position + 1], "right"))
        else:
            proof.append((level[position - 1], "left"))

        next_level = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                next_level.append(hash_pair(level[i], level[i + 1]))
            else:
                next_level.append(level[i])
        level = next_level
        position //= 2
    return proof


def verify_proof(leaf: str, proof: Sequence[Tuple[str, str]], root: str) -> bool:
    current = leaf
    for sibling, side in proof:
        if side == "left":
            current = hash_pair(sibling, current)
        elif side == "right":
            current = hash_pair(current, sibling)
        else:
            raise MalformedInputError(f"Unknown proof side: {side!r}")
    return current == root
