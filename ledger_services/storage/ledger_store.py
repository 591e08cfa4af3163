import bisect
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Tuple

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from ledger_services.errors import MalformedInputError, StoreUnavailableError
from ledger_services.integrity.merkle import canonicalize

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """
    Ordered, durable key-value store standing in for the ledger world state.
    Values are text; keys compare as plain strings.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def range_scan(self, start: str, end: str) -> List[Tuple[str, str]]:
        """All (key, value) pairs with start <= key < end, in key order."""

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw is None or raw == "":
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedInputError(f"Ledger value under '{key}' is not JSON: {e}") from e

    def put_json(self, key: str, value: Any) -> None:
        self.put(key, canonicalize(value).decode("utf-8"))


class InMemoryLedgerStore(LedgerStore):
    """In-process ledger; every call holds one lock, so operations are linearizable."""

    def __init__(self):
        self._data = {}
        self._keys = []
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            if key not in self._data:
                bisect.insort(self._keys, key)
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._keys.remove(key)

    def range_scan(self, start: str, end: str) -> List[Tuple[str, str]]:
        with self._lock:
            lo = bisect.bisect_left(self._keys, start)
            hi = bisect.bisect_left(self._keys, end)
            return [(key, self._data[key]) for key in self._keys[lo:hi]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class MongoLedgerStore(LedgerStore):
    """Ledger world state kept in a MongoDB collection: {_id: key, value: text}."""

    def __init__(self, collection):
        self.collection = collection

    def get(self, key: str) -> Optional[str]:
        try:
            document = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            logger.error(f"Ledger read failed for '{key}': {e}")
            raise StoreUnavailableError(f"Ledger read failed: {e}") from e
        return document["value"] if document else None

    def put(self, key: str, value: str) -> None:
        try:
            self.collection.replace_one({"_id": key}, {"_id": key, "value": value}, upsert=True)
        except PyMongoError as e:
            logger.error(f"Ledger write failed for '{key}': {e}")
            raise StoreUnavailableError(f"Ledger write failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            logger.error(f"Ledger delete failed for '{key}': {e}")
            raise StoreUnavailableError(f"Ledger delete failed: {e}") from e

    def range_scan(self, start: str, end: str) -> List[Tuple[str, str]]:
        try:
            cursor = self.collection.find({"_id": {"$gte": start, "$lt": end}}).sort("_id", ASCENDING)
            return [(document["_id"], document["value"]) for document in cursor]
        except PyMongoError as e:
            logger.error(f"Ledger range scan failed for [{start!r}, {end!r}): {e}")
            raise StoreUnavailableError(f"Ledger range scan failed: {e}") from e
