import logging
from typing import List, Optional

from pydantic import ValidationError
from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from config.settings import MONGODB_DATABASE, MONGODB_TIMEOUT_MS, MONGODB_URI, READINGS_COLLECTION
from ledger_services.errors import MalformedInputError, StoreUnavailableError
from ledger_services.schemas import Reading

logger = logging.getLogger(__name__)

CLEAR_MAX_ATTEMPTS = 3


class ReadingStore:
    """
    Off-chain reading storage on a MongoDB collection. The only component
    that reads or writes raw readings.
    """

    def __init__(self, collection, client: Optional[MongoClient] = None, ensure_indexes: bool = True):
        self.collection = collection
        self._client = client
        if ensure_indexes:
            self._ensure_indexes()

    @classmethod
    def connect(cls, uri: str = MONGODB_URI, database: str = MONGODB_DATABASE,
                collection: str = READINGS_COLLECTION,
                timeout_ms: int = MONGODB_TIMEOUT_MS) -> "ReadingStore":
        """Opens a client, checks it with a ping, and returns a store that owns it."""
        logger.info(f"Attempting to connect to MongoDB at {uri}")
        client = MongoClient(uri, serverSelectionTimeoutMS=timeout_ms)
        try:
            client.admin.command("ping")
            store = cls(client[database][collection], client=client)
        except PyMongoError as e:
            client.close()
            raise StoreUnavailableError(f"MongoDB connection failed: {e}") from e
        logger.info(f"✅ MongoDB connected successfully to {database}.{collection}")
        return store

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("MongoDB connection closed")

    def __enter__(self) -> "ReadingStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_indexes(self) -> None:
        try:
            self.collection.create_index(
                [("timestamp", ASCENDING), ("sensorId", ASCENDING)],
                unique=True,
                name="reading_key",
            )
        except PyMongoError as e:
            raise StoreUnavailableError(f"Could not create reading index: {e}") from e

    @staticmethod
    def _selector(reading: Reading) -> dict:
        return {"timestamp": reading.timestamp, "sensorId": reading.sensor_id}

    @staticmethod
    def _to_reading(document: dict) -> Reading:
        document = {k: v for k, v in document.items() if k != "_id"}
        try:
            return Reading.model_validate(document)
        except ValidationError as e:
            raise MalformedInputError(f"Stored reading is malformed: {e}") from e

    def upsert(self, reading: Reading) -> Reading:
        """
        Inserts the reading unless one with the same (timestamp, sensorId)
        exists. Either way the stored record is returned.
        """
        selector = self._selector(reading)
        try:
            result = self.collection.update_one(selector, {"$setOnInsert": reading.to_record()}, upsert=True)
            if result.upserted_id is None:
                logger.info(f"Reading {reading.reference} already stored, keeping existing record")
        except DuplicateKeyError:
            # A concurrent upsert for the same key won the race.
            logger.info(f"Reading {reading.reference} inserted concurrently, keeping existing record")
        except PyMongoError as e:
            logger.error(f"Error inserting reading {reading.reference}: {e}")
            raise StoreUnavailableError(f"Reading insert failed: {e}") from e

        try:
            stored = self.collection.find_one(selector)
        except PyMongoError as e:
            raise StoreUnavailableError(f"Reading lookup failed: {e}") from e
        if stored is None:
            raise StoreUnavailableError(f"Reading {reading.reference} vanished right after upsert")
        return self._to_reading(stored)

    def all(self) -> List[Reading]:
        """Every stored reading, ordered by (timestamp, sensorId)."""
        try:
            documents = list(self.collection.find({}).sort(
                [("timestamp", ASCENDING), ("sensorId", ASCENDING)]))
        except PyMongoError as e:
            logger.error(f"Error fetching readings: {e}")
            raise StoreUnavailableError(f"Reading fetch failed: {e}") from e
        readings = [self._to_reading(document) for document in documents]
        readings.sort(key=lambda r: r.key)
        return readings

    def count(self) -> int:
        try:
            return self.collection.count_documents({})
        except PyMongoError as e:
            raise StoreUnavailableError(f"Reading count failed: {e}") from e

    def clear(self) -> int:
        """Deletes every reading, retrying while any remain. Returns the number deleted."""
        deleted = 0
        for attempt in range(1, CLEAR_MAX_ATTEMPTS + 1):
            try:
                deleted += self.collection.delete_many({}).deleted_count
                remaining = self.collection.count_documents({})
            except PyMongoError as e:
                logger.error(f"Error clearing readings (attempt {attempt}/{CLEAR_MAX_ATTEMPTS}): {e}")
                if attempt == CLEAR_MAX_ATTEMPTS:
                    raise StoreUnavailableError(f"Reading clear failed: {e}") from e
                continue
            if remaining == 0:
                logger.info(f"Cleared {deleted} readings")
                return deleted
            logger.warning(f"{remaining} readings left after clear (attempt {attempt}/{CLEAR_MAX_ATTEMPTS})")
        raise StoreUnavailableError(f"Readings still present after {CLEAR_MAX_ATTEMPTS} clear attempts")
