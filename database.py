"""
Storage port for SIREN.

Both backends expose the same small document interface over named
collections. Every stored entity carries an integer ``version``; ``replace``
only succeeds when the stored version still equals the one the caller read,
which serializes writers per entity without holding locks between calls.
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from errors import Conflict, StorageError

Document = Dict[str, Any]

COLLECTIONS = ("actor", "request", "task", "revoked_token", "activity")

log = logging.getLogger("siren.database")


class Store:
    """Interface every backing store implements."""

    def insert(self, collection: str, doc: Document) -> Document:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    def find(self, collection: str, filters: Optional[Document] = None) -> List[Document]:
        raise NotImplementedError

    def find_one(self, collection: str, filters: Document) -> Optional[Document]:
        found = self.find(collection, filters)
        return found[0] if found else None

    def replace(self, collection: str, doc: Document, expected_version: int) -> bool:
        """Swap in ``doc`` if the stored version is ``expected_version``.

        On success the stored (and passed) document gets ``expected_version + 1``.
        """
        raise NotImplementedError

    def delete_expired(self, collection: str, field: str, now) -> int:
        """Drop documents whose ``field`` is earlier than ``now``; returns the count."""
        raise NotImplementedError


class MemoryStore(Store):
    # Mirrors the unique indexes MongoStore.ensure_indexes creates.
    UNIQUE_KEYS = {"actor": ("email",)}

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Document]] = {name: {} for name in COLLECTIONS}

    def _collection(self, name: str) -> Dict[str, Document]:
        if name not in self._data:
            raise StorageError(f"Unknown collection: {name}")
        return self._data[name]

    def insert(self, collection: str, doc: Document) -> Document:
        with self._lock:
            items = self._collection(collection)
            if doc["id"] in items:
                raise Conflict(f"Duplicate id in {collection}")
            for key in self.UNIQUE_KEYS.get(collection, ()):
                value = doc.get(key)
                if value is not None and any(d.get(key) == value for d in items.values()):
                    raise Conflict(f"Duplicate {key} in {collection}")
            items[doc["id"]] = copy.deepcopy(doc)
        return doc

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, collection: str, filters: Optional[Document] = None) -> List[Document]:
        filters = filters or {}
        with self._lock:
            return [
                copy.deepcopy(doc)
                for doc in self._collection(collection).values()
                if all(doc.get(k) == v for k, v in filters.items())
            ]

    def replace(self, collection: str, doc: Document, expected_version: int) -> bool:
        with self._lock:
            items = self._collection(collection)
            current = items.get(doc["id"])
            if current is None or current.get("version", 0) != expected_version:
                return False
            doc["version"] = expected_version + 1
            items[doc["id"]] = copy.deepcopy(doc)
        return True

    def delete_expired(self, collection: str, field: str, now) -> int:
        with self._lock:
            items = self._collection(collection)
            expired = [k for k, d in items.items() if d.get(field) is not None and d[field] < now]
            for key in expired:
                del items[key]
        return len(expired)


class MongoStore(Store):
    def __init__(self, db) -> None:
        self.db = db

    def ensure_indexes(self) -> None:
        try:
            for name in COLLECTIONS:
                self.db[name].create_index([("id", ASCENDING)], unique=True)
            self.db["actor"].create_index([("email", ASCENDING)], unique=True)
            self.db["task"].create_index([("volunteerId", ASCENDING)])
            self.db["task"].create_index([("requestId", ASCENDING)])
            self.db["revoked_token"].create_index([("expiresAt", ASCENDING)], expireAfterSeconds=0)
        except PyMongoError as e:
            log.error("Index creation failed: %s", e)
            raise StorageError(f"Database error: {str(e)[:80]}")

    def insert(self, collection: str, doc: Document) -> Document:
        try:
            # insert_one adds _id to the dict it is given
            self.db[collection].insert_one(dict(doc))
        except DuplicateKeyError:
            raise Conflict(f"Duplicate key in {collection}")
        except PyMongoError as e:
            log.error("Insert into %s failed: %s", collection, e)
            raise StorageError(f"Database error: {str(e)[:80]}")
        return doc

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return self.find_one(collection, {"id": doc_id})

    def find_one(self, collection: str, filters: Document) -> Optional[Document]:
        try:
            return self.db[collection].find_one(filters, {"_id": 0})
        except PyMongoError as e:
            log.error("Lookup in %s failed: %s", collection, e)
            raise StorageError(f"Database error: {str(e)[:80]}")

    def find(self, collection: str, filters: Optional[Document] = None) -> List[Document]:
        try:
            return list(self.db[collection].find(filters or {}, {"_id": 0}))
        except PyMongoError as e:
            log.error("Query on %s failed: %s", collection, e)
            raise StorageError(f"Database error: {str(e)[:80]}")

    def replace(self, collection: str, doc: Document, expected_version: int) -> bool:
        updated = dict(doc, version=expected_version + 1)
        try:
            result = self.db[collection].replace_one(
                {"id": doc["id"], "version": expected_version}, updated
            )
        except PyMongoError as e:
            log.error("Replace in %s failed: %s", collection, e)
            raise StorageError(f"Database error: {str(e)[:80]}")
        if result.matched_count != 1:
            return False
        doc["version"] = expected_version + 1
        return True

    def delete_expired(self, collection: str, field: str, now) -> int:
        try:
            result = self.db[collection].delete_many({field: {"$lt": now}})
        except PyMongoError as e:
            log.error("Purge of %s failed: %s", collection, e)
            raise StorageError(f"Database error: {str(e)[:80]}")
        return result.deleted_count


def build_store(settings: Settings) -> Store:
    if settings.storage_backend == "memory":
        return MemoryStore()
    if settings.storage_backend == "mongo":
        client = MongoClient(settings.database_url, tz_aware=True)
        return MongoStore(client[settings.database_name])
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend!r}")
