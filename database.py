"""
MongoDB access for the storefront.

Collections are addressed by their lowercase singular name ("product",
"cart_item", ...). Documents use string UUIDs as ``_id``; records handed back
to callers expose it as ``id`` instead.
"""
import os
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import DependencyError, NotFoundError, UNIQUE_VIOLATION

logger = logging.getLogger("storefront.database")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", "5000"))

client = (
    MongoClient(DATABASE_URL, tz_aware=True, serverSelectionTimeoutMS=DATABASE_TIMEOUT_MS)
    if DATABASE_URL
    else None
)
db = client[DATABASE_NAME] if client is not None else None

# (collection, keys) pairs that must be unique
UNIQUE_KEYS: List[Tuple[str, Tuple[str, ...]]] = [
    ("category", ("name",)),
    ("category", ("slug",)),
    ("coupon", ("code",)),
    ("cart_item", ("user_id", "product_id", "variant_label", "measurement_value")),
    ("order", ("order_number",)),
    ("review", ("product_id", "user_id")),
    ("wishlist", ("user_id", "product_id")),
    ("user_profile", ("user_id",)),
    ("user_role", ("user_id", "role")),
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_record(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _to_mongo_filter(filt: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in (filt or {}).items():
        out["_id" if key == "id" else key] = value
    return out


def _store_error(collection: str, exc: PyMongoError) -> DependencyError:
    if isinstance(exc, DuplicateKeyError):
        return DependencyError(f"Duplicate {collection} record", code=UNIQUE_VIOLATION)
    logger.error("Data store call on %s failed: %s", collection, exc)
    return DependencyError("Data store unavailable, please try again")


class DataStore:
    """Generic query/insert/update/delete access over a pymongo database."""

    def __init__(self, database):
        self.db = database

    def query(self, collection: str, filt: Optional[Dict[str, Any]] = None,
              sort: Optional[Sequence[Tuple[str, int]]] = None,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        try:
            cursor = self.db[collection].find(_to_mongo_filter(filt))
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return [to_record(d) for d in cursor]
        except PyMongoError as exc:
            raise _store_error(collection, exc)

    def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(record)
        doc["_id"] = str(doc.pop("id", None) or uuid.uuid4())
        now = utcnow()
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        try:
            self.db[collection].insert_one(doc)
        except PyMongoError as exc:
            raise _store_error(collection, exc)
        return to_record(doc)

    def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
        changes = {k: v for k, v in patch.items() if k not in ("id", "_id")}
        changes["updated_at"] = utcnow()
        try:
            result = self.db[collection].update_one({"_id": record_id}, {"$set": changes})
        except PyMongoError as exc:
            raise _store_error(collection, exc)
        if result.matched_count == 0:
            raise NotFoundError(f"{collection.replace('_', ' ').capitalize()} not found")

    def delete(self, collection: str, record_id: str) -> None:
        try:
            self.db[collection].delete_one({"_id": record_id})
        except PyMongoError as exc:
            raise _store_error(collection, exc)


def ensure_indexes(database) -> None:
    for collection, keys in UNIQUE_KEYS:
        database[collection].create_index([(k, ASCENDING) for k in keys], unique=True)
    database["product"].create_index([("category_id", ASCENDING), ("created_at", ASCENDING)])
    database["cart_item"].create_index([("user_id", ASCENDING)])
    database["order_item"].create_index([("order_id", ASCENDING)])
    logger.info("Indexes ensured on %s", getattr(database, "name", "database"))
