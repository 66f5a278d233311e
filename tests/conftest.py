"""Shared test fixtures.

Provides an in-memory implementation of the DataStore interface (same
unique keys and filter operators as the MongoDB-backed store), callers,
a product factory and an API client with the store dependency overridden.
"""

from __future__ import annotations

import copy
import itertools
import re
import uuid
from collections import defaultdict
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import pytest
from fastapi.testclient import TestClient

from config import JWT_ALGORITHM, JWT_SECRET
from database import UNIQUE_KEYS
from errors import DependencyError, NotFoundError, UNIQUE_VIOLATION
from policies import Caller
from schemas import Product

EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _matches(row: dict[str, Any], filt: dict[str, Any]) -> bool:
    for key, cond in filt.items():
        value = row.get(key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            if "$ne" in cond and value == cond["$ne"]:
                return False
            if "$in" in cond and value not in cond["$in"]:
                return False
            if "$regex" in cond:
                flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
                if not isinstance(value, str) or not re.search(cond["$regex"], value, flags):
                    return False
        elif value != cond:
            return False
    return True


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is not None, value if value is not None else 0)


class InMemoryStore:
    """Dict-backed stand-in for database.DataStore."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._clock = itertools.count(1)

    def query(self, collection, filt=None, sort=None, limit=None):
        rows = [copy.deepcopy(r) for r in self.tables[collection].values() if _matches(r, filt or {})]
        for key, direction in reversed(list(sort or [])):
            rows.sort(key=lambda r: _sort_key(r.get(key)), reverse=direction < 0)
        return rows[:limit] if limit else rows

    def insert(self, collection, record):
        doc = copy.deepcopy(record)
        doc["id"] = str(doc.get("id") or uuid.uuid4())
        now = EPOCH + timedelta(seconds=next(self._clock))
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        for name, keys in UNIQUE_KEYS:
            if name != collection:
                continue
            key = tuple(doc.get(k) for k in keys)
            if any(tuple(r.get(k) for k in keys) == key for r in self.tables[collection].values()):
                raise DependencyError(f"Duplicate {collection} record", code=UNIQUE_VIOLATION)
        self.tables[collection][doc["id"]] = doc
        return copy.deepcopy(doc)

    def update(self, collection, record_id, patch):
        row = self.tables[collection].get(record_id)
        if row is None:
            raise NotFoundError(f"{collection} not found")
        row.update(copy.deepcopy({k: v for k, v in patch.items() if k != "id"}))
        row["updated_at"] = EPOCH + timedelta(seconds=next(self._clock))

    def delete(self, collection, record_id):
        self.tables[collection].pop(record_id, None)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def customer() -> Caller:
    return Caller(user_id="user-1")


@pytest.fixture
def other_customer() -> Caller:
    return Caller(user_id="user-2")


@pytest.fixture
def admin() -> Caller:
    return Caller(user_id="admin-1", is_admin=True)


@pytest.fixture
def make_product(store: InMemoryStore) -> Callable[..., Product]:
    """Insert a product and return it as a schemas.Product."""

    def _make(**overrides: Any) -> Product:
        fields: dict[str, Any] = {
            "name": "Groundnut Oil",
            "base_price": 100.0,
            "stock_qty": 10,
            "category_id": "cat-oils",
        }
        fields.update(overrides)
        record = Product(**fields).model_dump(exclude={"id", "created_at"})
        if "created_at" in overrides:
            record["created_at"] = overrides["created_at"]
        return Product(**store.insert("product", record))

    return _make


def bearer(user_id: str, email: str | None = None) -> dict[str, str]:
    payload: dict[str, Any] = {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(minutes=5)}
    if email:
        payload["email"] = email
    return {"Authorization": f"Bearer {jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)}"}


@pytest.fixture
def client(store: InMemoryStore) -> Generator[TestClient, None, None]:
    from main import app, get_store

    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
