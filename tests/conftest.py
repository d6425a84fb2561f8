"""
Shared fixtures: a fixed session clock, an in-memory stand-in for the
pymongo client that enforces unique indexes, and a clean error tracker.
"""

import itertools
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import pytest
from pymongo.errors import DuplicateKeyError

from fno_ingest.core.config import Settings
from fno_ingest.core.database import MongoDB
from fno_ingest.core.error_handling import ErrorTracker
from fno_ingest.db.repositories.snapshot_repository import SnapshotRepository
from fno_ingest.services.market.market_clock import MarketClock

IST = ZoneInfo("Asia/Kolkata")


def ist(year: int, month: int, day: int, hour: int, minute: int, second: int = 0) -> datetime:
    """Aware datetime at an IST wall-clock time."""
    return datetime(year, month, day, hour, minute, second, tzinfo=IST)


# Wednesday, mid-session
SESSION_NOW = ist(2024, 6, 12, 10, 0, 30)


class FakeCollection:
    """The subset of pymongo's Collection the repository uses."""

    _ids = itertools.count(1)

    def __init__(self, name: str):
        self.name = name
        self.documents: List[Dict[str, Any]] = []
        self.unique_keys: List[Tuple[str, ...]] = []

    def create_index(self, keys, unique: bool = False, name: Optional[str] = None) -> str:
        if unique:
            self.unique_keys.append(tuple(field for field, _ in keys))
        return name or "_".join(field for field, _ in keys)

    def _violates_unique(self, document: Dict[str, Any]) -> bool:
        for fields in self.unique_keys:
            key = tuple(document.get(f) for f in fields)
            for existing in self.documents:
                if tuple(existing.get(f) for f in fields) == key:
                    return True
        return False

    def _find(self, filter_: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for doc in self.documents:
            if all(doc.get(k) == v for k, v in filter_.items()):
                return doc
        return None

    def insert_one(self, document: Dict[str, Any]):
        if self._violates_unique(document):
            raise DuplicateKeyError("E11000 duplicate key error", code=11000)
        stored = dict(document)
        stored["_id"] = next(self._ids)
        self.documents.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    def update_one(self, filter_: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        existing = self._find(filter_)
        if existing is not None:
            existing.update(update.get("$set", {}))
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        document = {**filter_, **update.get("$set", {})}
        inserted = self.insert_one(document)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=inserted.inserted_id)

    def count_documents(self, filter_: Dict[str, Any]) -> int:
        return sum(1 for doc in self.documents if all(doc.get(k) == v for k, v in filter_.items()))


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


class FakeMongoClient:
    def __init__(self):
        self.databases: Dict[str, FakeDatabase] = {}
        self.admin = SimpleNamespace(command=lambda *args, **kwargs: {"ok": 1.0})
        self.closed = False

    def __getitem__(self, name: str) -> FakeDatabase:
        if name not in self.databases:
            self.databases[name] = FakeDatabase()
        return self.databases[name]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings():
    """Settings built from defaults only."""
    return Settings(_env_file=None)


@pytest.fixture
def mongo(settings):
    """MongoDB manager backed by the in-memory client."""
    return MongoDB(settings, client=FakeMongoClient())


@pytest.fixture
def repository(mongo):
    repo = SnapshotRepository(mongo)
    repo.ensure_indexes()
    return repo


@pytest.fixture
def ist_time():
    """Factory for aware IST datetimes."""
    return ist


@pytest.fixture
def now():
    return SESSION_NOW


@pytest.fixture
def clock(now):
    """Clock frozen at a Wednesday 10:00:30 IST."""
    return MarketClock(now_fn=lambda: now)


@pytest.fixture(autouse=True)
def clear_error_tracker():
    ErrorTracker.clear_error_stats()
    yield
    ErrorTracker.clear_error_stats()
