"""
Idempotent snapshot persistence.

Two write patterns share one dedup-key contract:

- LATEST: one document per key, overwritten in place (upsert)
- APPEND: insert-only; a duplicate-key rejection means an earlier attempt
  already stored this bucket, which is reported as a no-op, not an error

Uniqueness is enforced by MongoDB unique indexes, not by in-process locks.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Tuple

from pymongo.errors import DuplicateKeyError

from fno_ingest.core.database import MongoDB
from fno_ingest.schemas.market_data import SaveResult, SnapshotRecord

logger = logging.getLogger(__name__)

BUCKET_KEY = ("feed_id", "session_key", "trading_day", "minute_bucket")


class WriteMode(str, Enum):
    LATEST = "latest"
    APPEND = "append"


@dataclass(frozen=True)
class CollectionSpec:
    """Where and how one kind of snapshot is stored."""
    name: str
    mode: WriteMode
    key_fields: Tuple[str, ...] = BUCKET_KEY

    @property
    def index_name(self) -> str:
        return "uniq_" + "_".join(self.key_fields)


OPTION_CHAIN_LATEST = CollectionSpec("option_chain", WriteMode.LATEST, ("feed_id", "session_key"))
OPTION_CHAIN_TICKS = CollectionSpec("option_chain_ticks", WriteMode.APPEND)
GEX_LEVELS = CollectionSpec("gex_levels", WriteMode.APPEND)
ADVDEC_SNAPSHOTS = CollectionSpec("advdec_snapshots", WriteMode.APPEND, BUCKET_KEY + ("sub_bucket_size",))

ALL_COLLECTIONS = (OPTION_CHAIN_LATEST, OPTION_CHAIN_TICKS, GEX_LEVELS, ADVDEC_SNAPSHOTS)


class SnapshotRepository:
    """
    Repository for time-bucketed snapshot records.
    """

    def __init__(self, mongo: MongoDB):
        """
        Initialize with a connected MongoDB manager.

        Args:
            mongo: Shared MongoDB connection manager
        """
        self.mongo = mongo

    def ensure_indexes(self, specs: Iterable[CollectionSpec] = ALL_COLLECTIONS) -> Dict[str, bool]:
        """
        Create the unique dedup index for each collection, best effort.

        Returns:
            Mapping of collection name to whether its index is in place
        """
        return {
            spec.name: self.mongo.ensure_unique_index(spec.name, spec.key_fields, spec.index_name)
            for spec in specs
        }

    @staticmethod
    def key_for(spec: CollectionSpec, document: Dict[str, Any]) -> Dict[str, Any]:
        return {field: document.get(field) for field in spec.key_fields}

    def save(self, spec: CollectionSpec, record: SnapshotRecord) -> SaveResult:
        """
        Persist ``record`` into ``spec``'s collection.

        For every dedup key exactly one call reports ``saved=True``: the insert
        (APPEND) or the upsert that created the document (LATEST). Later calls
        report ``saved=False, duplicate=True``.

        Args:
            spec: Target collection and write mode
            record: Snapshot to store

        Returns:
            SaveResult describing the outcome

        Raises:
            PyMongoError: Any storage failure other than a duplicate key
        """
        document = record.to_document()
        key = self.key_for(spec, document)
        collection = self.mongo.get_collection(spec.name)

        if spec.mode is WriteMode.LATEST:
            try:
                result = collection.update_one(key, {"$set": document}, upsert=True)
            except DuplicateKeyError:
                # two upserts raced to create the key; the other one inserted it
                collection.update_one(key, {"$set": document})
                logger.debug(f"{spec.name}: concurrent upsert for {key}, updated in place")
                return SaveResult(saved=False, duplicate=True, collection=spec.name, key=key)
            created = result.upserted_id is not None
            return SaveResult(saved=created, duplicate=not created, collection=spec.name, key=key)

        try:
            collection.insert_one(document)
        except DuplicateKeyError:
            logger.debug(f"{spec.name}: bucket already stored for {key}")
            return SaveResult(saved=False, duplicate=True, collection=spec.name, key=key)
        return SaveResult(saved=True, collection=spec.name, key=key)
