"""
Tests for idempotent snapshot persistence.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from fno_ingest.core.database import MongoDB
from fno_ingest.db.repositories.snapshot_repository import (
    ADVDEC_SNAPSHOTS,
    ALL_COLLECTIONS,
    GEX_LEVELS,
    OPTION_CHAIN_LATEST,
    SnapshotRepository,
)
from fno_ingest.schemas.market_data import SnapshotRecord


def make_record(minute_bucket=28_636_110, session_key="2024-06-13", sub_bucket_size=None, payload=None):
    return SnapshotRecord(
        feed_id="gex_levels:NIFTY",
        session_key=session_key,
        trading_day="2024-06-12",
        minute_bucket=minute_bucket,
        sub_bucket_size=sub_bucket_size,
        payload=payload or {"levels": []},
        captured_at_utc=datetime(2024, 6, 12, 4, 30, 30, tzinfo=timezone.utc),
        captured_at_local="12/06/2024, 10:00:30",
    )


def collection(repository, name):
    return repository.mongo.get_collection(name)


class TestAppendMode:
    """Insert-only collections keyed by minute bucket."""

    def test_first_write_saves(self, repository):
        result = repository.save(GEX_LEVELS, make_record())

        assert result.saved is True
        assert result.duplicate is False
        assert result.collection == "gex_levels"
        assert result.key == {
            "feed_id": "gex_levels:NIFTY",
            "session_key": "2024-06-13",
            "trading_day": "2024-06-12",
            "minute_bucket": 28_636_110,
        }

    def test_exactly_one_real_write_per_key(self, repository):
        results = [repository.save(GEX_LEVELS, make_record(payload={"attempt": i})) for i in range(5)]

        assert [r.saved for r in results] == [True, False, False, False, False]
        assert all(r.duplicate for r in results[1:])
        assert collection(repository, "gex_levels").count_documents({"minute_bucket": 28_636_110}) == 1
        # the first write wins
        assert collection(repository, "gex_levels").documents[0]["payload"] == {"attempt": 0}

    def test_next_minute_is_a_new_record(self, repository):
        repository.save(GEX_LEVELS, make_record(minute_bucket=1))

        assert repository.save(GEX_LEVELS, make_record(minute_bucket=2)).saved is True

    def test_sub_bucket_size_is_part_of_the_key(self, repository):
        assert repository.save(ADVDEC_SNAPSHOTS, make_record(sub_bucket_size=5)).saved is True
        assert repository.save(ADVDEC_SNAPSHOTS, make_record(sub_bucket_size=15)).saved is True
        assert repository.save(ADVDEC_SNAPSHOTS, make_record(sub_bucket_size=5)).duplicate is True


class TestLatestMode:
    """Upserted collections keyed by feed and session."""

    def test_upsert_then_update(self, repository):
        first = repository.save(OPTION_CHAIN_LATEST, make_record(minute_bucket=1, payload={"v": 1}))
        second = repository.save(OPTION_CHAIN_LATEST, make_record(minute_bucket=2, payload={"v": 2}))

        assert (first.saved, first.duplicate) == (True, False)
        assert (second.saved, second.duplicate) == (False, True)
        docs = collection(repository, "option_chain").documents
        assert len(docs) == 1
        assert docs[0]["payload"] == {"v": 2}
        assert docs[0]["minute_bucket"] == 2

    def test_new_session_key_creates_document(self, repository):
        repository.save(OPTION_CHAIN_LATEST, make_record(session_key="2024-06-13"))

        assert repository.save(OPTION_CHAIN_LATEST, make_record(session_key="2024-06-20")).saved is True

    def test_concurrent_upsert_race_falls_back_to_update(self, mongo):
        coll = MagicMock()
        coll.update_one.side_effect = [DuplicateKeyError("E11000 duplicate key error", code=11000), MagicMock()]
        mongo.get_collection = MagicMock(return_value=coll)

        result = SnapshotRepository(mongo).save(OPTION_CHAIN_LATEST, make_record())

        assert (result.saved, result.duplicate) == (False, True)
        assert coll.update_one.call_count == 2
        assert coll.update_one.call_args.kwargs == {}


class TestIndexes:
    """Unique index creation."""

    def test_ensure_indexes(self, mongo):
        repository = SnapshotRepository(mongo)

        result = repository.ensure_indexes()

        assert result == {spec.name: True for spec in ALL_COLLECTIONS}
        assert collection(repository, "advdec_snapshots").unique_keys == [
            ("feed_id", "session_key", "trading_day", "minute_bucket", "sub_bucket_size")
        ]
        assert collection(repository, "option_chain").unique_keys == [("feed_id", "session_key")]

    def test_index_failure_is_reported_not_raised(self, mongo):
        coll = MagicMock()
        coll.create_index.side_effect = OperationFailure("not authorized")
        mongo.get_collection = MagicMock(return_value=coll)

        result = SnapshotRepository(mongo).ensure_indexes([GEX_LEVELS])

        assert result == {"gex_levels": False}


class TestMongoDB:
    """Connection manager behaviour with an injected client."""

    def test_health_and_status(self, mongo):
        assert mongo.check_health() is True
        assert mongo.get_status()["database"] == "fno_ingest"

    def test_get_collection_requires_connection(self, settings):
        with pytest.raises(RuntimeError):
            MongoDB(settings).get_collection("gex_levels")

    def test_disconnect(self, mongo):
        mongo.disconnect()

        assert mongo.client.closed is True
        assert mongo.is_connected is False
