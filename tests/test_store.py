"""
Tests for VectorIndexStore persistence.
"""

import os
import sqlite3
import tempfile
import threading
from datetime import date, datetime

import numpy as np
import pytest

from vaultsearch import (
    IndexData,
    OperationCancelled,
    PersistenceError,
    StoredVector,
    VectorIndexStore,
)
from vaultsearch.persistence.store import SCHEMA_VERSION, now_ms


@pytest.fixture
def temp_db():
    """Create a temporary database file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    try:
        os.unlink(path)
    except OSError:
        pass


@pytest.fixture
def store(temp_db):
    with VectorIndexStore(db_path=temp_db) as store:
        yield store


def make_stored(vector_id, values, metadata=None, accessed=1000):
    return StoredVector(
        id=vector_id,
        vector=np.asarray(values, dtype=np.float32),
        metadata=metadata,
        created_at=accessed,
        last_accessed_at=accessed,
    )


@pytest.fixture
def sample_data():
    rng = np.random.default_rng(7)
    vectors = {
        f"doc_{i}": make_stored(f"doc_{i}", rng.standard_normal(16), {"n": i}, accessed=1000 + i)
        for i in range(10)
    }
    return IndexData(vectors=vectors, dimension=16, last_updated_at=12345)


class TestFullIndex:
    """Test save_vector_index / load_vector_index / clear_vector_index."""

    def test_load_empty_store(self, store):
        assert store.load_vector_index() is None

    def test_round_trip(self, store, sample_data):
        store.save_vector_index(sample_data)

        loaded = store.load_vector_index()

        assert loaded.dimension == 16
        assert loaded.last_updated_at == 12345
        assert list(loaded.vectors) == list(sample_data.vectors)
        for vector_id, original in sample_data.vectors.items():
            restored = loaded.vectors[vector_id]
            assert restored.vector.dtype == np.float32
            np.testing.assert_array_equal(restored.vector, original.vector)
            assert restored.metadata == original.metadata
            assert restored.created_at == original.created_at
            assert restored.last_accessed_at == original.last_accessed_at

    def test_save_replaces_previous_contents(self, store, sample_data):
        store.save_vector_index(sample_data)
        store.save_vector_index(IndexData(vectors={"x": make_stored("x", [1, 0])}, dimension=2))

        loaded = store.load_vector_index()

        assert list(loaded.vectors) == ["x"]
        assert loaded.dimension == 2

    def test_metadata_record(self, store, sample_data, temp_db):
        store.save_vector_index(sample_data)

        conn = sqlite3.connect(temp_db)
        row = conn.execute(
            "SELECT id, dimension, last_updated_at, version, vector_count FROM index_metadata"
        ).fetchone()
        conn.close()

        assert row == ("metadata", 16, 12345, SCHEMA_VERSION, 10)

    def test_vectors_stored_as_float_arrays(self, store, temp_db):
        store.save_vector_index(IndexData(vectors={"a": make_stored("a", [0.5, -0.25])}, dimension=2))

        conn = sqlite3.connect(temp_db)
        raw = conn.execute("SELECT vector FROM vectors WHERE id = 'a'").fetchone()[0]
        conn.close()

        assert raw == "[0.5, -0.25]"

    def test_empty_index_round_trip(self, store):
        store.save_vector_index(IndexData())

        loaded = store.load_vector_index()

        assert loaded.vectors == {}
        assert loaded.dimension is None

    def test_clear(self, store, sample_data):
        store.save_vector_index(sample_data)
        store.clear_vector_index()

        assert store.load_vector_index() is None
        assert store.get_index_stats() is None

    def test_cancelled_save_keeps_previous_index(self, store, sample_data):
        store.save_vector_index(sample_data)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelled):
            store.save_vector_index(IndexData(vectors={"x": make_stored("x", [1, 0])}, dimension=2), cancel)

        assert len(store.load_vector_index().vectors) == 10

    def test_cancelled_load(self, store, sample_data):
        store.save_vector_index(sample_data)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelled):
            store.load_vector_index(cancel)

    def test_date_metadata_round_trip(self, store, temp_db):
        metadata = {"paid_on": date(2024, 3, 1), "seen": datetime(2024, 3, 1, 9, 30, 15), "tags": ["a"]}
        store.save_vector_index(IndexData(vectors={"a": make_stored("a", [1, 0], metadata)}, dimension=2))

        restored = store.load_vector_index().vectors["a"].metadata

        assert restored == metadata
        assert type(restored["paid_on"]) is date
        assert isinstance(restored["seen"], datetime)

        conn = sqlite3.connect(temp_db)
        raw = conn.execute("SELECT metadata FROM vectors WHERE id = 'a'").fetchone()[0]
        conn.close()
        assert '"paid_on": {"__date__": "2024-03-01"}' in raw

    def test_plain_dicts_decode_unchanged(self, store):
        metadata = {"__date__": "2024-03-01", "other": 1}
        store.save_vector(make_stored("a", [1, 0], metadata))

        assert store.get_vector("a").metadata == metadata

    def test_custom_metadata_codec(self, temp_db):
        store = VectorIndexStore(
            db_path=temp_db,
            metadata_encoder=lambda tags: "|".join(tags),
            metadata_decoder=lambda raw: raw.split("|"),
        )
        store.save_vector(make_stored("a", [1, 0], ["food", "receipt"]))

        assert store.get_vector("a").metadata == ["food", "receipt"]
        store.close()


class TestIncrementalUpdates:
    """Test single and batch operations."""

    def test_save_and_get_vector(self, store):
        store.save_vector(make_stored("a", [1, 2, 3], {"k": "v"}))

        stored = store.get_vector("a")

        assert stored.id == "a"
        np.testing.assert_array_equal(stored.vector, [1, 2, 3])
        assert stored.metadata == {"k": "v"}
        assert store.get_vector("missing") is None

    def test_vector_exists(self, store):
        store.save_vector(make_stored("a", [1, 0]))

        assert store.vector_exists("a")
        assert not store.vector_exists("b")

    def test_save_vector_replaces(self, store):
        store.save_vector(make_stored("a", [1, 0]))
        store.save_vector(make_stored("a", [0, 1]))

        np.testing.assert_array_equal(store.get_vector("a").vector, [0, 1])

    def test_incremental_updates_refresh_metadata(self, store, sample_data):
        store.save_vector_index(sample_data)

        store.save_vectors([make_stored("x", np.ones(16)), make_stored("y", np.ones(16))])
        stats = store.get_index_stats()
        assert stats.vector_count == 12
        assert stats.last_updated_at > 12345

        store.delete_vector("x")
        assert store.get_index_stats().vector_count == 11

        store.delete_vectors(["y", "doc_0", "missing"])
        assert store.get_index_stats().vector_count == 9

    def test_incremental_without_metadata_record(self, store):
        store.save_vector(make_stored("a", [1, 0]))

        assert store.get_index_stats() is None
        assert store.load_vector_index() is None

    def test_initialize_metadata_and_update_dimension(self, store):
        store.save_vector(make_stored("a", [1, 0]))
        store.update_dimension(2)

        stats = store.get_index_stats()
        assert stats.dimension == 2
        assert stats.vector_count == 1
        assert stats.storage_size_bytes == 1 * 2 * 4 + 200

        store.initialize_metadata(99)
        assert store.get_index_stats().dimension == 2


class TestCompaction:
    """Test compact_index()."""

    def test_evicts_least_recently_accessed_excess(self, store):
        store.save_vector_index(IndexData(
            vectors={
                "old": make_stored("old", [1, 0], accessed=1000),
                "mid": make_stored("mid", [0, 1], accessed=2000),
                "new": make_stored("new", [1, 1], accessed=3000),
            },
            dimension=2,
        ))

        removed = store.compact_index(None, max_vectors=2)

        assert removed == 1
        assert not store.vector_exists("old")
        assert store.vector_exists("mid") and store.vector_exists("new")
        assert store.get_index_stats().vector_count == 2

    def test_evicts_by_age(self, store):
        now = now_ms()
        store.save_vector_index(IndexData(
            vectors={
                "stale": make_stored("stale", [1, 0], accessed=now - 60_000),
                "fresh": make_stored("fresh", [0, 1], accessed=now),
            },
            dimension=2,
        ))

        removed = store.compact_index(max_age=30_000)

        assert removed == 1
        assert store.vector_exists("fresh")
        assert not store.vector_exists("stale")

    def test_policies_combine(self, store):
        now = now_ms()
        vectors = {"stale": make_stored("stale", [1, 0], accessed=now - 60_000)}
        for i in range(4):
            vectors[f"v{i}"] = make_stored(f"v{i}", [0, 1], accessed=now - 1000 + i)
        store.save_vector_index(IndexData(vectors=vectors, dimension=2))

        removed = store.compact_index(max_age=30_000, max_vectors=2)

        assert removed == 3
        assert store.vector_exists("v2") and store.vector_exists("v3")

    def test_nothing_to_compact(self, store, sample_data):
        store.save_vector_index(sample_data)

        assert store.compact_index() == 0
        assert store.compact_index(max_vectors=100) == 0
        assert store.get_index_stats().last_updated_at == 12345


class TestDatabaseManagement:
    """Test file handling and errors."""

    def test_unwritable_path_raises_persistence_error(self, tmp_path):
        with pytest.raises(PersistenceError):
            VectorIndexStore(db_path=str(tmp_path / "missing" / "dir" / "vectors.db"))

    def test_delete_database(self, tmp_path):
        path = str(tmp_path / "vectors.db")
        store = VectorIndexStore(db_path=path)
        store.save_vector(make_stored("a", [1, 0]))

        assert store.database_exists()
        store.delete_database()

        assert not os.path.exists(path)
        assert not store.database_exists()

    def test_data_persists_across_instances(self, temp_db, sample_data):
        store1 = VectorIndexStore(db_path=temp_db)
        store1.save_vector_index(sample_data)
        store1.close()

        store2 = VectorIndexStore(db_path=temp_db)
        assert len(store2.load_vector_index().vectors) == 10
        store2.close()
