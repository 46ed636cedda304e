"""
VectorIndexStore - Durable storage for a vector index using SQLite.

Vectors are stored one row each, with the float values as a JSON array, next
to a singleton metadata record describing the index as a whole. The store
supports full save/load of an index as well as incremental single and batch
updates that avoid rewriting everything.
"""

import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Iterable, Iterator, Optional

import numpy as np

from vaultsearch.exceptions import OperationCancelled, PersistenceError
from vaultsearch.types import IndexData, StorageStats, StoredVector, estimate_memory_bytes

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
METADATA_KEY = "metadata"
DATE_TAG = "__date__"
DATETIME_TAG = "__datetime__"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {DATE_TAG: value.isoformat()}
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_object_hook(obj: dict) -> Any:
    if len(obj) == 1:
        if DATETIME_TAG in obj:
            return datetime.fromisoformat(obj[DATETIME_TAG])
        if DATE_TAG in obj:
            return date.fromisoformat(obj[DATE_TAG])
    return obj


def encode_metadata(metadata: Any) -> str:
    """
    Default metadata encoder: JSON, with dates tagged so they decode as dates.

    Metadata must otherwise be JSON-shaped: string keys, lists rather than
    tuples. Pass a custom encoder/decoder pair for anything else.
    """
    return json.dumps(metadata, default=_json_default)


def decode_metadata(raw: str) -> Any:
    """Default metadata decoder, the inverse of encode_metadata."""
    return json.loads(raw, object_hook=_json_object_hook)


def _check_cancelled(cancel_event: Optional[threading.Event], action: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"{action} cancelled")


class VectorIndexStore:
    """
    A SQLite-backed store for StoredVector records and index metadata.

    API:
    - save_vector_index(data) / load_vector_index() / clear_vector_index()
    - save_vector(stored) / save_vectors(batch)
    - delete_vector(id) / delete_vectors(ids)
    - get_vector(id) / vector_exists(id)
    - compact_index(max_age=None, max_vectors=None)
    - get_index_stats()

    Each thread gets its own connection to the database file. Every
    sqlite3 error is re-raised as PersistenceError.

    Example:
        >>> store = VectorIndexStore(db_path="vectors.db")
        >>> store.save_vector(StoredVector(id="doc-1", vector=np.ones(384, dtype=np.float32)))
        >>> store.vector_exists("doc-1")
        True
    """

    def __init__(
        self,
        db_path: str = "vaultsearch_vectors.db",
        metadata_encoder: Callable[[Any], str] = encode_metadata,
        metadata_decoder: Callable[[str], Any] = decode_metadata,
    ):
        """
        Initialize the VectorIndexStore.

        Args:
            db_path: Path to the SQLite database file.
            metadata_encoder: Turns a metadata object into text for storage.
            metadata_decoder: Inverse of metadata_encoder.
        """
        self.db_path = db_path
        self.metadata_encoder = metadata_encoder
        self.metadata_decoder = metadata_decoder
        self._local = threading.local()

        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "conn"):
            self._local.conn = sqlite3.connect(self.db_path)
            self._local.conn.row_factory = sqlite3.Row
        return self._local.conn

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Cursor]:
        """
        Run statements in one transaction.

        Commits on success; rolls back on any exception. sqlite3 errors
        come out as PersistenceError.
        """
        try:
            conn = self._get_conn()
            with conn:
                yield conn.cursor()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to {action}: {e}") from e

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction("initialize schema") as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS vectors (
                    id TEXT PRIMARY KEY,
                    vector TEXT NOT NULL,
                    metadata TEXT,
                    created_at INTEGER NOT NULL,
                    last_accessed_at INTEGER NOT NULL
                )
            """)

            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS index_metadata (
                    id TEXT PRIMARY KEY CHECK (id = '{METADATA_KEY}'),
                    dimension INTEGER,
                    last_updated_at INTEGER,
                    version INTEGER NOT NULL,
                    vector_count INTEGER NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_vectors_created ON vectors (created_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_vectors_accessed ON vectors (last_accessed_at)")

    # Serialization

    def _serialize(self, stored: StoredVector) -> tuple:
        vector = np.asarray(stored.vector, dtype=np.float32).flatten()
        metadata = None if stored.metadata is None else self.metadata_encoder(stored.metadata)
        return (
            stored.id,
            json.dumps(vector.tolist()),
            metadata,
            int(stored.created_at),
            int(stored.last_accessed_at),
        )

    def _deserialize(self, row: sqlite3.Row) -> StoredVector:
        metadata = row["metadata"]
        return StoredVector(
            id=row["id"],
            vector=np.asarray(json.loads(row["vector"]), dtype=np.float32),
            metadata=None if metadata is None else self.metadata_decoder(metadata),
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
        )

    @staticmethod
    def _touch_metadata(cursor: sqlite3.Cursor) -> None:
        """Refresh vector_count and last_updated_at if the record exists."""
        cursor.execute(
            "UPDATE index_metadata SET last_updated_at = ?, "
            "vector_count = (SELECT COUNT(*) FROM vectors) WHERE id = ?",
            (now_ms(), METADATA_KEY),
        )

    # Full index

    def save_vector_index(
        self,
        data: IndexData,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Replace everything in the store with the given index.

        Runs in a single transaction; a failure or cancellation leaves the
        previously stored index untouched.

        Args:
            data: Vectors, dimension and last update time to store.
            cancel_event: If set while rows are prepared, the save stops and
                OperationCancelled is raised.
        """
        rows = []
        for stored in data.vectors.values():
            _check_cancelled(cancel_event, "Saving vector index")
            rows.append(self._serialize(stored))

        with self._transaction("save vector index") as cursor:
            cursor.execute("DELETE FROM vectors")
            if rows:
                cursor.executemany(
                    "INSERT INTO vectors (id, vector, metadata, created_at, last_accessed_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    rows,
                )
            _check_cancelled(cancel_event, "Saving vector index")
            cursor.execute(
                "INSERT OR REPLACE INTO index_metadata "
                "(id, dimension, last_updated_at, version, vector_count) VALUES (?, ?, ?, ?, ?)",
                (METADATA_KEY, data.dimension, data.last_updated_at, SCHEMA_VERSION, len(rows)),
            )

        logger.info("Saved vector index: %d vectors, dimension %s", len(rows), data.dimension)

    def load_vector_index(
        self,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[IndexData]:
        """
        Read the whole index back.

        Returns:
            The stored IndexData, or None if no index has been saved.
        """
        with self._transaction("load vector index") as cursor:
            cursor.execute(
                "SELECT dimension, last_updated_at FROM index_metadata WHERE id = ?",
                (METADATA_KEY,),
            )
            meta = cursor.fetchone()
            if meta is None:
                return None

            cursor.execute(
                "SELECT id, vector, metadata, created_at, last_accessed_at FROM vectors "
                "ORDER BY rowid"
            )
            vectors = {}
            for row in cursor:
                _check_cancelled(cancel_event, "Loading vector index")
                stored = self._deserialize(row)
                vectors[stored.id] = stored

        logger.info("Loaded vector index: %d vectors, dimension %s", len(vectors), meta["dimension"])
        return IndexData(
            vectors=vectors,
            dimension=meta["dimension"],
            last_updated_at=meta["last_updated_at"],
        )

    def clear_vector_index(self) -> None:
        """Delete every vector and the metadata record."""
        with self._transaction("clear vector index") as cursor:
            cursor.execute("DELETE FROM vectors")
            cursor.execute("DELETE FROM index_metadata")

    # Incremental updates

    def save_vector(self, stored: StoredVector) -> None:
        """Add or replace a single vector."""
        self.save_vectors([stored])

    def save_vectors(self, vectors: Iterable[StoredVector]) -> None:
        """Add or replace several vectors in one transaction."""
        rows = [self._serialize(stored) for stored in vectors]
        with self._transaction("save vectors") as cursor:
            cursor.executemany(
                "INSERT OR REPLACE INTO vectors (id, vector, metadata, created_at, last_accessed_at) "
                "VALUES (?, ?, ?, ?, ?)",
                rows,
            )
            self._touch_metadata(cursor)
        logger.debug("Saved %d vectors", len(rows))

    def delete_vector(self, vector_id: str) -> None:
        """Remove a vector by id. Unknown ids are ignored."""
        self.delete_vectors([vector_id])

    def delete_vectors(self, vector_ids: Iterable[str]) -> None:
        """Remove several vectors by id in one transaction."""
        ids = [(vector_id,) for vector_id in vector_ids]
        with self._transaction("delete vectors") as cursor:
            cursor.executemany("DELETE FROM vectors WHERE id = ?", ids)
            self._touch_metadata(cursor)
        logger.debug("Deleted %d vectors", len(ids))

    def get_vector(self, vector_id: str) -> Optional[StoredVector]:
        """Fetch a single vector, or None if it is not stored."""
        with self._transaction("get vector") as cursor:
            cursor.execute(
                "SELECT id, vector, metadata, created_at, last_accessed_at FROM vectors WHERE id = ?",
                (vector_id,),
            )
            row = cursor.fetchone()
        return None if row is None else self._deserialize(row)

    def vector_exists(self, vector_id: str) -> bool:
        with self._transaction("check vector") as cursor:
            cursor.execute("SELECT 1 FROM vectors WHERE id = ? LIMIT 1", (vector_id,))
            return cursor.fetchone() is not None

    # Statistics and maintenance

    def get_index_stats(self) -> Optional[StorageStats]:
        """Summary of the stored index, or None if nothing has been saved."""
        with self._transaction("get index stats") as cursor:
            cursor.execute(
                "SELECT dimension, last_updated_at FROM index_metadata WHERE id = ?",
                (METADATA_KEY,),
            )
            meta = cursor.fetchone()
            if meta is None:
                return None
            cursor.execute("SELECT COUNT(*) AS count FROM vectors")
            vector_count = cursor.fetchone()["count"]

        return StorageStats(
            vector_count=vector_count,
            dimension=meta["dimension"],
            last_updated_at=meta["last_updated_at"],
            storage_size_bytes=estimate_memory_bytes(vector_count, meta["dimension"]),
        )

    def compact_index(
        self,
        max_age: Optional[int] = None,
        max_vectors: Optional[int] = None,
    ) -> int:
        """
        Evict stale vectors.

        Two independent policies run in order; a policy whose argument is
        None or 0 is skipped.

        Args:
            max_age: Delete vectors not accessed within this many milliseconds.
            max_vectors: Afterwards, if more vectors remain, delete the least
                recently accessed ones until this many are left.

        Returns:
            Number of vectors deleted.
        """
        deleted = 0
        with self._transaction("compact index") as cursor:
            if max_age:
                cutoff = now_ms() - max_age
                cursor.execute("DELETE FROM vectors WHERE last_accessed_at < ?", (cutoff,))
                deleted += cursor.rowcount

            if max_vectors:
                cursor.execute("SELECT COUNT(*) AS count FROM vectors")
                excess = cursor.fetchone()["count"] - max_vectors
                if excess > 0:
                    cursor.execute(
                        "DELETE FROM vectors WHERE id IN ("
                        "SELECT id FROM vectors ORDER BY last_accessed_at ASC, rowid ASC LIMIT ?)",
                        (excess,),
                    )
                    deleted += cursor.rowcount

            if deleted > 0:
                self._touch_metadata(cursor)

        if deleted:
            logger.info("Compacted vector index: removed %d vectors", deleted)
        return deleted

    def initialize_metadata(self, dimension: Optional[int]) -> None:
        """Create the metadata record if it does not exist yet."""
        with self._transaction("initialize metadata") as cursor:
            cursor.execute(
                "INSERT OR IGNORE INTO index_metadata "
                "(id, dimension, last_updated_at, version, vector_count) "
                "VALUES (?, ?, ?, ?, (SELECT COUNT(*) FROM vectors))",
                (METADATA_KEY, dimension, now_ms(), SCHEMA_VERSION),
            )

    def update_dimension(self, dimension: int) -> None:
        """Set the dimension in the metadata record, creating it if needed."""
        with self._transaction("update dimension") as cursor:
            cursor.execute(
                "UPDATE index_metadata SET dimension = ? WHERE id = ?",
                (dimension, METADATA_KEY),
            )
            updated = cursor.rowcount
        if not updated:
            self.initialize_metadata(dimension)

    def database_exists(self) -> bool:
        return self.db_path == ":memory:" or os.path.exists(self.db_path)

    def delete_database(self) -> None:
        """Close this thread's connection and remove the database file."""
        self.close()
        if self.db_path == ":memory:":
            return
        for suffix in ("", "-journal", "-wal", "-shm"):
            try:
                os.unlink(self.db_path + suffix)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise PersistenceError(f"Failed to delete database {self.db_path}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self._local, "conn"):
            self._local.conn.close()
            delattr(self._local, "conn")

    def __enter__(self) -> "VectorIndexStore":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
