"""
VectorSearchService - Local semantic search over caller-supplied embeddings.

The service owns the live vector map, enforces a single vector dimension,
chooses between exact and LSH search on every call, caches recent unfiltered
searches and saves/loads the whole index through a VectorIndexStore. No
vector data ever leaves the process.
"""

import logging
import threading
import warnings
from enum import Enum
from typing import Any, Generic, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from vaultsearch.cache import LRUCache
from vaultsearch.config import DEFAULT_CONFIG, VectorSearchConfig
from vaultsearch.exceptions import (
    DimensionMismatchError,
    NotInitializedError,
    OperationCancelled,
    PersistenceError,
    PersistenceWarning,
)
from vaultsearch.locks import ReadWriteLock
from vaultsearch.persistence.store import VectorIndexStore, now_ms
from vaultsearch.types import (
    FilterFn,
    IndexData,
    IndexStats,
    M,
    SearchResult,
    StoredVector,
    estimate_memory_bytes,
)
from vaultsearch.vector.lsh import LSHIndex
from vaultsearch.vector.similarity import brute_force_search, normalize_vector

logger = logging.getLogger(__name__)

# Errors a store or a metadata codec may raise while reading or writing.
STORAGE_ERRORS = (PersistenceError, ValueError, TypeError)

BatchItem = Union[
    Tuple[str, Sequence[float]],
    Tuple[str, Sequence[float], Any],
    Mapping[str, Any],
]


class ServiceState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class VectorSearchService(Generic[M]):
    """
    An in-process vector index with exact and approximate search.

    Searches run brute force until the index holds
    config.approximate_search_threshold vectors, then go through an LSH
    index with exact reranking. The mode is recomputed from the live vector
    count on every call.

    Searches may run concurrently; mutations take an exclusive lock and
    invalidate the result cache before releasing it.

    API:
    - initialize()
    - add_vector(id, vector, metadata=None) / add_vectors(batch)
    - remove_vector(id) / has_vector(id) / get_vector(id)
    - search(query, k=10, filter=None)
    - rebuild_index() / save_index() / load_index() / compact_index()
    - get_stats() / clear()

    Example:
        >>> service = create_vector_search_service(store=VectorIndexStore("vectors.db"))
        >>> service.initialize()
        >>> service.add_vector("receipt-1", embedding, {"vendor": "IKEA"})
        >>> results = service.search(query_embedding, k=5)
    """

    def __init__(
        self,
        config: Optional[VectorSearchConfig] = None,
        store: Optional[VectorIndexStore] = None,
    ):
        """
        Initialize the VectorSearchService.

        Args:
            config: Tuning parameters. Defaults to DEFAULT_CONFIG.
            store: Where the index is saved and loaded. If None the index
                lives in memory only and save/load are no-ops.
        """
        self.config = config or DEFAULT_CONFIG
        self.store = store

        self._vectors: dict[str, StoredVector[M]] = {}
        self._lsh_index: Optional[LSHIndex] = None
        self._search_cache: LRUCache[str, Tuple[np.ndarray, list[SearchResult[M]]]] = LRUCache(
            self.config.search_cache_size
        )
        self._dimension: Optional[int] = None
        self._last_updated_at: Optional[int] = None
        self._state = ServiceState.UNINITIALIZED
        self._lock = ReadWriteLock()

    # Lifecycle

    def initialize(self) -> None:
        """
        Load the persisted index, or start empty.

        Never raises because of missing or unreadable persisted state.
        Calling it again is a no-op.
        """
        with self._lock.write_locked():
            if self._state is not ServiceState.UNINITIALIZED:
                return
            self._state = ServiceState.INITIALIZING
            try:
                if not self.load_index():
                    logger.info("No persisted vector index found, starting empty")
            finally:
                self._state = ServiceState.READY

    @property
    def state(self) -> ServiceState:
        return self._state

    def is_initialized(self) -> bool:
        return self._state is ServiceState.READY

    def _ensure_initialized(self) -> None:
        if self._state is not ServiceState.READY:
            raise NotInitializedError()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def __len__(self) -> int:
        return len(self._vectors)

    # Mode selection

    def using_approximate_search(self) -> bool:
        """True when the live vector count has reached the LSH threshold."""
        return len(self._vectors) >= self.config.approximate_search_threshold

    def _build_lsh_index(self) -> LSHIndex:
        """Create an LSH index filled with every live vector."""
        lsh_index = LSHIndex(
            self._dimension,
            table_count=self.config.lsh_table_count,
            hash_count=self.config.lsh_hash_count,
            seed=self.config.lsh_seed,
        )
        for stored in self._vectors.values():
            lsh_index.add(stored)
        logger.debug("Built LSH index over %d vectors", len(self._vectors))
        return lsh_index

    def _ensure_lsh_index(self) -> None:
        if self._lsh_index is None and self._dimension:
            self._lsh_index = self._build_lsh_index()

    # Mutations

    @staticmethod
    def _unpack(item: BatchItem) -> Tuple[str, np.ndarray, Any]:
        if isinstance(item, Mapping):
            vector_id, vector, metadata = item["id"], item["vector"], item.get("metadata")
        elif len(item) == 2:
            (vector_id, vector), metadata = item, None
        else:
            vector_id, vector, metadata = item

        vector = np.asarray(vector, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] == 0:
            raise ValueError(f"Vector must be a non-empty 1D array, got shape {vector.shape}")
        return vector_id, vector, metadata

    def add_vector(
        self,
        vector_id: str,
        vector: Sequence[float],
        metadata: Optional[M] = None,
    ) -> None:
        """
        Add a vector, replacing any existing vector with the same id.

        The first vector fixes the index dimension. The vector is stored
        normalized to unit length.

        Raises:
            DimensionMismatchError: If the length differs from the index
                dimension. The index is left unchanged.
        """
        self.add_vectors([(vector_id, vector, metadata)])

    def add_vectors(self, batch: Iterable[BatchItem]) -> None:
        """
        Add several vectors.

        Items are (id, vector), (id, vector, metadata) tuples or mappings
        with "id", "vector" and optional "metadata" keys. Every item is
        validated before any is inserted, so a bad item leaves the index
        unchanged.
        """
        self._ensure_initialized()
        items = [self._unpack(item) for item in batch]
        if not items:
            return

        with self._lock.write_locked():
            dimension = self._dimension
            for _, vector, _ in items:
                if dimension is None:
                    dimension = vector.shape[0]
                elif vector.shape[0] != dimension:
                    raise DimensionMismatchError(dimension, vector.shape[0])

            now = now_ms()
            count_before = len(self._vectors)
            self._dimension = dimension
            for vector_id, vector, metadata in items:
                stored = StoredVector(
                    id=vector_id,
                    vector=normalize_vector(vector),
                    metadata=metadata,
                    created_at=now,
                    last_accessed_at=now,
                )
                self._remove_locked(vector_id)
                self._vectors[vector_id] = stored

                if self._lsh_index is not None:
                    self._lsh_index.add(stored)
                elif self.using_approximate_search():
                    self._ensure_lsh_index()

            self._search_cache.clear()
            self._last_updated_at = now

            budget = self.config.max_cached_vectors
            if count_before <= budget < len(self._vectors):
                logger.warning(
                    "Vector index holds %d vectors, over the max_cached_vectors budget of %d",
                    len(self._vectors), budget,
                )

    def _remove_locked(self, vector_id: str) -> bool:
        if self._vectors.pop(vector_id, None) is None:
            return False
        if self._lsh_index is not None:
            self._lsh_index.remove(vector_id)
        return True

    def remove_vector(self, vector_id: str) -> None:
        """Remove a vector by id. Unknown ids are ignored."""
        self._ensure_initialized()
        with self._lock.write_locked():
            if self._remove_locked(vector_id):
                self._search_cache.clear()
                self._last_updated_at = now_ms()

    def has_vector(self, vector_id: str) -> bool:
        self._ensure_initialized()
        with self._lock.read_locked():
            return vector_id in self._vectors

    def get_vector(self, vector_id: str) -> Optional[StoredVector[M]]:
        """Return the stored vector and mark it as accessed, or None."""
        self._ensure_initialized()
        with self._lock.write_locked():
            stored = self._vectors.get(vector_id)
            if stored is not None:
                stored.last_accessed_at = now_ms()
            return stored

    # Search

    def _cache_key(self, normalized_query: np.ndarray, k: int) -> str:
        """
        Key a search by a rounded prefix of the query and k.

        Different queries can share a key, so each entry also keeps the full
        query it was computed for and only an identical query reuses it.
        """
        sample = normalized_query[: self.config.cache_key_components]
        return ",".join(f"{v:.4f}" for v in sample) + f":{k}"

    def search(
        self,
        query: Sequence[float],
        k: int = 10,
        filter: Optional[FilterFn] = None,
    ) -> list[SearchResult[M]]:
        """
        Find the k stored vectors most similar to query.

        Args:
            query: Query vector of the index dimension.
            k: Maximum number of results.
            filter: Optional predicate (id, metadata) -> bool. Filtered
                searches are never cached.

        Returns:
            Up to k SearchResult objects sorted by descending cosine similarity.

        Raises:
            DimensionMismatchError: If the query length differs from the
                index dimension.
        """
        self._ensure_initialized()
        query = np.asarray(query, dtype=np.float32).flatten()

        with self._lock.read_locked():
            if not self._vectors or k <= 0:
                return []

            if self._dimension is not None and query.shape[0] != self._dimension:
                raise DimensionMismatchError(
                    self._dimension,
                    query.shape[0],
                    f"Query vector dimension mismatch: expected {self._dimension}, got {query.shape[0]}",
                )

            normalized = normalize_vector(query)

            cache_key = None
            if filter is None:
                cache_key = self._cache_key(normalized, k)
                cached = self._search_cache.get(cache_key)
                if cached is not None and np.array_equal(cached[0], normalized):
                    logger.debug("Search cache hit for k=%d", k)
                    return list(cached[1])

            if self.using_approximate_search() and self._lsh_index is not None:
                logger.debug("LSH search over %d vectors, k=%d", len(self._vectors), k)
                results = self._lsh_index.search(normalized, k, filter)
            else:
                logger.debug("Brute-force search over %d vectors, k=%d", len(self._vectors), k)
                results = brute_force_search(normalized, self._vectors, k, filter)

            if cache_key is not None:
                self._search_cache.set(cache_key, (normalized, results))

            return list(results)

    # Persistence

    def _check_cancelled(self, cancel_event: Optional[threading.Event], action: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"{action} cancelled")

    def rebuild_index(self, cancel_event: Optional[threading.Event] = None) -> None:
        """
        Rebuild the LSH structure from scratch and save the index.

        Without lsh_seed the new hyperplanes differ from the old ones. The
        new structure replaces the old one only after the save, so a
        cancelled rebuild leaves the in-memory index as it was.
        """
        self._ensure_initialized()
        with self._lock.write_locked():
            self._check_cancelled(cancel_event, "Rebuilding vector index")
            lsh_index = self._lsh_index
            if self.using_approximate_search():
                lsh_index = self._build_lsh_index()
            updated_at = now_ms()

            if self.store is not None:
                self._persist(self._snapshot(updated_at), cancel_event)

            self._lsh_index = lsh_index
            self._search_cache.clear()
            self._last_updated_at = updated_at
            logger.info("Rebuilt vector index with %d vectors", len(self._vectors))

    def _snapshot(self, last_updated_at: Optional[int]) -> IndexData:
        return IndexData(
            vectors=dict(self._vectors),
            dimension=self._dimension,
            last_updated_at=last_updated_at,
        )

    def _persist(self, snapshot: IndexData, cancel_event: Optional[threading.Event]) -> bool:
        try:
            self.store.save_vector_index(snapshot, cancel_event=cancel_event)
        except STORAGE_ERRORS as e:
            logger.error("Failed to save vector index", exc_info=True)
            warnings.warn(f"Vector index was not persisted: {e}", PersistenceWarning, stacklevel=3)
            return False
        return True

    def save_index(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Write the whole index to the store.

        A storage failure leaves the in-memory index intact; it is logged and
        reported as a PersistenceWarning.

        Returns:
            True if the index was saved.
        """
        self._ensure_initialized()
        if self.store is None:
            return False

        with self._lock.read_locked():
            snapshot = self._snapshot(self._last_updated_at)
        return self._persist(snapshot, cancel_event)

    def load_index(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Replace the in-memory index with the persisted one.

        Returns:
            True if an index was loaded. False if there is no store, nothing
            was saved, or loading failed (the current index is kept).
        """
        if self.store is None:
            return False

        with self._lock.write_locked():
            try:
                data = self.store.load_vector_index(cancel_event=cancel_event)
            except STORAGE_ERRORS:
                logger.error("Failed to load vector index", exc_info=True)
                return False
            if data is None:
                return False

            vectors = {}
            dimension = data.dimension
            for vector_id, stored in data.vectors.items():
                if dimension is None:
                    dimension = stored.vector.shape[0]
                if stored.vector.shape[0] != dimension:
                    logger.warning(
                        "Skipping persisted vector %r: dimension %d, index dimension %d",
                        vector_id, stored.vector.shape[0], dimension,
                    )
                    continue
                vectors[vector_id] = stored

            self._vectors = vectors
            self._dimension = dimension
            self._last_updated_at = data.last_updated_at
            self._lsh_index = None
            self._search_cache.clear()

            if self.using_approximate_search():
                self._ensure_lsh_index()

        return True

    def compact_index(
        self,
        max_age: Optional[int] = None,
        max_vectors: Optional[int] = None,
    ) -> int:
        """
        Save the index, evict stale vectors from the store and reload.

        Args:
            max_age: Evict vectors not accessed within this many milliseconds.
            max_vectors: Then keep at most this many, most recently accessed.

        Returns:
            Number of vectors removed.
        """
        self._ensure_initialized()
        if self.store is None:
            return 0

        with self._lock.write_locked():
            if not self.save_index():
                return 0
            try:
                removed = self.store.compact_index(max_age=max_age, max_vectors=max_vectors)
            except PersistenceError as e:
                logger.error("Failed to compact vector index", exc_info=True)
                warnings.warn(f"Vector index was not compacted: {e}", PersistenceWarning, stacklevel=2)
                return 0
            if removed:
                self.load_index()
        return removed

    # Introspection

    def get_stats(self) -> IndexStats:
        with self._lock.read_locked():
            count = len(self._vectors)
            return IndexStats(
                vector_count=count,
                dimension=self._dimension,
                memory_bytes=estimate_memory_bytes(count, self._dimension),
                is_initialized=self.is_initialized(),
                using_approximate_search=self.using_approximate_search(),
                cached_vectors=count,
                last_updated_at=self._last_updated_at,
            )

    def clear(self) -> None:
        """Remove every vector from memory and from the store."""
        self._ensure_initialized()
        with self._lock.write_locked():
            self._vectors = {}
            if self._lsh_index is not None:
                self._lsh_index.clear()
            self._lsh_index = None
            self._search_cache.clear()
            self._dimension = None
            self._last_updated_at = None

            if self.store is not None:
                try:
                    self.store.clear_vector_index()
                except PersistenceError as e:
                    logger.error("Failed to clear persisted vector index", exc_info=True)
                    warnings.warn(
                        f"Persisted vector index was not cleared: {e}",
                        PersistenceWarning,
                        stacklevel=2,
                    )

    def close(self) -> None:
        """Close the store connection held by the calling thread."""
        if self.store is not None:
            self.store.close()


def create_vector_search_service(
    config: Optional[VectorSearchConfig] = None,
    store: Optional[VectorIndexStore] = None,
    **overrides: Any,
) -> VectorSearchService:
    """
    Create a new, uninitialized VectorSearchService.

    Args:
        config: Base configuration. Defaults to DEFAULT_CONFIG.
        store: Optional persistence backend.
        **overrides: VectorSearchConfig fields to replace, e.g.
            approximate_search_threshold=1000.
    """
    config = config or DEFAULT_CONFIG
    if overrides:
        config = config.with_overrides(**overrides)
    return VectorSearchService(config=config, store=store)
