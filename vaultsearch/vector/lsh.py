"""
LSHIndex - In-memory approximate nearest neighbour search with random hyperplanes.

Each of the hash tables owns a set of random unit hyperplanes. A vector's hash
in a table is the sign pattern of its projections onto that table's
hyperplanes, so vectors pointing in similar directions tend to share buckets.
Candidates from the matching bucket of every table are then reranked with
exact cosine similarity.
"""

import logging
from typing import Optional

import numpy as np

from vaultsearch.exceptions import DimensionMismatchError
from vaultsearch.types import FilterFn, SearchResult, StoredVector
from vaultsearch.vector.similarity import brute_force_search, rank_candidates

logger = logging.getLogger(__name__)


class LSHIndex:
    """
    Random-hyperplane LSH over StoredVector objects.

    The index keeps its own id -> StoredVector map so that remove() can
    recompute a vector's hashes and so the low-candidate fallback can scan
    every vector it holds.

    Example:
        >>> index = LSHIndex(dimension=384, table_count=10, hash_count=8, seed=7)
        >>> index.add(StoredVector(id="a", vector=np.ones(384, dtype=np.float32)))
        >>> results = index.search(np.ones(384, dtype=np.float32), k=1)
    """

    def __init__(
        self,
        dimension: int,
        table_count: int = 10,
        hash_count: int = 8,
        seed: Optional[int] = None,
    ):
        """
        Initialize the LSHIndex.

        Args:
            dimension: Length of every indexed vector.
            table_count: Number of hash tables (more = better recall, slower).
            hash_count: Hyperplanes per table (more = smaller buckets).
            seed: If set, every (re)build draws the same hyperplanes.
                If None, each build uses fresh randomness.
        """
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        if table_count <= 0 or hash_count <= 0:
            raise ValueError("table_count and hash_count must be positive")

        self.dimension = dimension
        self.table_count = table_count
        self.hash_count = hash_count
        self.seed = seed

        self._vectors: dict[str, StoredVector] = {}
        self._hyperplanes: Optional[np.ndarray] = None  # (table_count, hash_count, dimension)
        self._buckets: list[dict[str, set[str]]] = []

        self._initialize_tables()

    def _initialize_tables(self) -> None:
        """Draw new hyperplanes and reset every bucket."""
        rng = np.random.default_rng(self.seed)
        planes = rng.standard_normal(
            size=(self.table_count, self.hash_count, self.dimension)
        )
        norms = np.linalg.norm(planes, axis=2, keepdims=True)
        norms[norms == 0] = 1.0
        self._hyperplanes = (planes / norms).astype(np.float32)
        self._buckets = [{} for _ in range(self.table_count)]

    @property
    def hyperplanes(self) -> np.ndarray:
        return self._hyperplanes

    def _hash_vector(self, vector: np.ndarray) -> list[str]:
        """
        Compute the hash key of a vector in every table.

        Bit i of a table's key is 1 when the projection on hyperplane i is
        non-negative.

        Args:
            vector: 1D array of shape (dimension,).

        Returns:
            One bit string per table.
        """
        vector = np.asarray(vector, dtype=np.float32).flatten()
        if vector.shape[0] != self.dimension:
            raise DimensionMismatchError(self.dimension, vector.shape[0])

        projections = self._hyperplanes @ vector  # (table_count, hash_count)
        bits = (projections >= 0).astype(np.uint8)
        return ["".join(str(b) for b in row) for row in bits]

    def _insert(self, stored: StoredVector) -> None:
        for table_id, hash_key in enumerate(self._hash_vector(stored.vector)):
            self._buckets[table_id].setdefault(hash_key, set()).add(stored.id)

    def add(self, stored: StoredVector) -> None:
        """Add a vector; an existing entry with the same id is replaced."""
        if stored.id in self._vectors:
            self.remove(stored.id)
        self._vectors[stored.id] = stored
        self._insert(stored)

    def remove(self, vector_id: str) -> None:
        """Remove a vector by id. Unknown ids are ignored."""
        stored = self._vectors.get(vector_id)
        if stored is None:
            return

        for table_id, hash_key in enumerate(self._hash_vector(stored.vector)):
            bucket = self._buckets[table_id].get(hash_key)
            if bucket is None:
                continue
            bucket.discard(vector_id)
            if not bucket:
                del self._buckets[table_id][hash_key]

        del self._vectors[vector_id]

    def _find_candidates(self, query: np.ndarray) -> set[str]:
        """Union of the matching bucket in every table."""
        candidate_ids: set[str] = set()
        for table_id, hash_key in enumerate(self._hash_vector(query)):
            bucket = self._buckets[table_id].get(hash_key)
            if bucket:
                candidate_ids.update(bucket)
        return candidate_ids

    def search(
        self,
        query: np.ndarray,
        k: int,
        filter: Optional[FilterFn] = None,
    ) -> list[SearchResult]:
        """
        Approximate top-k search.

        If the buckets yield fewer than k candidates the search falls back to
        an exact scan of every vector in the index, so a sparse bucket never
        costs recall below k.

        Args:
            query: Query vector (normalized by the caller).
            k: Maximum number of results.
            filter: Optional predicate (id, metadata) -> bool.

        Returns:
            Up to k SearchResult objects sorted by descending score.
        """
        if k <= 0 or not self._vectors:
            return []

        candidate_ids = self._find_candidates(query)

        if len(candidate_ids) < k:
            logger.debug(
                "LSH found %d candidates for k=%d, falling back to brute force over %d vectors",
                len(candidate_ids), k, len(self._vectors),
            )
            return brute_force_search(query, self._vectors, k, filter)

        candidates = []
        for vector_id in candidate_ids:
            stored = self._vectors.get(vector_id)
            if stored is None:
                continue
            if filter is not None and not filter(vector_id, stored.metadata):
                continue
            candidates.append(stored)

        return rank_candidates(query, candidates, k)

    def rebuild(self, vectors: dict[str, StoredVector]) -> None:
        """
        Redraw the hyperplanes and reinsert every vector.

        Without a seed the new hyperplanes differ from the old ones, so every
        bucket assignment can change.
        """
        self._vectors = dict(vectors)
        self._initialize_tables()
        for stored in self._vectors.values():
            self._insert(stored)
        logger.debug(
            "Rebuilt LSH index: %d vectors, %d tables, %d buckets",
            len(self._vectors), self.table_count, self.bucket_count,
        )

    def clear(self) -> None:
        """Remove every vector; the hyperplanes are kept."""
        self._vectors.clear()
        for buckets in self._buckets:
            buckets.clear()

    def get_vectors(self) -> dict[str, StoredVector]:
        """Return a copy of the indexed vectors."""
        return dict(self._vectors)

    @property
    def bucket_count(self) -> int:
        return sum(len(buckets) for buckets in self._buckets)

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, vector_id: object) -> bool:
        return vector_id in self._vectors
