"""
Data model shared by the search service, the LSH index and the store.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Optional, TypeVar

import numpy as np

M = TypeVar("M")

# (id, metadata) -> keep?
FilterFn = Callable[[str, Optional[M]], bool]


@dataclass
class StoredVector(Generic[M]):
    """
    A vector held by the index.

    Attributes:
        id: Unique identifier supplied by the caller.
        vector: 1D float32 array (unit length once inside the service).
        metadata: Caller-owned payload; never interpreted by the index.
        created_at: Insertion time in epoch milliseconds.
        last_accessed_at: Last read via get_vector(), in epoch milliseconds.
    """

    id: str
    vector: np.ndarray
    metadata: Optional[M] = None
    created_at: int = 0
    last_accessed_at: int = 0


@dataclass(frozen=True)
class SearchResult(Generic[M]):
    id: str
    score: float
    metadata: Optional[M] = None


@dataclass(frozen=True)
class IndexStats:
    vector_count: int
    dimension: Optional[int]
    memory_bytes: int
    is_initialized: bool
    using_approximate_search: bool
    cached_vectors: int
    last_updated_at: Optional[int]


@dataclass(frozen=True)
class StorageStats:
    vector_count: int
    dimension: Optional[int]
    last_updated_at: Optional[int]
    storage_size_bytes: int


@dataclass
class IndexData(Generic[M]):
    """Everything needed to save or restore a full index."""

    vectors: Dict[str, StoredVector[M]] = field(default_factory=dict)
    dimension: Optional[int] = None
    last_updated_at: Optional[int] = None


BYTES_PER_FLOAT = 4
OVERHEAD_PER_VECTOR = 200


def estimate_memory_bytes(vector_count: int, dimension: Optional[int]) -> int:
    """Rough footprint of vector_count float32 vectors plus bookkeeping."""
    return vector_count * (dimension or 0) * BYTES_PER_FLOAT + vector_count * OVERHEAD_PER_VECTOR
