"""
vaultsearch - Local, in-process vector search for embeddings that must stay on the device.

vaultsearch provides exact and LSH-based approximate nearest neighbour search
over dense embeddings, with an LRU result cache and SQLite persistence.
"""

from vaultsearch.__version__ import __version__
from vaultsearch.cache import LRUCache
from vaultsearch.config import DEFAULT_CONFIG, VectorSearchConfig
from vaultsearch.exceptions import (
    DimensionMismatchError,
    NotInitializedError,
    OperationCancelled,
    PersistenceError,
    PersistenceWarning,
    VaultSearchError,
)
from vaultsearch.filters import metadata_filter
from vaultsearch.persistence import VectorIndexStore
from vaultsearch.service import ServiceState, VectorSearchService, create_vector_search_service
from vaultsearch.types import IndexData, IndexStats, SearchResult, StorageStats, StoredVector
from vaultsearch.vector import (
    LSHIndex,
    brute_force_search,
    cosine_similarity,
    get_embedding_dimension,
    normalize_vector,
    to_float32_array,
)
from vaultsearch.worker import VectorSearchWorker

__all__ = [
    "DEFAULT_CONFIG",
    "DimensionMismatchError",
    "IndexData",
    "IndexStats",
    "LRUCache",
    "LSHIndex",
    "NotInitializedError",
    "OperationCancelled",
    "PersistenceError",
    "PersistenceWarning",
    "SearchResult",
    "ServiceState",
    "StorageStats",
    "StoredVector",
    "VaultSearchError",
    "VectorIndexStore",
    "VectorSearchConfig",
    "VectorSearchService",
    "VectorSearchWorker",
    "brute_force_search",
    "cosine_similarity",
    "create_vector_search_service",
    "get_embedding_dimension",
    "metadata_filter",
    "normalize_vector",
    "to_float32_array",
    "__version__",
]
