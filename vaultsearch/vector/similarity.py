"""
Similarity primitives and exact (brute-force) nearest neighbour search.

Everything here works on 1D numpy arrays. Vectors stored by the service are
already unit length, but these functions compute full cosine similarity so
they are also correct for arbitrary inputs.
"""

from typing import Mapping, Optional, Sequence, Union

import numpy as np

from vaultsearch.exceptions import DimensionMismatchError
from vaultsearch.types import FilterFn, SearchResult, StoredVector

ArrayLike = Union[np.ndarray, Sequence[float]]

# Output widths of embedding models commonly used to feed the index.
EMBEDDING_DIMENSIONS = {
    "all-MiniLM-L6-v2": 384,
    "all-mpnet-base-v2": 768,
    "multi-qa-MiniLM-L6-cos-v1": 384,
    "paraphrase-MiniLM-L6-v2": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
DEFAULT_EMBEDDING_DIMENSION = 384


def to_float32_array(values: ArrayLike) -> np.ndarray:
    """Convert a sequence of numbers to a flat float32 array."""
    return np.asarray(values, dtype=np.float32).flatten()


def get_embedding_dimension(model_name: str) -> int:
    """Return the embedding width of a known model, 384 for unknown ones."""
    return EMBEDDING_DIMENSIONS.get(model_name, DEFAULT_EMBEDDING_DIMENSION)


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """
    Cosine of the angle between two vectors.

    Args:
        a: First vector.
        b: Second vector, same length as a.

    Returns:
        Similarity in [-1, 1]. 0.0 if either vector has zero norm.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64).flatten()
    b = np.asarray(b, dtype=np.float64).flatten()
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])

    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0:
        return 0.0

    return float(np.clip(np.dot(a, b) / denominator, -1.0, 1.0))


def normalize_vector(vector: ArrayLike) -> np.ndarray:
    """
    Scale a vector to unit L2 norm.

    A zero vector is returned as is.
    """
    vector = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if norm == 0:
        return vector
    return (vector / norm).astype(np.float32)


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of query against every row of matrix.

    Rows (or a query) with zero norm score 0.0.
    """
    query = np.asarray(query, dtype=np.float64).flatten()
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.shape[1] != query.shape[0]:
        raise DimensionMismatchError(matrix.shape[1], query.shape[0])

    denominators = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denominators == 0, 0.0, dots / denominators)
    return np.clip(scores, -1.0, 1.0)


def rank_candidates(
    query: np.ndarray,
    candidates: Sequence[StoredVector],
    k: int,
) -> list[SearchResult]:
    """Score candidates against query and return the top k, best first.

    Equal scores keep the order of candidates.
    """
    if k <= 0 or not candidates:
        return []

    matrix = np.vstack([stored.vector for stored in candidates])
    scores = cosine_scores(query, matrix)
    order = np.argsort(-scores, kind="stable")[:k]

    return [
        SearchResult(
            id=candidates[i].id,
            score=float(scores[i]),
            metadata=candidates[i].metadata,
        )
        for i in order
    ]


def brute_force_search(
    query: ArrayLike,
    vectors: Mapping[str, StoredVector],
    k: int,
    filter: Optional[FilterFn] = None,
) -> list[SearchResult]:
    """
    Exact top-k search by scanning every stored vector.

    The filter, if given, is applied before any similarity is computed.
    Ties are broken by insertion order. O(n * d).

    Args:
        query: Query vector.
        vectors: Mapping of id to StoredVector, in insertion order.
        k: Maximum number of results.
        filter: Optional predicate (id, metadata) -> bool.

    Returns:
        Up to k SearchResult objects sorted by descending score.
    """
    candidates = [
        stored
        for vector_id, stored in vectors.items()
        if filter is None or filter(vector_id, stored.metadata)
    ]
    return rank_candidates(np.asarray(query), candidates, k)
