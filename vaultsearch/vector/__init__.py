"""
Vector math and in-memory search structures.

This module provides cosine similarity primitives, exact brute-force search,
and LSH-based approximate nearest neighbour search with exact reranking.
"""

from vaultsearch.vector.lsh import LSHIndex
from vaultsearch.vector.similarity import (
    brute_force_search,
    cosine_similarity,
    get_embedding_dimension,
    normalize_vector,
    to_float32_array,
)

__all__ = [
    "LSHIndex",
    "brute_force_search",
    "cosine_similarity",
    "get_embedding_dimension",
    "normalize_vector",
    "to_float32_array",
]
