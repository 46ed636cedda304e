"""
Configuration for VectorSearchService.
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Optional


@dataclass(frozen=True)
class VectorSearchConfig:
    """
    Tuning knobs for a VectorSearchService.

    Attributes:
        approximate_search_threshold: Vector count at which search switches
            from brute force to LSH. Evaluated on every call.
        max_cached_vectors: Advisory in-memory vector budget. Not enforced;
            add_vectors() logs a warning when the index grows past it.
        lsh_table_count: Number of LSH hash tables.
        lsh_hash_count: Hyperplanes per LSH table.
        lsh_seed: Seed for LSH hyperplanes. None draws fresh ones on every
            rebuild; an integer makes rebuilds reproducible.
        search_cache_size: Capacity of the search result cache.
        cache_key_components: Leading query components used in cache keys.
    """

    approximate_search_threshold: int = 500
    max_cached_vectors: int = 1000
    lsh_table_count: int = 10
    lsh_hash_count: int = 8
    lsh_seed: Optional[int] = None
    search_cache_size: int = 100
    cache_key_components: int = 10

    def __post_init__(self) -> None:
        for name in (
            "approximate_search_threshold",
            "max_cached_vectors",
            "lsh_table_count",
            "lsh_hash_count",
            "search_cache_size",
            "cache_key_components",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    def with_overrides(self, **overrides: Any) -> "VectorSearchConfig":
        """Return a copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        return replace(self, **overrides)


DEFAULT_CONFIG = VectorSearchConfig()
