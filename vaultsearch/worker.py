"""
VectorSearchWorker - Run a VectorSearchService on a dedicated thread.

Large brute-force scans and full saves can take a while. Hosting the service
on its own thread keeps them off request-handling or UI threads: callers send
requests and get concurrent.futures.Future objects back instead of calling the
service directly.
"""

import dataclasses
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import numpy as np

from vaultsearch.service import BatchItem, VectorSearchService
from vaultsearch.types import FilterFn, IndexStats, SearchResult, StoredVector

logger = logging.getLogger(__name__)


def _copy_vector(vector: Sequence[float]) -> np.ndarray:
    return np.array(vector, dtype=np.float32)


def _copy_item(item: BatchItem) -> BatchItem:
    if isinstance(item, Mapping):
        return {**item, "vector": _copy_vector(item["vector"])}
    return (item[0], _copy_vector(item[1])) + tuple(item[2:])


class VectorSearchWorker:
    """
    Request/response front end for a service living on one worker thread.

    Every request runs on the same thread, in submission order. Vectors are
    copied when a request is made and get_vector() answers with a copy, so
    caller and worker never share a mutable array.

    Example:
        >>> with VectorSearchWorker(create_vector_search_service(store=store)) as worker:
        ...     worker.initialize().result()
        ...     worker.add_vector("doc-1", embedding).result()
        ...     results = worker.search(query, k=5).result()
    """

    def __init__(self, service: VectorSearchService, name: str = "vaultsearch"):
        self.service = service
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._closed = False
        self._close_lock = threading.Lock()

    def _request(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        with self._close_lock:
            if self._closed:
                raise RuntimeError("VectorSearchWorker has been shut down")
            return self._executor.submit(fn, *args, **kwargs)

    def initialize(self) -> "Future[None]":
        return self._request(self.service.initialize)

    def add_vector(self, vector_id: str, vector: Sequence[float], metadata: Any = None) -> "Future[None]":
        return self._request(self.service.add_vector, vector_id, _copy_vector(vector), metadata)

    def add_vectors(self, batch: Iterable[BatchItem]) -> "Future[None]":
        return self._request(self.service.add_vectors, [_copy_item(item) for item in batch])

    def remove_vector(self, vector_id: str) -> "Future[None]":
        return self._request(self.service.remove_vector, vector_id)

    def has_vector(self, vector_id: str) -> "Future[bool]":
        return self._request(self.service.has_vector, vector_id)

    def _get_vector_copy(self, vector_id: str) -> Optional[StoredVector]:
        stored = self.service.get_vector(vector_id)
        if stored is None:
            return None
        return dataclasses.replace(stored, vector=stored.vector.copy())

    def get_vector(self, vector_id: str) -> "Future[Optional[StoredVector]]":
        return self._request(self._get_vector_copy, vector_id)

    def search(
        self,
        query: Sequence[float],
        k: int = 10,
        filter: Optional[FilterFn] = None,
    ) -> "Future[list[SearchResult]]":
        return self._request(self.service.search, _copy_vector(query), k, filter)

    def rebuild_index(self, cancel_event: Optional[threading.Event] = None) -> "Future[None]":
        return self._request(self.service.rebuild_index, cancel_event)

    def save_index(self, cancel_event: Optional[threading.Event] = None) -> "Future[bool]":
        return self._request(self.service.save_index, cancel_event)

    def load_index(self, cancel_event: Optional[threading.Event] = None) -> "Future[bool]":
        return self._request(self.service.load_index, cancel_event)

    def compact_index(self, max_age: Optional[int] = None, max_vectors: Optional[int] = None) -> "Future[int]":
        return self._request(self.service.compact_index, max_age, max_vectors)

    def get_stats(self) -> "Future[IndexStats]":
        return self._request(self.service.get_stats)

    def clear(self) -> "Future[None]":
        return self._request(self.service.clear)

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting requests and close the worker thread's store connection.

        Pending requests still run.
        """
        with self._close_lock:
            if self._closed:
                return
            self._executor.submit(self.service.close)
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.debug("Vector search worker shut down")

    def __enter__(self) -> "VectorSearchWorker":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.shutdown()
