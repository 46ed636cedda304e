"""
Tests for VectorSearchWorker.
"""

import threading

import numpy as np
import pytest

from vaultsearch import NotInitializedError, VectorSearchWorker, create_vector_search_service


@pytest.fixture
def worker():
    worker = VectorSearchWorker(create_vector_search_service())
    worker.initialize().result()
    yield worker
    worker.shutdown()


class TestVectorSearchWorker:

    def test_requests_return_futures(self, worker):
        worker.add_vector("v1", [1, 0]).result()
        worker.add_vectors([("v2", [0, 1]), {"id": "v3", "vector": [0.9, 0.1]}]).result()

        results = worker.search([1, 0], k=2).result()

        assert [r.id for r in results] == ["v1", "v3"]
        assert worker.has_vector("v2").result()
        assert worker.get_stats().result().vector_count == 3

    def test_requests_run_on_worker_thread(self, worker):
        caller = threading.get_ident()
        seen = worker._request(threading.get_ident).result()
        assert seen != caller

    def test_input_vectors_are_copied(self, worker):
        vector = np.array([1, 0], dtype=np.float32)
        worker.add_vector("a", vector).result()
        vector[:] = [0, 1]

        np.testing.assert_allclose(worker.get_vector("a").result().vector, [1, 0])

    def test_get_vector_returns_copy(self, worker):
        worker.add_vector("a", [1, 0]).result()

        copy = worker.get_vector("a").result()
        copy.vector[:] = 0

        assert worker.search([1, 0], k=1).result()[0].score == pytest.approx(1.0)
        assert worker.get_vector("missing").result() is None

    def test_errors_surface_through_future(self):
        worker = VectorSearchWorker(create_vector_search_service())
        future = worker.search([1, 0])

        with pytest.raises(NotInitializedError):
            future.result()
        worker.shutdown()

    def test_shutdown_rejects_requests(self, worker):
        worker.shutdown()

        with pytest.raises(RuntimeError, match="shut down"):
            worker.get_stats()

    def test_requests_racing_shutdown(self):
        worker = VectorSearchWorker(create_vector_search_service())
        worker.initialize().result()
        start = threading.Barrier(5)
        accepted, errors = [], []

        def client():
            start.wait()
            for _ in range(200):
                try:
                    accepted.append(worker.get_stats())
                except RuntimeError as e:
                    errors.append(str(e))

        threads = [threading.Thread(target=client) for _ in range(4)]
        for t in threads:
            t.start()
        start.wait()
        worker.shutdown()
        for t in threads:
            t.join()

        assert all(message == "VectorSearchWorker has been shut down" for message in errors)
        assert all(future.result().vector_count == 0 for future in accepted)
        assert len(accepted) + len(errors) == 800

    def test_context_manager(self):
        with VectorSearchWorker(create_vector_search_service()) as worker:
            worker.initialize().result()
            worker.add_vector("a", [1, 2, 3]).result()
            assert worker.remove_vector("a").result() is None
            assert worker.get_stats().result().vector_count == 0

        with pytest.raises(RuntimeError):
            worker.clear()
