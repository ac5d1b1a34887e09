"""
Shared pytest fixtures for recall tests.

Provides mock providers so no embedding model or vector server is needed.
"""

import hashlib
from pathlib import Path

import pytest

from recall.engine import RetrievalEngine
from recall.errors import RemoteBackendError
from recall.record_store import RecordStore
from recall.resilience import CircuitBreaker, ErrorHandler, RetryOptions
from recall.types import Record
from recall.vector_backend import VectorHit


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no ML model loading.
    """

    dimension = 384
    model_name = "mock-model"

    def __init__(self):
        self.embed_calls = 0
        self.batch_calls = 0

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        h = hashlib.md5(text.encode()).hexdigest()
        embedding = []
        for i in range(0, 32, 2):
            val = int(h[i:i+2], 16) / 255.0
            embedding.append(val)
        # Pad to full dimension
        embedding = (embedding * 24)[:self.dimension]
        return embedding

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


class FakeClock:
    """Manually advanced monotonic clock for breaker tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVectorBackend:
    """
    In-memory vector backend.

    Set ``fail_with`` to make every call raise; ``calls`` counts every
    method invocation so tests can assert the backend was not touched.
    """

    def __init__(self):
        self.collections: dict[str, int] = {}
        self.points: dict[str, dict[str, dict]] = {}
        self.calls: list[str] = []
        self.fail_with: Exception | None = None
        self.search_scores: dict[str, float] = {}
        self.closed = False

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    def ensure_collection(self, name: str, dimension: int) -> None:
        self._enter("ensure_collection")
        self.collections.setdefault(name, dimension)
        self.points.setdefault(name, {})

    def upsert(self, name: str, points: list[dict]) -> None:
        self._enter("upsert")
        for p in points:
            self.points[name][p["id"]] = p

    def search(self, name, vector, limit, score_threshold=None) -> list[VectorHit]:
        self._enter("search")
        hits = [
            VectorHit(id=pid, score=self.search_scores.get(pid, 0.9), payload=p.get("payload", {}))
            for pid, p in self.points.get(name, {}).items()
        ]
        if score_threshold is not None:
            hits = [h for h in hits if h.score >= score_threshold]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def delete(self, name: str, ids: list[str]) -> None:
        self._enter("delete")
        for i in ids:
            self.points.get(name, {}).pop(i, None)

    def close(self) -> None:
        self.closed = True


def unavailable() -> RemoteBackendError:
    return RemoteBackendError.connection_failed("http://vector.test:6333")


def no_sleep(seconds: float) -> None:
    pass


def make_record(id: str, prompt: str, result: str = "", **kwargs) -> Record:
    return Record(id=id, prompt_text=prompt, result_text=result or None, **kwargs)


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def fake_backend():
    return FakeVectorBackend()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fast_retry():
    """Retry policy that never sleeps."""
    return RetryOptions(max_attempts=3, initial_delay=0.01, sleep=no_sleep, log_retries=False)


@pytest.fixture
def data_dir(tmp_path, monkeypatch) -> Path:
    """Isolated data directory; error logs land here too."""
    d = tmp_path / "recall-data"
    d.mkdir()
    monkeypatch.setenv("RECALL_DATA_DIR", str(d))
    for var in ("RECALL_QDRANT_URL", "RECALL_QDRANT_API_KEY", "RECALL_EMBEDDING_PROVIDER"):
        monkeypatch.delenv(var, raising=False)
    return d


@pytest.fixture
def store(data_dir):
    s = RecordStore(data_dir / "recall.db")
    yield s
    s.close()


@pytest.fixture
def make_engine(store, mock_embedding_provider, fast_retry, fake_clock):
    """
    Factory for engines over the shared store.

    Pass ``backend=None`` for a local-only engine.
    """
    engines = []

    def _make(backend=None, **kwargs) -> RetrievalEngine:
        kwargs.setdefault("retry_options", fast_retry)
        kwargs.setdefault("breaker", CircuitBreaker("vector-backend", clock=fake_clock))
        kwargs.setdefault("error_handler", ErrorHandler())
        engine = RetrievalEngine(store, mock_embedding_provider, backend, **kwargs)
        engine.initialize()
        engines.append(engine)
        return engine

    return _make
