"""Shared fixtures: a deterministic embedder, fragment factory, and a backend that can go down."""

import hashlib
import math
import socket
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from hindsight.config import HindsightConfig
from hindsight.models import Fragment
from hindsight.storage.memory import InMemoryStorageAdapter

DIMENSION = 8
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeEmbedding:
    """
    Deterministic bag-of-words embedder.

    Each word is hashed into one of ``dimension`` buckets, so texts sharing
    words point in similar directions. ``vectors`` pins exact outputs for
    specific texts.
    """

    def __init__(self, dimension: int = DIMENSION, vectors: Optional[Dict[str, List[float]]] = None):
        self._dimension = dimension
        self.vectors = dict(vectors or {})
        self.calls: List[str] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return "fake-bag-of-words"

    def _vector(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        vector = [0.0] * self._dimension
        for word in text.lower().split():
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self._dimension
            vector[bucket] += 1.0
        if not any(vector):
            vector[0] = 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]

    async def embed_document(self, text: str) -> List[float]:
        self.calls.append(text)
        return self._vector(text)

    async def embed_query(self, text: str) -> List[float]:
        self.calls.append(text)
        return self._vector(text)

    async def embed_documents(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        return [await self.embed_document(text) for text in texts]


class FlakyStorageAdapter(InMemoryStorageAdapter):
    """In-memory adapter whose backend can be switched off to simulate an outage."""

    def __init__(self, dimension: Optional[int] = None):
        super().__init__(dimension=dimension)
        self.available = True

    def _check(self):
        if not self.available:
            raise ConnectionError("backend unreachable")

    def is_available(self) -> bool:
        return self.available

    def write(self, fragment):
        self._check()
        super().write(fragment)

    def bulk_write(self, fragments):
        self._check()
        return super().bulk_write(fragments)

    def read(self, fragment_id):
        self._check()
        return super().read(fragment_id)

    def bulk_read(self, fragment_ids):
        self._check()
        return super().bulk_read(fragment_ids)

    def delete(self, fragment_id):
        self._check()
        return super().delete(fragment_id)

    def query(self, filters=None):
        self._check()
        return super().query(filters)

    def count(self, filters=None):
        self._check()
        return super().count(filters)

    def search_by_vector(self, embedding, top_k, filters=None):
        self._check()
        return super().search_by_vector(embedding, top_k, filters)


def unit(*components: float) -> List[float]:
    """Pad to DIMENSION with zeros."""
    values = list(components) + [0.0] * (DIMENSION - len(components))
    return values[:DIMENSION]


def vector_with_similarity(similarity: float, axis: int = 0, other: int = 1) -> List[float]:
    """A unit vector whose cosine similarity with basis vector ``axis`` is exactly ``similarity``."""
    vector = [0.0] * DIMENSION
    vector[axis] = similarity
    vector[other] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vector


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def config() -> HindsightConfig:
    return HindsightConfig(
        embedding_dimension=DIMENSION,
        similarity_threshold=0.0,
        cross_agent_threshold=0.5,
        retry_max_attempts=2,
        retry_base_delay_seconds=0.001,
        retry_max_delay_seconds=0.002,
        embedding_timeout_seconds=0.5,
    )


@pytest.fixture
def fake_embedding() -> FakeEmbedding:
    return FakeEmbedding()


@pytest.fixture
def memory_adapter() -> InMemoryStorageAdapter:
    return InMemoryStorageAdapter(dimension=DIMENSION)


@pytest.fixture
def flaky_adapter() -> FlakyStorageAdapter:
    return FlakyStorageAdapter(dimension=DIMENSION)


@pytest.fixture
def make_fragment():
    """Factory for fragments with sensible defaults, all created at NOW."""
    counter = {"n": 0}

    def _make(**overrides) -> Fragment:
        counter["n"] += 1
        values = dict(
            id=f"frag-{counter['n']:03d}",
            namespace="p1:a1",
            kind="episodic",
            content=f"memory number {counter['n']}",
            embedding=unit(1.0),
            agent_id="a1",
            project_id="p1",
            tags=["a1"],
            created_at=NOW,
            updated_at=NOW,
        )
        if "namespace" in overrides:
            project_id, agent_id = overrides["namespace"].split(":", 1)
            values.update(project_id=project_id, agent_id=agent_id, tags=[agent_id])
        values.update(overrides)
        return Fragment(**values)

    return _make


@pytest.fixture
def days_ago():
    return lambda days: NOW - timedelta(days=days)


@pytest.fixture
def vec():
    """Build a DIMENSION-length vector from leading components."""
    return unit


@pytest.fixture
def vec_at_similarity():
    """Build a unit vector at an exact cosine similarity to a basis axis."""
    return vector_with_similarity


def is_service_available(host: str, port: int) -> bool:
    """Check if a service is listening at host:port."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(2)
            return sock.connect_ex((host, port)) == 0
    except OSError:
        return False


@pytest.fixture
def skip_if_no_qdrant():
    """Skip test if Qdrant is not available."""
    if not is_service_available("localhost", 6333):
        pytest.skip("Qdrant not available at localhost:6333")
