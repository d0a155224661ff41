"""
Shared pytest fixtures for project-memory-mcp.

Tests run against a real LanceDB table under tmp_path with a deterministic
4-dimensional embedding provider, so no model or network is needed.
"""

import math
from typing import Sequence

import pytest

from config import Config
from embeddings import EmbeddingProvider
from service import MemoryService
from store import VectorStore

DIM = 4


def vector_at(similarity: float) -> list[float]:
    """Unit vector whose cosine similarity to QUERY_VECTOR is ``similarity``."""
    return [similarity, math.sqrt(1 - similarity**2), 0.0, 0.0]


QUERY_VECTOR = [1.0, 0.0, 0.0, 0.0]

VECTORS = {
    "query": QUERY_VECTOR,
    "close": vector_at(0.9),
    "medium": vector_at(0.6),
    "far": vector_at(0.3),
    "orthogonal": [0.0, 0.0, 1.0, 0.0],
    "opposite": [-1.0, 0.0, 0.0, 0.0],
    "zero": [0.0, 0.0, 0.0, 0.0],
    "short": [1.0, 0.0, 0.0],
}


class FakeEmbedder(EmbeddingProvider):
    """Looks texts up in a fixed table; unknown text means the model is unavailable."""

    name = "fake"

    def __init__(self, vectors: dict[str, Sequence[float]], dimension: int = DIM):
        super().__init__(dimension)
        self.vectors = dict(vectors)
        self.calls: list[str] = []

    def _embed_sync(self, text: str) -> Sequence[float]:
        self.calls.append(text)
        if text not in self.vectors:
            raise RuntimeError(f"model unavailable for {text!r}")
        return self.vectors[text]


@pytest.fixture
def db_uri(tmp_path) -> str:
    return str(tmp_path / "lancedb-memory-test")


@pytest.fixture
def config(db_uri) -> Config:
    return Config(connection_string=db_uri, embedding_provider="hash", embedding_dim=DIM)


@pytest.fixture
async def store(db_uri):
    store = VectorStore(db_uri, dimension=DIM)
    await store.connect()
    yield store
    store.close()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder(VECTORS)


@pytest.fixture
def service(store, embedder) -> MemoryService:
    return MemoryService(store, embedder)
