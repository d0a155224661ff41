"""
Embedding providers - text to fixed-length unit vectors.

Providers declare their output dimension up front; the vector store checks it
against the table schema. Vectors are never padded or truncated here, so a model
change that alters the dimension surfaces as a storage error instead of silently
producing incomparable vectors.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import numpy as np
import requests

from config import Config
from errors import ConfigurationError, EmbeddingError

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

logger = logging.getLogger(__name__)

CACHE_SIZE = 128


def normalize_vector(values: Sequence[float], source: str) -> list[float]:
    """Validate a raw embedding and scale it to unit length.

    Raises:
        EmbeddingError: empty, non-finite, or zero-norm vector.
    """
    try:
        vector = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"{source} returned a non-numeric embedding: {e}") from e
    if vector.ndim != 1 or vector.size == 0:
        raise EmbeddingError(f"{source} returned an empty embedding")
    if not np.all(np.isfinite(vector)):
        raise EmbeddingError(f"{source} returned non-finite embedding values")
    norm = np.linalg.norm(vector)
    if norm == 0:
        raise EmbeddingError(f"{source} returned a zero vector")
    return (vector / norm).tolist()


class EmbeddingProvider(ABC):
    """Capability interface: ``embed(text) -> vector`` with a declared dimension."""

    name = "embedding"

    def __init__(self, dimension: int):
        self._dimension = dimension
        self._cached = lru_cache(maxsize=CACHE_SIZE)(self._embed_normalized)

    @property
    def dimension(self) -> int:
        return self._dimension

    @abstractmethod
    def _embed_sync(self, text: str) -> Sequence[float]:
        """Blocking call to the underlying model. May raise anything."""

    def _embed_normalized(self, text: str) -> tuple[float, ...]:
        try:
            raw = self._embed_sync(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"{self.name} embedding failed: {e}") from e
        return tuple(normalize_vector(raw, self.name))

    async def embed(self, text: str) -> list[float]:
        """Embed ``text`` off the event loop. Identical text hits an LRU cache."""
        try:
            return list(await asyncio.to_thread(self._cached, text))
        except EmbeddingError as e:
            logger.warning("%s", e)
            raise


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Local embeddings from an Ollama server."""

    name = "ollama"

    def __init__(self, model: str, dimension: int, base_url: str, timeout: float = 30):
        super().__init__(dimension)
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _embed_sync(self, text: str) -> Sequence[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json().get("embedding", [])


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise ConfigurationError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


class GoogleEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the Google GenAI API."""

    name = "google"

    def __init__(self, model: str, dimension: int, task_type: str = "SEMANTIC_SIMILARITY"):
        super().__init__(dimension)
        self.model = model
        self.task_type = task_type
        self._client: GenAIClient | None = None

    def _get_client(self) -> GenAIClient:
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=_get_api_key())
        return self._client

    def _embed_sync(self, text: str) -> Sequence[float]:
        from google.genai import types

        response = self._get_client().models.embed_content(
            model=self.model,
            contents=text,
            config=types.EmbedContentConfig(
                task_type=self.task_type, output_dimensionality=self.dimension
            ),
        )
        return response.embeddings[0].values


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic hash-based vectors for offline use.

    Not real semantic meaning: only identical text is similar. Selected
    explicitly with EMBEDDING_PROVIDER=hash, never as a fallback.
    """

    name = "hash"

    def _embed_sync(self, text: str) -> Sequence[float]:
        data = bytearray()
        counter = 0
        while len(data) < self.dimension:
            data.extend(hashlib.sha256(f"{counter}:{text}".encode()).digest())
            counter += 1
        return [(b - 128) / 128.0 for b in data[: self.dimension]]


def create_provider(config: Config) -> EmbeddingProvider:
    """Build the embedding provider named by ``config.embedding_provider``."""
    provider = config.embedding_provider.lower()
    if provider == "ollama":
        return OllamaEmbeddingProvider(
            config.embedding_model, config.embedding_dim, config.ollama_base_url
        )
    if provider == "google":
        return GoogleEmbeddingProvider(config.embedding_model, config.embedding_dim)
    if provider == "hash":
        return HashEmbeddingProvider(config.embedding_dim)
    raise ConfigurationError(f"Unknown embedding provider '{config.embedding_provider}'")
