"""
Memory Service - validation and embedding orchestration over the vector store.

Each operation is validate -> [embed] -> one store call. The service keeps no
state between calls and no copies of stored rows.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

from config import Config
from embeddings import EmbeddingProvider, create_provider
from errors import StorageError, ValidationError
from models import MemoryRecord, SearchResult
from store import VectorStore

logger = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 50


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required and must be a non-empty string")
    return value


def _optional_category(category: str | None) -> str | None:
    if category is None or category == "":
        return None
    if not isinstance(category, str):
        raise ValidationError("category must be a string")
    return category


def _require_int(name: str, value: Any, minimum: int, maximum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"[{minimum}, {maximum}]" if maximum is not None else f">= {minimum}"
        raise ValidationError(f"{name} must be {bound}, got {value}")
    return value


def _require_threshold(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"similarity_threshold must be a number, got {value!r}")
    threshold = float(value)
    if math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
        raise ValidationError(f"similarity_threshold must be in [0, 1], got {value}")
    return threshold


def _check_metadata(metadata: Any) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be a JSON object")
    try:
        json.dumps(metadata)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"metadata is not JSON serializable: {e}") from e
    return metadata


class MemoryService:
    """Project-scoped memory operations."""

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        default_limit: int = 5,
        default_threshold: float = 0.5,
        default_list_limit: int = 20,
    ):
        self.store = store
        self.embedder = embedder
        self.default_limit = default_limit
        self.default_threshold = default_threshold
        self.default_list_limit = default_list_limit

    async def store_memory(
        self,
        content: str,
        category: str,
        project_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Embed ``content`` and persist it. Nothing is written if embedding fails."""
        _require_text("content", content)
        _require_text("category", category)
        _require_text("project_id", project_id)
        metadata = _check_metadata(metadata)

        embedding = await self.embedder.embed(content)
        memory_id = await self.store.insert(project_id, category, content, embedding, metadata)
        logger.info("Stored memory %s (project=%s, category=%s)", memory_id[:8], project_id, category)
        return memory_id

    async def search(
        self,
        query: str,
        project_id: str,
        category: str | None = None,
        limit: int | None = None,
        threshold: float | None = None,
    ) -> list[SearchResult]:
        """Semantic search within one project, closest first."""
        _require_text("query", query)
        _require_text("project_id", project_id)
        category = _optional_category(category)
        limit = _require_int(
            "limit", self.default_limit if limit is None else limit, MIN_LIMIT, MAX_LIMIT
        )
        threshold = _require_threshold(self.default_threshold if threshold is None else threshold)

        embedding = await self.embedder.embed(query)
        return await self.store.similarity_search(embedding, project_id, category, limit, threshold)

    async def list(
        self,
        project_id: str,
        category: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MemoryRecord]:
        """Most recent memories first, paginated by ``limit``/``offset``."""
        _require_text("project_id", project_id)
        category = _optional_category(category)
        limit = _require_int("limit", self.default_list_limit if limit is None else limit, MIN_LIMIT)
        offset = _require_int("offset", offset, 0)
        return await self.store.list(project_id, category, limit, offset)

    async def delete(self, memory_id: str, project_id: str) -> bool:
        """Delete a memory. ``False`` covers both "absent" and "owned by another project"."""
        _require_text("memory_id", memory_id)
        _require_text("project_id", project_id)
        deleted = await self.store.delete_by_id(memory_id, project_id)
        if deleted:
            logger.info("Deleted memory %s (project=%s)", memory_id[:8], project_id)
        return deleted > 0

    async def stats(self, project_id: str) -> dict[str, int]:
        _require_text("project_id", project_id)
        return {"total_memories": await self.store.count_by_project(project_id)}


async def open_service(
    config: Config,
    embedder: EmbeddingProvider | None = None,
    create: bool = True,
) -> MemoryService:
    """Connect the store and pair it with an embedding provider.

    Raises:
        StorageError: backend unreachable, or the provider's dimension differs
            from the store's.
    """
    embedder = embedder or create_provider(config)
    if embedder.dimension != config.embedding_dim:
        raise StorageError(
            f"Embedding provider '{embedder.name}' declares {embedder.dimension} dimensions "
            f"but the store is configured for {config.embedding_dim}"
        )
    store = VectorStore(
        config.connection_string,
        dimension=config.embedding_dim,
        table_name=config.table_name,
        max_concurrency=config.pool_size,
    )
    await store.connect(create=create)
    return MemoryService(
        store,
        embedder,
        default_limit=config.default_limit,
        default_threshold=config.default_threshold,
        default_list_limit=config.default_list_limit,
    )
