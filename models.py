"""Shared data models for project-memory-mcp."""

import json
from functools import lru_cache
from typing import Any

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, Field

ROW_COLUMNS = ["id", "project_id", "category", "content", "metadata", "created_at"]


@lru_cache(maxsize=None)
def memory_model(dimension: int) -> type[LanceModel]:
    """Memory table schema for LanceDB at a given embedding dimension.

    IMPORTANT: Any change to the schema or the dimension requires migration of
    existing data. The store refuses to open a table whose vector column was
    created with a different dimension.
    """

    class Memory(LanceModel):
        id: str  # UUID hex, generated on insert
        project_id: str
        category: str
        content: str
        vector: Vector(dimension)  # type: ignore[valid-type]
        metadata: str  # JSON object as string, opaque to the store
        created_at: str  # UTC ISO-8601, microsecond precision

    return Memory


class MemoryRecord(BaseModel):
    """A stored memory as seen by callers. Never carries the raw vector."""

    id: str
    project_id: str
    category: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MemoryRecord":
        raw = row.get("metadata") or "{}"
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            category=row["category"],
            content=row["content"],
            metadata=json.loads(raw) if isinstance(raw, str) else raw,
            created_at=row["created_at"],
        )

    def to_result(self) -> dict[str, Any]:
        """Listing shape returned over RPC."""
        return {
            "id": self.id,
            "category": self.category,
            "content": self.content,
            "created_at": self.created_at,
            "metadata": self.metadata,
        }


class SearchResult(BaseModel):
    """A memory paired with its cosine similarity to the query."""

    memory: MemoryRecord
    similarity: float  # 1 - cosine distance, in [-1, 1]

    def to_result(self) -> dict[str, Any]:
        return {
            "id": self.memory.id,
            "content": self.memory.content,
            "category": self.memory.category,
            "created_at": self.memory.created_at,
            "similarity": self.similarity,
            "metadata": self.memory.metadata,
        }
