"""
Vector Store - LanceDB table of memories with cosine similarity search.

Every call runs the blocking LanceDB work in a worker thread while holding one
slot of a bounded pool, so no operation stalls the event loop and excess callers
queue instead of failing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

import lancedb
import pyarrow as pa
from lancedb.index import BTree, HnswSq

from errors import StorageError
from models import ROW_COLUMNS, MemoryRecord, SearchResult, memory_model

logger = logging.getLogger(__name__)

SCALAR_INDEX_COLUMNS = ("project_id", "category")
VECTOR_INDEX_MIN_ROWS = 256
CANDIDATE_FACTOR = 3  # over-fetch so ties at the limit boundary resolve deterministically
REFINE_FACTOR = 10  # re-rank index candidates on full vectors so distances are exact


def _escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def _scope_filter(project_id: str, category: str | None = None) -> str:
    filters = [f"project_id = '{_escape_filter_value(project_id)}'"]
    if category:
        filters.append(f"category = '{_escape_filter_value(category)}'")
    return " AND ".join(filters)


def _table_names(db: lancedb.DBConnection) -> list[str]:
    return list(db.list_tables().tables)


def now_iso() -> str:
    """Current UTC timestamp; fixed microsecond precision keeps it sortable as text."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def similarity_from_distance(distance: float) -> float:
    """Cosine similarity from cosine distance, clamped to [-1, 1]. NaN stays NaN."""
    similarity = 1.0 - float(distance)
    if math.isnan(similarity):
        return similarity
    return max(-1.0, min(1.0, similarity))


class VectorStore:
    """LanceDB-backed store for memory rows.

    Args:
        uri: LanceDB connection string (local path, ``s3://...``, ``db://...``).
        dimension: Embedding dimension every stored and query vector must have.
        table_name: Name of the memories table.
        max_concurrency: Upper bound on in-flight store calls; extra calls wait.
    """

    def __init__(
        self,
        uri: str,
        dimension: int,
        table_name: str = "memories",
        max_concurrency: int = 10,
    ):
        self.uri = uri
        self.dimension = dimension
        self.table_name = table_name
        self._schema = memory_model(dimension)
        self._slots = asyncio.Semaphore(max_concurrency)
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._slots:
            try:
                return await asyncio.to_thread(fn, *args)
            except StorageError:
                raise
            except Exception as e:
                raise StorageError(f"{fn.__name__.strip('_')} on '{self.table_name}' failed: {e}") from e

    def _require_db(self) -> lancedb.DBConnection:
        if self._db is None:
            raise StorageError("Vector store is not connected. Call connect() first.")
        return self._db

    def _require_table(self) -> lancedb.table.Table:
        self._require_db()
        if self._table is None:
            raise StorageError(
                f"Table '{self.table_name}' does not exist at {self.uri}; "
                "start the server once to provision it"
            )
        return self._table

    def _checked_vector(self, embedding: Sequence[float]) -> list[float]:
        vector = [float(v) for v in embedding]
        if len(vector) != self.dimension:
            raise StorageError(
                f"Embedding dimension {len(vector)} does not match table dimension "
                f"{self.dimension}. The embedding model changed; stored memories must be migrated."
            )
        return vector

    def _check_dimension(self, table: lancedb.table.Table) -> None:
        vector_type = table.schema.field("vector").type
        stored = vector_type.list_size if pa.types.is_fixed_size_list(vector_type) else None
        if stored != self.dimension:
            raise StorageError(
                f"Table '{self.table_name}' stores {stored}-dim vectors but the embedding "
                f"provider produces {self.dimension}-dim vectors. Migrate the table or "
                "restore the previous embedding model."
            )

    # -------------------------------------------------------------------------
    # Connection & schema
    # -------------------------------------------------------------------------

    async def connect(self, create: bool = True) -> None:
        """Open the database and the memories table.

        A missing table is created when ``create`` is true. Otherwise the store
        stays connected without a table and every row operation raises
        ``StorageError``.
        """
        await self._run(self._connect, create)

    def _connect(self, create: bool) -> None:
        self._db = lancedb.connect(self.uri)
        if self.table_name in _table_names(self._db):
            table = self._db.open_table(self.table_name)
        elif create:
            table = self._db.create_table(self.table_name, schema=self._schema, exist_ok=True)
            logger.info("Created table '%s' (%d-dim vectors)", self.table_name, self.dimension)
        else:
            logger.warning("Connected to %s, but table '%s' is missing", self.uri, self.table_name)
            self._table = None
            return
        self._check_dimension(table)
        self._table = table
        if create:
            self._ensure_indexes(table)

    def _ensure_indexes(self, table: lancedb.table.Table) -> None:
        try:
            indexed = {col for idx in table.list_indices() for col in getattr(idx, "columns", [])}
        except Exception as e:
            logger.warning("Could not list indices: %s", e)
            indexed = set()

        for column in SCALAR_INDEX_COLUMNS:
            if column in indexed:
                continue
            try:
                table.create_index(column, config=BTree())
                logger.info("Scalar index created on '%s'", column)
            except Exception as e:
                logger.warning("Scalar index on '%s' not created: %s", column, e)

        if "vector" in indexed:
            return
        row_count = table.count_rows()
        if row_count < VECTOR_INDEX_MIN_ROWS:
            logger.info("Using flat vector search (%d rows)", row_count)
            return
        try:
            table.create_index("vector", config=HnswSq(distance_type="cosine"), replace=True)
            logger.info("Cosine vector index created over %d rows", row_count)
        except Exception as e:
            logger.warning("Vector index not created: %s", e)

    async def table_exists(self) -> bool:
        """Whether the memories table has been provisioned."""
        return await self._run(self._table_exists)

    def _table_exists(self) -> bool:
        return self.table_name in _table_names(self._require_db())

    def close(self) -> None:
        self._table = None
        self._db = None

    # -------------------------------------------------------------------------
    # Row operations
    # -------------------------------------------------------------------------

    async def insert(
        self,
        project_id: str,
        category: str,
        content: str,
        embedding: Sequence[float],
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Append a new memory row and return its generated id."""
        vector = self._checked_vector(embedding)
        try:
            metadata_json = json.dumps(metadata or {})
        except (TypeError, ValueError) as e:
            raise StorageError(f"metadata is not JSON serializable: {e}") from e
        row = {
            "id": uuid.uuid4().hex,
            "project_id": project_id,
            "category": category,
            "content": content,
            "vector": vector,
            "metadata": metadata_json,
            "created_at": now_iso(),
        }
        await self._run(self._add, row)
        return row["id"]

    def _add(self, row: dict[str, Any]) -> None:
        self._require_table().add([self._schema(**row).model_dump()])

    async def similarity_search(
        self,
        query_embedding: Sequence[float],
        project_id: str,
        category: str | None = None,
        limit: int = 5,
        threshold: float = 0.5,
    ) -> list[SearchResult]:
        """Closest memories in the project whose similarity strictly exceeds ``threshold``.

        Ordered by similarity descending, ties by insertion order.
        """
        vector = self._checked_vector(query_embedding)
        filter_expr = _scope_filter(project_id, category)
        fetch_limit = limit * CANDIDATE_FACTOR
        while True:
            rows = await self._run(self._search, vector, filter_expr, fetch_limit)
            if len(rows) < fetch_limit or rows[-1]["_distance"] > rows[limit - 1]["_distance"]:
                break
            # The last candidate ties with the limit boundary; widen until the tie group ends.
            fetch_limit *= 2
        results = []
        for row in rows:
            similarity = similarity_from_distance(row["_distance"])
            if similarity > threshold:
                results.append(SearchResult(memory=MemoryRecord.from_row(row), similarity=similarity))
        results.sort(key=lambda r: (-r.similarity, r.memory.created_at, r.memory.id))
        return results[:limit]

    def _search(self, vector: list[float], filter_expr: str, fetch_limit: int) -> list[dict]:
        return (
            self._require_table()
            .search(vector)
            .distance_type("cosine")
            .refine_factor(REFINE_FACTOR)
            .where(filter_expr, prefilter=True)
            .select(ROW_COLUMNS)
            .limit(fetch_limit)
            .to_list()
        )

    async def delete_by_id(self, memory_id: str, project_id: str) -> int:
        """Delete one memory if it belongs to ``project_id``. Returns rows deleted (0 or 1)."""
        filter_expr = (
            f"id = '{_escape_filter_value(memory_id)}' AND "
            f"project_id = '{_escape_filter_value(project_id)}'"
        )
        return await self._run(self._delete, filter_expr)

    def _delete(self, filter_expr: str) -> int:
        table = self._require_table()
        matched = table.count_rows(filter_expr)
        if matched:
            table.delete(filter_expr)
        return matched

    async def count_by_project(self, project_id: str, category: str | None = None) -> int:
        return await self._run(self._count, _scope_filter(project_id, category))

    async def count_all(self) -> int:
        return await self._run(self._count, None)

    def _count(self, filter_expr: str | None) -> int:
        return self._require_table().count_rows(filter_expr)

    async def list(
        self,
        project_id: str,
        category: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[MemoryRecord]:
        """Memories in the project, most recent first, skipping ``offset`` rows."""
        rows = await self._run(self._scan, _scope_filter(project_id, category))
        records = sorted(
            (MemoryRecord.from_row(row) for row in rows),
            key=lambda m: (m.created_at, m.id),
            reverse=True,
        )
        return records[offset : offset + limit]

    def _scan(self, filter_expr: str) -> list[dict]:
        # LanceDB has no ORDER BY; fetch the filtered rows and sort in Python.
        table = self._require_table()
        total = table.count_rows(filter_expr)
        if total == 0:
            return []
        return table.search().where(filter_expr).select(ROW_COLUMNS).limit(total).to_list()
