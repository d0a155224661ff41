#!/usr/bin/env python3
"""
Project Memory MCP Server - LanceDB Vector Search Implementation

Provides project-scoped persistent memory with semantic search using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB for vector storage with cosine similarity search
- Ollama/qwen3-embedding for local embeddings (1024-dim), Google Gemini as an alternative
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Any

from mcp.server.fastmcp import FastMCP

from config import Config
from embeddings import EmbeddingProvider
from errors import ConfigurationError, MemoryServiceError, StorageError
from service import MemoryService, open_service
from store import VectorStore

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Memory not found or access denied"

# =============================================================================
# Service (initialized once at startup)
# =============================================================================

_service: MemoryService | None = None


async def init_service(
    config: Config, embedder: EmbeddingProvider | None = None
) -> MemoryService:
    """Connect the store, provisioning the table if needed, and install the service."""
    global _service
    _service = await open_service(config, embedder=embedder, create=True)
    logger.info(
        "Memory service ready (table=%s, provider=%s, %d-dim)",
        config.table_name,
        _service.embedder.name,
        config.embedding_dim,
    )
    return _service


def get_service() -> MemoryService:
    if _service is None:
        raise StorageError("Memory service not initialized")
    return _service


def _failure(operation: str, error: MemoryServiceError) -> dict[str, Any]:
    logger.warning("%s failed: %s", operation, error)
    return {"success": False, "error": str(error)}


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "project-memory",
    instructions="Project-scoped semantic memory: store short notes and recall the closest ones by vector similarity",
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def store_memory(
    content: str,
    category: str,
    project_id: str,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Store a memory with a semantic embedding.

    Args:
        content: The text content to remember
        category: Category (e.g., 'tech_stack', 'decision', 'snippet')
        project_id: Unique identifier for the project
        metadata: Optional metadata, returned as-is
    """
    try:
        memory_id = await get_service().store_memory(content, category, project_id, metadata)
    except MemoryServiceError as e:
        return _failure("store_memory", e)
    return {
        "success": True,
        "message": "Memory stored successfully",
        "memory_id": memory_id,
        "project_id": project_id,
    }


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def search_memories(
    query: str,
    project_id: str,
    category: str | None = None,
    limit: int = 5,
    similarity_threshold: float = 0.5,
) -> dict[str, Any]:
    """Semantic search within one project, closest memories first.

    Args:
        query: The semantic query to search for
        project_id: Filter by project ID
        category: Optional exact-match category filter
        limit: Max results (1-50, default 5)
        similarity_threshold: Minimum similarity a result must exceed (0-1, default 0.5)
    """
    try:
        results = await get_service().search(
            query, project_id, category, limit=limit, threshold=similarity_threshold
        )
    except MemoryServiceError as e:
        return _failure("search_memories", e)
    return {"success": True, "results": [r.to_result() for r in results]}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def list_memories(
    project_id: str,
    category: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict[str, Any]:
    """List a project's memories, most recent first.

    Args:
        project_id: Project to list
        category: Optional exact-match category filter
        limit: Page size (default 20)
        offset: Number of memories to skip (default 0)
    """
    try:
        memories = await get_service().list(project_id, category, limit=limit, offset=offset)
    except MemoryServiceError as e:
        return _failure("list_memories", e)
    return {"success": True, "memories": [m.to_result() for m in memories]}


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def delete_memory(memory_id: str, project_id: str) -> dict[str, Any]:
    """Delete a memory by ID.

    Args:
        memory_id: The full ID of the memory to delete
        project_id: Project that owns the memory
    """
    try:
        deleted = await get_service().delete(memory_id, project_id)
    except MemoryServiceError as e:
        return _failure("delete_memory", e)
    if not deleted:
        return {"success": False, "memory_id": memory_id, "message": NOT_FOUND_MESSAGE}
    return {"success": True, "memory_id": memory_id, "message": "Memory deleted"}


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_project_stats(project_id: str) -> dict[str, Any]:
    """Get the number of memories stored for a project."""
    try:
        stats = await get_service().stats(project_id)
    except MemoryServiceError as e:
        return _failure("get_project_stats", e)
    return {"success": True, "project_id": project_id, **stats}


# =============================================================================
# Connection Check
# =============================================================================


async def check_connection(config: Config) -> int:
    """Check the backend without provisioning anything. Returns a process exit code."""
    store = VectorStore(config.connection_string, config.embedding_dim, config.table_name)
    print(f"Checking {config.connection_string} ...")
    try:
        await store.connect(create=False)
        if not await store.table_exists():
            print(f"Connected, but table '{config.table_name}' is missing. Run the server once to create it.")
            return 0
        total = await store.count_all()
    except StorageError as e:
        print(f"Connection failed: {e}")
        return 1
    finally:
        store.close()
    print(f"Connection successful: {total} memories in '{config.table_name}'")
    return 0


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server(config: Config) -> None:
    """Run the MCP server after connecting the memory service."""
    await init_service(config)
    await mcp.run_stdio_async()


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    parser = argparse.ArgumentParser(description="Project-scoped semantic memory MCP server")
    parser.add_argument(
        "command",
        nargs="?",
        choices=("serve", "check"),
        default="serve",
        help="serve: run the stdio MCP server (default); check: test the database connection",
    )
    args = parser.parse_args(argv)

    # stdout carries the MCP protocol; logs go to stderr
    logging.basicConfig(
        level=os.environ.get("MEMORY_LOG_LEVEL", "INFO").upper(),
        stream=sys.stderr,
        format="[memory-mcp] %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        print(f"{e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "check":
        sys.exit(asyncio.run(check_connection(config)))

    try:
        asyncio.run(run_server(config))
    except MemoryServiceError as e:
        logger.error("Failed to start MCP server: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
