#!/usr/bin/env python3
"""
Test suite for the Project Memory MCP Server tools.

Run with: pytest test_server.py -v
"""

import asyncio

import pytest

import server as server_module
from conftest import DIM, VECTORS, FakeEmbedder
from server import (
    NOT_FOUND_MESSAGE,
    check_connection,
    delete_memory,
    get_project_stats,
    init_service,
    list_memories,
    search_memories,
    store_memory,
)
from store import VectorStore


@pytest.fixture(autouse=True)
async def setup_service(config):
    """Initialize an isolated service per test."""
    await init_service(config, embedder=FakeEmbedder(VECTORS))
    yield
    server_module._service = None


async def save(content="close", category="note", project_id="proj", metadata=None):
    result = await store_memory(
        content=content, category=category, project_id=project_id, metadata=metadata
    )
    assert result["success"], result
    return result["memory_id"]


# =============================================================================
# Core Tool Tests
# =============================================================================


class TestStoreMemory:
    async def test_store_basic(self):
        result = await store_memory(content="close", category="decision", project_id="proj")

        assert result["success"] is True
        assert result["project_id"] == "proj"
        assert len(result["memory_id"]) == 32

    async def test_store_empty_content_fails(self):
        result = await store_memory(content="", category="note", project_id="proj")

        assert result == {
            "success": False,
            "error": "ValidationError: content is required and must be a non-empty string",
        }

    async def test_store_embedding_failure_persists_nothing(self):
        result = await store_memory(content="unknown text", category="note", project_id="proj")

        assert result["success"] is False
        assert result["error"].startswith("EmbeddingError")
        assert (await get_project_stats(project_id="proj"))["total_memories"] == 0


class TestSearchMemories:
    async def test_search_ranked_results(self):
        medium = await save("medium")
        close = await save("close", metadata={"pr": 42})
        await save("far")

        result = await search_memories(query="query", project_id="proj")

        assert result["success"] is True
        assert [r["id"] for r in result["results"]] == [close, medium]
        first = result["results"][0]
        assert set(first) == {"id", "content", "category", "created_at", "similarity", "metadata"}
        assert first["similarity"] == pytest.approx(0.9, abs=1e-4)
        assert first["metadata"] == {"pr": 42}

    async def test_search_threshold_one_is_empty(self):
        await save("query")
        result = await search_memories(query="query", project_id="proj", similarity_threshold=1.0)
        assert result == {"success": True, "results": []}

    async def test_search_other_project_is_empty(self):
        await save("query", project_id="p1")
        result = await search_memories(query="query", project_id="p2", similarity_threshold=0.0)
        assert result["results"] == []

    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"limit": 51}, {"similarity_threshold": 1.5}])
    async def test_search_rejects_out_of_range(self, kwargs):
        result = await search_memories(query="query", project_id="proj", **kwargs)

        assert result["success"] is False
        assert result["error"].startswith("ValidationError")


class TestListMemories:
    async def test_list_shape_and_order(self):
        first = await save("medium", category="decision")
        second = await save("close", category="snippet")

        result = await list_memories(project_id="proj")

        assert result["success"] is True
        assert [m["id"] for m in result["memories"]] == [second, first]
        assert set(result["memories"][0]) == {"id", "category", "content", "created_at", "metadata"}

    async def test_list_pagination(self):
        ids = [await save(text) for text in ("close", "medium", "far", "query")]

        page1 = await list_memories(project_id="proj", limit=2, offset=0)
        page2 = await list_memories(project_id="proj", limit=2, offset=2)

        assert [m["id"] for m in page1["memories"]] == ids[::-1][:2]
        assert [m["id"] for m in page2["memories"]] == ids[::-1][2:]

    async def test_list_category_filter(self):
        await save("close", category="decision")
        await save("medium", category="snippet")

        result = await list_memories(project_id="proj", category="snippet")

        assert [m["content"] for m in result["memories"]] == ["medium"]


class TestDeleteMemory:
    async def test_delete_existing(self):
        memory_id = await save()
        result = await delete_memory(memory_id=memory_id, project_id="proj")
        assert result == {"success": True, "memory_id": memory_id, "message": "Memory deleted"}

    async def test_missing_and_foreign_are_indistinguishable(self):
        memory_id = await save(project_id="owner")
        missing_id = "f" * 32

        foreign = await delete_memory(memory_id=memory_id, project_id="intruder")
        missing = await delete_memory(memory_id=missing_id, project_id="intruder")

        assert foreign == {"success": False, "memory_id": memory_id, "message": NOT_FOUND_MESSAGE}
        assert missing == {"success": False, "memory_id": missing_id, "message": NOT_FOUND_MESSAGE}
        assert (await get_project_stats(project_id="owner"))["total_memories"] == 1


class TestProjectStats:
    async def test_stats_follow_store_and_delete(self):
        assert await get_project_stats(project_id="proj") == {
            "success": True,
            "project_id": "proj",
            "total_memories": 0,
        }
        memory_id = await save()
        await save("medium")
        assert (await get_project_stats(project_id="proj"))["total_memories"] == 2

        await delete_memory(memory_id=memory_id, project_id="proj")
        assert (await get_project_stats(project_id="proj"))["total_memories"] == 1

    async def test_uninitialized_service(self):
        server_module._service = None
        result = await get_project_stats(project_id="proj")
        assert result == {"success": False, "error": "StorageError: Memory service not initialized"}


# =============================================================================
# Integration Tests
# =============================================================================


class TestConcurrency:
    async def test_concurrent_mixed_operations(self):
        await save("close")

        tasks = []
        for text in ("medium", "far", "query"):
            tasks.extend(
                [
                    store_memory(content=text, category="note", project_id="proj"),
                    search_memories(query="query", project_id="proj"),
                    get_project_stats(project_id="proj"),
                ]
            )
        results = await asyncio.gather(*tasks, return_exceptions=True)

        errors = [r for r in results if isinstance(r, Exception) or not r["success"]]
        assert errors == []
        assert (await get_project_stats(project_id="proj"))["total_memories"] == 4


class TestFullLifecycle:
    async def test_create_read_delete(self):
        memory_id = await save("close", metadata={"stage": "lifecycle"})

        listed = await list_memories(project_id="proj")
        assert listed["memories"][0]["content"] == "close"
        assert (await list_memories(project_id="proj")) == listed

        found = await search_memories(query="query", project_id="proj")
        assert found["results"][0]["id"] == memory_id

        assert (await delete_memory(memory_id=memory_id, project_id="proj"))["success"] is True
        verify = await delete_memory(memory_id=memory_id, project_id="proj")
        assert verify["message"] == NOT_FOUND_MESSAGE
        assert (await list_memories(project_id="proj"))["memories"] == []


# =============================================================================
# CLI
# =============================================================================


class TestCheckConnection:
    async def test_existing_table(self, config, capsys):
        await save()
        assert await check_connection(config) == 0
        assert "1 memories" in capsys.readouterr().out

    async def test_missing_table_is_warning(self, tmp_path, capsys):
        from config import Config

        config = Config(connection_string=str(tmp_path / "fresh"), embedding_dim=DIM)

        assert await check_connection(config) == 0
        assert "table 'memories' is missing" in capsys.readouterr().out
        assert not await _table_exists(config)

    async def test_dimension_mismatch_fails(self, config, capsys):
        from dataclasses import replace

        assert await check_connection(replace(config, embedding_dim=DIM * 2)) == 1
        assert "Connection failed" in capsys.readouterr().out


async def _table_exists(config) -> bool:
    store = VectorStore(config.connection_string, config.embedding_dim, config.table_name)
    await store.connect(create=False)
    return await store.table_exists()
