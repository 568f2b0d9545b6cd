"""
Search Tests - Verify chunk-aware deduplication of nearest-neighbour rows.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from resona.models import BatchOptions, Item
from resona.pipeline import BatchCoordinator
from resona.search import SearchDeduplicator, dedupe_rows

from conftest import FakeBackend


class TestDedupeRows:
    """Tests for collapsing raw rows."""

    def test_keeps_best_chunk_per_item(self):
        """Only the closest chunk of an item survives."""
        rows = [
            {"id": "a#0", "base_id": "a", "_distance": 0.3},
            {"id": "b", "base_id": "b", "_distance": 0.2},
            {"id": "a#1", "base_id": "a", "_distance": 0.1},
        ]

        results = dedupe_rows(rows, k=10)

        assert [r.id for r in results] == ["a", "b"]
        assert results[0].chunk_id == "a#1"
        assert results[0].similarity == pytest.approx(0.9)
        assert results[0].distance == pytest.approx(0.1)

    def test_truncates_to_k(self):
        """At most k results are returned."""
        rows = [{"id": f"n{i}", "base_id": f"n{i}", "_distance": i / 10} for i in range(8)]

        results = dedupe_rows(rows, k=3)

        assert [r.id for r in results] == ["n0", "n1", "n2"]

    def test_decodes_metadata(self):
        """Stored JSON metadata is decoded; empty metadata becomes None."""
        rows = [
            {"id": "a", "base_id": "a", "_distance": 0.1, "metadata": '{"tag": "x"}'},
            {"id": "b", "base_id": "b", "_distance": 0.2, "metadata": ""},
        ]

        results = dedupe_rows(rows, k=2)

        assert results[0].metadata == {"tag": "x"}
        assert results[1].metadata is None

    def test_falls_back_to_parsed_chunk_id(self):
        """Rows without base_id are grouped by the parsed chunk id."""
        rows = [
            {"id": "a#0", "_distance": 0.4},
            {"id": "a#2", "_distance": 0.2},
        ]

        results = dedupe_rows(rows, k=5)

        assert len(results) == 1
        assert results[0].id == "a"


class TestSearchDeduplicator:
    """Tests for end-to-end search over the in-memory store."""

    @pytest.mark.asyncio
    async def test_chunked_item_returned_once(self, backend, store, test_config):
        """A chunked item matching the query yields exactly one result."""
        coordinator = BatchCoordinator(backend, store, test_config)
        await coordinator.process_batch([
            Item(id="apollo", text="apollo rocket launch " * 6),
            Item(id="bread", text="banana bread recipe"),
            Item(id="garden", text="garden tomato care"),
        ], BatchOptions(chunk_size=100, chunk_overlap=20))
        assert len(store.chunk_ids_of("apollo")) == 2

        results = await SearchDeduplicator(backend, store).search("apollo rocket launch", k=3)

        ids = [r.id for r in results]
        assert ids[0] == "apollo"
        assert len(ids) == len(set(ids)) == 3
        assert results[0].chunk_id.startswith("apollo#")
        assert results[0].similarity == pytest.approx(1 - results[0].distance)
        assert results == sorted(results, key=lambda r: r.similarity, reverse=True)

    @pytest.mark.asyncio
    async def test_oversamples_store_query(self, backend, store):
        """The store is asked for k * oversample_factor rows."""
        store.nearest = AsyncMock(return_value=[])

        await SearchDeduplicator(backend, store, oversample_factor=5).search("anything", k=4)

        assert store.nearest.await_args.args[1] == 20

    @pytest.mark.asyncio
    async def test_empty_store(self, backend, store):
        """Searching an empty corpus returns nothing."""
        assert await SearchDeduplicator(backend, store).search("query", k=5) == []

    @pytest.mark.asyncio
    async def test_non_positive_k(self, backend, store):
        """k <= 0 returns nothing without embedding the query."""
        assert await SearchDeduplicator(backend, store).search("query", k=0) == []
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_query_embedding_deadline(self, store):
        """A query embedding slower than embed_timeout times out."""
        slow = FakeBackend(delay=0.5)
        searcher = SearchDeduplicator(slow, store, embed_timeout=0.05)

        with pytest.raises(asyncio.TimeoutError):
            await searcher.search("query", k=5)
