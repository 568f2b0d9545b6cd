"""
Pipeline Tests - Verify change-aware batch embedding and buffered flushes.

Tests:
- Unchanged items are skipped, changed ones re-embedded
- Chunk sets are replaced as a whole when an item grows or shrinks
- Buffered flushes split new rows (insert) from known rows (upsert)
- Backend and flush failures are counted, not raised
- Result counts always sum to the input size
"""

import json
import logging
from unittest.mock import AsyncMock

import pytest

from resona.config import FlushFailurePolicy
from resona.errors import ConfigurationError, StoreWriteError
from resona.fingerprint import fingerprint
from resona.models import BatchOptions, Item
from resona.pipeline import EMPTY_ID_MESSAGE, BatchCoordinator

from conftest import FakeBackend, make_items


CHUNKED = dict(chunk_size=100, chunk_overlap=20)


def assert_counts(result, total):
    assert result.processed + result.skipped + result.errors == total


class TestBatchCoordinator:
    """Tests for the BatchCoordinator happy paths."""

    @pytest.fixture
    def coordinator(self, backend, store, test_config):
        return BatchCoordinator(backend, store, test_config)

    @pytest.mark.asyncio
    async def test_embeds_new_items(self, coordinator, store):
        """New items are embedded and stored with the persisted layout."""
        items = make_items(5)
        items[0].metadata = {"url": "https://example.com/0"}

        result = await coordinator.process_batch(items)

        assert result.processed == 5
        assert result.skipped == 0
        assert result.errors == 0
        assert len(store.rows) == 5

        row = store.rows["item-0"]
        assert row["base_id"] == "item-0"
        assert row["text_hash"] == fingerprint(items[0].text)
        assert row["model"] == "fake-embed"
        assert row["dimensions"] == 64
        assert json.loads(row["metadata"]) == {"url": "https://example.com/0"}
        assert row["created_at"] > 0
        assert row["updated_at"] >= row["created_at"]
        assert store.rows["item-1"]["metadata"] == ""

    @pytest.mark.asyncio
    async def test_second_run_skips_unchanged(self, coordinator, backend, store):
        """Embedding the same (id, text) twice skips the second time."""
        item = Item(id="note-1", text="Quarterly planning notes")

        await coordinator.process_batch([item])
        before = dict(store.rows["note-1"])
        calls = len(backend.calls)

        result = await coordinator.process_batch([item])

        assert result.processed == 0
        assert result.skipped == 1
        assert len(backend.calls) == calls
        assert store.rows["note-1"] == before

    @pytest.mark.asyncio
    async def test_only_modified_items_reembedded(self, coordinator, backend, store):
        """100 stored items with 20 modified re-embeds exactly 20."""
        items = make_items(100)
        await coordinator.process_batch(items)
        backend.calls.clear()

        updated = [
            Item(id=item.id, text=item.text + " (edited)") if i < 20 else item
            for i, item in enumerate(items)
        ]
        result = await coordinator.process_batch(updated)

        assert result.processed == 20
        assert result.skipped == 80
        assert result.errors == 0
        assert len(store.rows) == 100
        assert len(backend.embedded_texts) == 20
        assert store.rows["item-3"]["text_hash"] == fingerprint(updated[3].text)

    @pytest.mark.asyncio
    async def test_force_all_reembeds_and_upserts(self, coordinator, store):
        """force_all re-embeds unchanged items through the upsert path."""
        items = make_items(5)
        await coordinator.process_batch(items)
        created = {cid: row["created_at"] for cid, row in store.rows.items()}

        result = await coordinator.process_batch(items, BatchOptions(force_all=True))

        assert result.processed == 5
        assert result.skipped == 0
        assert store.add_calls == [5]
        assert store.upsert_calls == [5]
        assert {cid: row["created_at"] for cid, row in store.rows.items()} == created

    @pytest.mark.asyncio
    async def test_embeds_context_text(self, coordinator, backend, store):
        """The backend receives context text when present."""
        item = Item(id="n", text="raw body", context_text="Title: Roadmap\nraw body")

        await coordinator.process_batch([item])

        assert backend.embedded_texts == ["Title: Roadmap\nraw body"]
        assert store.rows["n"]["context_text"] == "Title: Roadmap\nraw body"

    @pytest.mark.asyncio
    async def test_groups_respect_backend_batch_limit(self, store, test_config):
        """No backend call exceeds max_batch_size."""
        backend = FakeBackend(max_batch_size=3)
        coordinator = BatchCoordinator(backend, store, test_config)

        await coordinator.process_batch(make_items(10))

        assert [len(call) for call in backend.calls] == [3, 3, 3, 1]

    @pytest.mark.asyncio
    async def test_invalid_chunking_raises(self, coordinator):
        """Invalid chunk options fail fast."""
        with pytest.raises(ConfigurationError):
            await coordinator.process_batch(make_items(1), BatchOptions(chunk_size=10, chunk_overlap=10))

    @pytest.mark.asyncio
    async def test_empty_batch(self, coordinator, store):
        """An empty batch does nothing."""
        result = await coordinator.process_batch([])

        assert (result.processed, result.skipped, result.errors) == (0, 0, 0)
        assert store.add_calls == []

    @pytest.mark.asyncio
    async def test_injected_logger(self, backend, store, test_config, caplog):
        """Pipeline logs go to the injected logger."""
        custom = logging.getLogger("resona.tests.custom")
        coordinator = BatchCoordinator(backend, store, test_config, logger=custom)

        with caplog.at_level(logging.INFO, logger="resona.tests.custom"):
            await coordinator.process_batch(make_items(2))

        assert any(r.name == "resona.tests.custom" for r in caplog.records)


class TestChunkReplacement:
    """Tests for chunk-set replacement on re-embed."""

    @pytest.fixture
    def coordinator(self, backend, store, test_config):
        return BatchCoordinator(backend, store, test_config)

    @pytest.mark.asyncio
    async def test_shrink_three_chunks_to_one(self, coordinator, store):
        """An item going from 3 chunks to 1 ends with exactly 1 record."""
        options = BatchOptions(**CHUNKED)
        await coordinator.process_batch([Item(id="doc", text="lorem ipsum " * 21)], options)
        assert store.chunk_ids_of("doc") == {"doc#0", "doc#1", "doc#2"}

        result = await coordinator.process_batch([Item(id="doc", text="now short")], options)

        assert result.processed == 1
        assert store.chunk_ids_of("doc") == {"doc"}
        for old in ("doc#0", "doc#1", "doc#2"):
            assert await store.get(old) is None
        assert sorted(store.delete_calls[-1]) == ["doc#0", "doc#1", "doc#2"]

    @pytest.mark.asyncio
    async def test_grow_one_chunk_to_three(self, coordinator, store):
        """An item going from 1 chunk to 3 loses its unsuffixed record."""
        options = BatchOptions(**CHUNKED)
        await coordinator.process_batch([Item(id="doc", text="short")], options)

        await coordinator.process_batch([Item(id="doc", text="lorem ipsum " * 21)], options)

        assert store.chunk_ids_of("doc") == {"doc#0", "doc#1", "doc#2"}

    @pytest.mark.asyncio
    async def test_chunks_share_item_fingerprint(self, coordinator, store):
        """Every chunk carries the fingerprint of the whole item."""
        text = "lorem ipsum " * 21
        await coordinator.process_batch([Item(id="doc", text=text)], BatchOptions(**CHUNKED))

        assert {row["text_hash"] for row in store.rows.values()} == {fingerprint(text)}

    @pytest.mark.asyncio
    async def test_hash_in_id_not_confused_with_chunks(self, coordinator, store):
        """Shrinking 'issue' never deletes the separate item 'issue#12'."""
        options = BatchOptions(**CHUNKED)
        await coordinator.process_batch([
            Item(id="issue", text="lorem ipsum " * 21),
            Item(id="issue#12", text="a separate ticket"),
        ], options)

        await coordinator.process_batch([Item(id="issue", text="short now")], options)

        assert store.chunk_ids_of("issue") == {"issue"}
        assert store.chunk_ids_of("issue#12") == {"issue#12"}

    @pytest.mark.asyncio
    async def test_half_written_item_reembedded(self, coordinator, store):
        """An item left with chunks of two versions is never skipped."""
        options = BatchOptions(**CHUNKED)
        old_text, new_text = "lorem ipsum " * 15, "dolor sit amet " * 17
        await coordinator.process_batch([Item(id="doc", text=old_text)], options)

        upsert = store.upsert
        store.upsert = AsyncMock(side_effect=StoreWriteError("upsert failed", 2))
        failed = await coordinator.process_batch([Item(id="doc", text=new_text)], options)
        store.upsert = upsert
        # Put the newly written chunk first in scan order
        store.rows = {"doc#2": store.rows.pop("doc#2"), **store.rows}

        result = await coordinator.process_batch([Item(id="doc", text=new_text)], options)

        assert failed.errors == 1
        assert result.processed == 1
        assert {row["text_hash"] for row in store.rows.values()} == {fingerprint(new_text)}
        assert store.chunk_ids_of("doc") == {"doc#0", "doc#1", "doc#2"}


class TestBuffering:
    """Tests for the write buffer and progress reporting."""

    @pytest.mark.asyncio
    async def test_flushes_at_store_batch_size(self, backend, store, test_config):
        """250 records at store_batch_size=100 flush as 100 + 100 + 50."""
        coordinator = BatchCoordinator(backend, store, test_config)
        reports = []
        options = BatchOptions(on_progress=reports.append, progress_interval=10, store_batch_size=100)

        result = await coordinator.process_batch(make_items(250), options)

        assert result.processed == 250
        assert store.add_calls == [100, 100, 50]
        assert len(store.rows) == 250

        stored = [p.stored for p in reports]
        assert stored == sorted(stored)
        assert {100, 200, 250} <= set(stored)
        assert all(p.stored <= p.processed for p in reports)
        assert reports[-1].stored == reports[-1].processed == 250
        assert reports[-1].buffer_size == 0
        assert reports[-1].total == 250

    @pytest.mark.asyncio
    async def test_progress_tracks_chunks(self, backend, store, test_config):
        """Chunk counters follow records, item counters follow items."""
        coordinator = BatchCoordinator(backend, store, test_config)
        reports = []
        options = BatchOptions(on_progress=reports.append, **CHUNKED)

        await coordinator.process_batch([Item(id="doc", text="lorem ipsum " * 21)], options)

        final = reports[-1]
        assert final.processed == 1
        assert final.chunks_processed == 3
        assert final.chunks_stored == 3
        assert final.current_item == "doc"

    @pytest.mark.asyncio
    async def test_progress_callback_failure_does_not_abort(self, backend, store, test_config):
        """A raising progress callback is logged and ignored."""
        coordinator = BatchCoordinator(backend, store, test_config)

        def broken(progress):
            raise RuntimeError("display closed")

        result = await coordinator.process_batch(make_items(3), BatchOptions(on_progress=broken))

        assert result.processed == 3


class TestFailures:
    """Tests for partial failure handling."""

    @pytest.mark.asyncio
    async def test_backend_failure_errors_group(self, store, test_config):
        """A failing backend call errors its group and processing continues."""
        backend = FakeBackend(max_batch_size=10, fail_when=lambda t: "poison" in t)
        coordinator = BatchCoordinator(backend, store, test_config)
        items = make_items(25)
        items[7] = Item(id="item-7", text="poison pill")

        result = await coordinator.process_batch(items)

        assert result.errors == 10
        assert result.processed == 15
        assert_counts(result, 25)
        assert len(store.rows) == 15
        assert "item-0" not in store.rows
        assert len(result.error_samples) == 1
        assert "Embedding failed" in result.error_samples[0]

    @pytest.mark.asyncio
    async def test_failed_chunk_drops_whole_item(self, store, test_config):
        """An item is never partially stored when one of its chunks fails."""
        backend = FakeBackend(max_batch_size=2, fail_when=lambda t: "BAD" in t)
        coordinator = BatchCoordinator(backend, store, test_config)
        text = "a" * 200 + "BAD" + "b" * 47
        items = [Item(id="long", text=text), Item(id="short", text="fine")]

        result = await coordinator.process_batch(items, BatchOptions(**CHUNKED))

        assert result.errors == 2
        assert result.processed == 0
        assert store.rows == {}

    @pytest.mark.asyncio
    async def test_backend_timeout(self, store, test_config):
        """A backend call exceeding embed_timeout errors its group."""
        test_config.embed_timeout = 0.05
        backend = FakeBackend(delay=0.3)
        coordinator = BatchCoordinator(backend, store, test_config)

        result = await coordinator.process_batch(make_items(3))

        assert result.errors == 3
        assert result.processed == 0
        assert store.rows == {}

    @pytest.mark.asyncio
    async def test_error_samples_capped(self, store, test_config):
        """At most 5 error samples are kept."""
        backend = FakeBackend(max_batch_size=1, fail_when=lambda t: True)
        coordinator = BatchCoordinator(backend, store, test_config)

        result = await coordinator.process_batch(make_items(12))

        assert result.errors == 12
        assert len(result.error_samples) == 5

    @pytest.mark.asyncio
    async def test_flush_failure_discards_buffer(self, backend, store, test_config):
        """Under the default policy a failed flush errors the whole buffer."""
        store.fail_writes = 1
        coordinator = BatchCoordinator(backend, store, test_config)

        result = await coordinator.process_batch(make_items(5))

        assert result.errors == 5
        assert result.processed == 0
        assert store.rows == {}
        assert "Flush of 5 records failed" in result.error_samples[0]

    @pytest.mark.asyncio
    async def test_discarded_items_retried_next_run(self, backend, store, test_config):
        """Items lost to a failed flush are not marked as stored."""
        store.fail_writes = 1
        coordinator = BatchCoordinator(backend, store, test_config)
        items = make_items(5)
        await coordinator.process_batch(items)

        result = await coordinator.process_batch(items)

        assert result.processed == 5
        assert len(store.rows) == 5

    @pytest.mark.asyncio
    async def test_flush_failure_split_keeps_good_items(self, backend, store, test_config):
        """Under the split policy only the failing item is dropped."""
        test_config.flush_failure_policy = FlushFailurePolicy.SPLIT
        store.fail_ids = {"item-3"}
        coordinator = BatchCoordinator(backend, store, test_config)

        result = await coordinator.process_batch(make_items(8))

        assert result.errors == 1
        assert result.processed == 7
        assert_counts(result, 8)
        assert "item-3" not in store.rows
        assert len(store.rows) == 7

    @pytest.mark.asyncio
    async def test_empty_id_is_error(self, backend, store, test_config):
        """Items with an empty id are errors with a fixed sample message."""
        coordinator = BatchCoordinator(backend, store, test_config)

        result = await coordinator.process_batch([Item(id="", text="orphan"), Item(id="ok", text="fine")])

        assert result.errors == 1
        assert result.processed == 1
        assert result.error_samples == [EMPTY_ID_MESSAGE]
        assert set(store.rows) == {"ok"}

    @pytest.mark.asyncio
    async def test_repeated_ids_keep_last(self, backend, store, test_config):
        """Repeated ids keep the last occurrence; earlier ones are skipped."""
        coordinator = BatchCoordinator(backend, store, test_config)
        items = [Item(id="a", text="first"), Item(id="b", text="other"), Item(id="a", text="second")]

        result = await coordinator.process_batch(items)

        assert result.processed == 2
        assert result.skipped == 1
        assert store.rows["a"]["context_text"] == "second"
