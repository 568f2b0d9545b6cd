"""
Batch Coordinator - Change-aware batch embedding with buffered persistence.

Pipeline for one process_batch() call:
- Filter 1: Drop empty ids, keep the last occurrence of repeated ids
- Filter 2: Skip items whose fingerprint matches the stored one
- Chunk: Expand oversized items into overlapping windows
- Embed: One backend call per provider-sized group, under a deadline
- Persist: Buffer complete items, flush new rows as inserts and known rows
  as upserts, deleting chunks the item no longer produces
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .change_index import ChangeIndex, ChangeIndexLoader
from .chunker import chunk_item, validate_chunking
from .config import FlushFailurePolicy, get_config, ResonaConfig
from .embedders.base import EmbeddingBackend
from .errors import (
    BackendError, ErrorAction, ErrorSamples, describe_error, handle_error,
)
from .fingerprint import fingerprint_item
from .models import (
    BatchOptions, BatchProgress, BatchResult, Chunk, Item, StoredRecord,
)
from .store import VectorStore


EMPTY_ID_MESSAGE = "Skipped item with empty ID"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class PendingItem:
    """An item selected for embedding, collecting vectors chunk by chunk."""
    item: Item
    fingerprint: str
    chunks: List[Chunk]
    vectors: Dict[int, np.ndarray] = field(default_factory=dict)
    records: List[StoredRecord] = field(default_factory=list)
    failed: bool = False

    @property
    def base_id(self) -> str:
        return self.item.id

    @property
    def chunk_ids(self) -> List[str]:
        return [c.chunk_id for c in self.chunks]

    @property
    def complete(self) -> bool:
        return len(self.vectors) == len(self.chunks)


@dataclass
class BatchRun:
    """Mutable counters and buffer for one process_batch() call."""
    total: int
    options: BatchOptions
    change_index: ChangeIndex
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    stored: int = 0
    chunks_processed: int = 0
    chunks_stored: int = 0
    flushes: int = 0
    current_item: Optional[str] = None
    buffer: List[PendingItem] = field(default_factory=list)
    samples: ErrorSamples = field(default_factory=ErrorSamples)
    started: float = field(default_factory=time.monotonic)
    last_reported: int = 0

    @property
    def done(self) -> int:
        return self.processed + self.skipped + self.errors

    @property
    def buffer_size(self) -> int:
        return sum(len(p.chunks) for p in self.buffer)

    def fail(self, count: int, message: str) -> None:
        self.errors += count
        self.samples.add(message)

    def snapshot(self) -> BatchProgress:
        elapsed = time.monotonic() - self.started
        return BatchProgress(
            processed=self.processed,
            skipped=self.skipped,
            errors=self.errors,
            total=self.total,
            stored=self.stored,
            buffer_size=self.buffer_size,
            rate=self.processed / elapsed if elapsed > 0 else 0.0,
            current_item=self.current_item,
            chunks_processed=self.chunks_processed,
            chunks_stored=self.chunks_stored,
        )

    def result(self) -> BatchResult:
        return BatchResult(
            processed=self.processed,
            skipped=self.skipped,
            errors=self.errors,
            error_samples=list(self.samples.messages),
        )


class BatchCoordinator:
    """
    Drives the embedding backend and the write buffer for a batch of items.

    One sequential pipeline per call: a flush blocks further embed calls.
    Concurrent writers on the same store must be serialized by the caller.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        store: VectorStore,
        config: ResonaConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self.backend = backend
        self.store = store
        self.config = config or get_config()
        self.log = logger or logging.getLogger(__name__)
        if self.config.verbose:
            self.log.setLevel(logging.DEBUG)

    def default_options(self) -> BatchOptions:
        return BatchOptions(
            progress_interval=self.config.progress_interval,
            store_batch_size=self.config.store_batch_size,
            chunk_size=self.config.chunk_size,
            chunk_overlap=self.config.chunk_overlap,
        )

    async def process_batch(
        self,
        items: Sequence[Item],
        options: BatchOptions | None = None,
    ) -> BatchResult:
        """
        Embed and persist a batch of items.

        Args:
            items: Items to sync; unchanged ones are skipped
            options: Batch options (default: from config)

        Returns:
            BatchResult whose counts sum to len(items)

        Raises:
            ConfigurationError: invalid chunking or batch options
        """
        options = options or self.default_options()
        validate_chunking(options.chunk_size, options.chunk_overlap)

        change_index = await ChangeIndexLoader(self.store, self.config.scan_page_size).load()
        run = BatchRun(total=len(items), options=options, change_index=change_index)

        candidates = self._select_latest(items, run)
        pending = self._plan(candidates, run)
        self._report(run)

        self.log.info(
            f"Embedding {len(pending)} of {len(items)} items "
            f"({run.skipped} skipped, {run.errors} errors)"
        )

        for group in self._groups(pending):
            await self._embed_group(group, run)
            for p in self._completed(group, run):
                run.buffer.append(p)
                run.processed += 1
                run.chunks_processed += len(p.chunks)
                run.current_item = p.base_id
                if run.buffer_size >= options.store_batch_size:
                    await self._flush(run)
            self._report(run)

        if run.buffer:
            await self._flush(run)

        self._report(run, final=True)
        self.log.info(f"{run.result()} in {run.flushes} flushes")
        return run.result()

    # --- Planning ---

    def _select_latest(self, items: Sequence[Item], run: BatchRun) -> List[Item]:
        """Drop empty ids; for repeated ids keep the last occurrence."""
        last_position: Dict[str, int] = {}
        for position, item in enumerate(items):
            if item.id and item.id.strip():
                last_position[item.id] = position

        selected = []
        for position, item in enumerate(items):
            if not item.id or not item.id.strip():
                run.fail(1, EMPTY_ID_MESSAGE)
            elif last_position[item.id] != position:
                run.skipped += 1
            else:
                selected.append(item)
        return selected

    def _plan(self, items: List[Item], run: BatchRun) -> List[PendingItem]:
        """Fingerprint, skip unchanged items and chunk the rest."""
        options = run.options
        pending = []
        for item in items:
            fp = fingerprint_item(item)
            if not options.force_all and run.change_index.is_unchanged(item.id, fp):
                run.skipped += 1
                continue
            chunks = chunk_item(item, options.chunk_size, options.chunk_overlap)
            pending.append(PendingItem(item=item, fingerprint=fp, chunks=chunks))
        return pending

    def _groups(self, pending: List[PendingItem]) -> Iterator[List[Tuple[PendingItem, Chunk]]]:
        """
        Yield chunk groups no larger than the backend's batch limit.

        Groups are built lazily so chunks of items that already failed in an
        earlier group are not sent to the backend.
        """
        size = max(1, self.backend.max_batch_size)
        group: List[Tuple[PendingItem, Chunk]] = []
        for p in pending:
            for chunk in p.chunks:
                if p.failed:
                    break
                group.append((p, chunk))
                if len(group) >= size:
                    yield group
                    group = []
        if group:
            yield group

    # --- Embedding ---

    async def _embed_group(self, group: List[Tuple[PendingItem, Chunk]], run: BatchRun) -> None:
        texts = [chunk.text for _, chunk in group]
        loop = asyncio.get_running_loop()
        try:
            vectors = await asyncio.wait_for(
                loop.run_in_executor(None, self.backend.embed, texts),
                timeout=self.config.embed_timeout,
            )
            if len(vectors) != len(texts):
                raise BackendError(f"Backend returned {len(vectors)} vectors for {len(texts)} texts")
        except Exception as e:
            label = f"group of {len(texts)} chunks starting at {group[0][1].chunk_id}"
            if handle_error(e, item=label, context="embed", log=self.log) == ErrorAction.ABORT:
                raise
            failed = [p for p in dict.fromkeys(p for p, _ in group) if not p.failed]
            for p in failed:
                p.failed = True
                p.vectors.clear()
            run.fail(len(failed), f"Embedding failed for {label}: {describe_error(e)}")
            return

        for (p, chunk), vector in zip(group, vectors):
            p.vectors[chunk.index] = np.asarray(vector, dtype=np.float32)
        self.log.debug(f"Embedded {len(texts)} chunks")

    def _completed(self, group: List[Tuple[PendingItem, Chunk]], run: BatchRun) -> List[PendingItem]:
        """Items of this group that now have a vector for every chunk."""
        done = []
        for p in dict.fromkeys(p for p, _ in group):
            if not p.failed and p.complete and not p.records:
                p.records = self._build_records(p, run)
                p.vectors.clear()
                done.append(p)
        return done

    def _build_records(self, p: PendingItem, run: BatchRun) -> List[StoredRecord]:
        now = now_ms()
        # Re-embedded items keep their original creation time
        created_at = run.change_index.created_at.get(p.base_id) or now
        return [
            StoredRecord(
                chunk_id=chunk.chunk_id,
                base_id=p.base_id,
                fingerprint=p.fingerprint,
                text=chunk.text,
                model=self.backend.model,
                dimensions=self.backend.dimensions,
                vector=p.vectors[chunk.index],
                metadata=p.item.metadata,
                created_at=created_at,
                updated_at=now,
            )
            for chunk in p.chunks
        ]

    # --- Persistence ---

    async def _flush(self, run: BatchRun) -> None:
        """Write the buffer; on failure apply the configured flush policy."""
        batch, run.buffer = run.buffer, []
        run.flushes += 1
        records = sum(len(p.records) for p in batch)

        try:
            await self._write(batch, run)
            written = batch
        except Exception as e:
            if handle_error(e, item=f"buffer of {records} records", context="flush", log=self.log) == ErrorAction.ABORT:
                raise
            if self.config.flush_failure_policy == FlushFailurePolicy.SPLIT and len(batch) > 1:
                written = await self._write_split(batch, run)
            else:
                written = []
            kept = set(written)
            lost = [p for p in batch if p not in kept]
            run.processed -= len(lost)
            run.chunks_processed -= sum(len(p.chunks) for p in lost)
            run.fail(len(lost), f"Flush of {records} records failed: {describe_error(e)}")

        run.stored += len(written)
        run.chunks_stored += sum(len(p.records) for p in written)
        for p in batch:
            p.records = []
        self._report(run, force=True)

    async def _write_split(self, batch: List[PendingItem], run: BatchRun) -> List[PendingItem]:
        """Retry a failed buffer in halves; returns the items that were written."""
        written: List[PendingItem] = []
        mid = len(batch) // 2
        for half in (batch[:mid], batch[mid:]):
            try:
                await self._write(half, run)
                written.extend(half)
            except Exception as e:
                if len(half) > 1:
                    written.extend(await self._write_split(half, run))
                elif handle_error(e, item=half[0].base_id, context="flush", log=self.log) == ErrorAction.ABORT:
                    raise
        return written

    async def _write(self, batch: List[PendingItem], run: BatchRun) -> None:
        """
        Persist complete items: delete stale chunks, insert new chunk ids,
        upsert known ones. The change index tracks each step that succeeds
        so a retried write never re-inserts rows.
        """
        index = run.change_index
        stale: List[str] = []
        for p in batch:
            stale.extend(index.stale_chunk_ids(p.base_id, set(p.chunk_ids)))

        records = [r for p in batch for r in p.records]
        new_rows = [r.to_row() for r in records if r.chunk_id not in index.existing_chunk_ids]
        update_rows = [r.to_row() for r in records if r.chunk_id in index.existing_chunk_ids]

        if stale:
            await self.store.delete_ids(stale)
            index.existing_chunk_ids.difference_update(stale)
        if new_rows:
            await self.store.add(new_rows)
            index.existing_chunk_ids.update(row["id"] for row in new_rows)
        if update_rows:
            await self.store.upsert(update_rows)

        for p in batch:
            index.replace_item(p.base_id, p.fingerprint, p.chunk_ids, p.records[0].created_at)

        self.log.debug(
            f"Flushed {len(new_rows)} new, {len(update_rows)} updated, "
            f"{len(stale)} stale chunks deleted"
        )

    # --- Progress ---

    def _report(self, run: BatchRun, force: bool = False, final: bool = False) -> None:
        on_progress = run.options.on_progress
        if on_progress is None:
            return
        interval = max(1, run.options.progress_interval)
        if not (final or force or run.done - run.last_reported >= interval):
            return
        run.last_reported = run.done
        try:
            on_progress(run.snapshot())
        except Exception as e:
            self.log.warning(f"Progress callback failed: {e}")
