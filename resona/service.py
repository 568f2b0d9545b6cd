"""
Embedding Service - One corpus: embed, search, manage and maintain.

Ties a backend and a store to the pipeline, search and maintenance
components. A service can register itself with a FederatedSearchAggregator
through as_source().
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set

from .chunker import parse_chunk_id
from .config import get_config, ResonaConfig
from .embedders import create_backend
from .embedders.base import EmbeddingBackend
from .maintenance import MaintenancePlanner
from .models import (
    BatchOptions, BatchResult, Diagnostics, EmbeddingStats, Item, ItemPreview,
    MaintenanceOptions, MaintenanceResult, SearchResult, SourceRegistration,
    StoredRecord,
)
from .pipeline import BatchCoordinator
from .search import SearchDeduplicator, row_base_id
from .store import LanceStore, VectorStore


logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Embedding sync and search for a single corpus.

    Example:
        service = EmbeddingService()
        await service.embed_batch([Item(id="n1", text="Meeting notes")])
        results = await service.search("notes", k=5)
    """

    def __init__(
        self,
        config: ResonaConfig | None = None,
        backend: EmbeddingBackend | None = None,
        store: VectorStore | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config or get_config()
        self.backend = backend or create_backend(self.config)
        self.store = store or LanceStore(self.config)
        self.coordinator = BatchCoordinator(self.backend, self.store, self.config, logger)
        self.searcher = SearchDeduplicator(
            self.backend, self.store, self.config.oversample_factor, self.config.embed_timeout
        )
        self.planner = MaintenancePlanner(self.store, self.config)

    # --- Embedding ---

    async def embed(self, item: Item) -> bool:
        """Embed one item; False when it was skipped or failed."""
        result = await self.coordinator.process_batch([item])
        return result.processed == 1

    async def embed_batch(self, items: Sequence[Item], options: BatchOptions | None = None) -> BatchResult:
        return await self.coordinator.process_batch(items, options)

    # --- Search ---

    async def search(self, query: str, k: int = 10) -> List[SearchResult]:
        return await self.searcher.search(query, k)

    # --- Records ---

    async def get_record(self, chunk_id: str) -> Optional[StoredRecord]:
        row = await self.store.get(chunk_id)
        return StoredRecord.from_row(row) if row else None

    async def get_item_records(self, item_id: str) -> List[StoredRecord]:
        """All chunks of an item, in chunk order."""
        rows = await self.store.get_by_base(item_id)
        records = [StoredRecord.from_row(row) for row in rows]
        return sorted(records, key=lambda r: parse_chunk_id(r.chunk_id)[1] or 0)

    async def delete(self, item_id: str) -> None:
        """Delete every chunk of an item; absent items are a no-op."""
        await self.store.delete_bases([item_id])

    async def get_embedded_ids(self) -> List[str]:
        """Ids of all stored items (not chunk ids), in first-seen order."""
        seen: dict = {}
        async for page in self.store.scan(["id", "base_id"], self.config.scan_page_size):
            for row in page:
                seen.setdefault(row_base_id(row), None)
        return list(seen)

    async def cleanup(self, keep_ids: Iterable[str]) -> int:
        """
        Remove every stored item not in keep_ids.

        Returns:
            Number of items removed
        """
        keep: Set[str] = set(keep_ids)
        remove = [item_id for item_id in await self.get_embedded_ids() if item_id not in keep]
        if remove:
            await self.store.delete_bases(remove)
            logger.info(f"Removed {len(remove)} items no longer in the corpus")
        return len(remove)

    async def get_stats(self) -> EmbeddingStats:
        total = 0
        oldest: Optional[int] = None
        newest: Optional[int] = None
        async for page in self.store.scan(["created_at", "updated_at"], self.config.scan_page_size):
            for row in page:
                total += 1
                created, updated = row.get("created_at"), row.get("updated_at")
                if created and (oldest is None or created < oldest):
                    oldest = created
                if updated and (newest is None or updated > newest):
                    newest = updated

        return EmbeddingStats(
            total_embeddings=total,
            model=self.backend.model,
            dimensions=self.backend.dimensions,
            oldest_embedding=datetime.fromtimestamp(oldest / 1000) if oldest else None,
            newest_embedding=datetime.fromtimestamp(newest / 1000) if newest else None,
        )

    # --- Maintenance ---

    async def diagnose(self) -> Diagnostics:
        return await self.planner.diagnose()

    async def maintain(self, options: MaintenanceOptions | None = None) -> MaintenanceResult:
        return await self.planner.maintain(options)

    # --- Federation ---

    def as_source(self, source_id: str, description: Optional[str] = None) -> SourceRegistration:
        """Expose this corpus to a FederatedSearchAggregator."""

        async def get_item(item_id: str) -> Optional[ItemPreview]:
            records = await self.get_item_records(item_id)
            if not records:
                return None
            first = records[0]
            url = (first.metadata or {}).get("url")
            return ItemPreview(preview=first.text, url=url)

        return SourceRegistration(
            source_id=source_id,
            search=self.search,
            description=description,
            get_item=get_item,
        )

    def close(self) -> None:
        self.store.close()
        self.backend.close()
