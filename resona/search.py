"""
Search - Single-corpus nearest-neighbour search, one result per item.

Long items are stored as several chunks, so raw nearest-neighbour rows can
repeat an item. The store is oversampled and rows are collapsed to the best
chunk per base id.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .chunker import parse_chunk_id
from .embedders.base import EmbeddingBackend
from .models import SearchResult, decode_metadata
from .store import Row, VectorStore


logger = logging.getLogger(__name__)

DEFAULT_OVERSAMPLE_FACTOR = 5


def row_base_id(row: Row) -> str:
    return row.get("base_id") or parse_chunk_id(row["id"])[0]


def dedupe_rows(rows: List[Row], k: int) -> List[SearchResult]:
    """
    Collapse rows to the closest chunk per base id.

    Returns at most k results ordered by similarity, highest first.
    """
    best: Dict[str, SearchResult] = {}
    for row in rows:
        distance = float(row["_distance"])
        base_id = row_base_id(row)
        similarity = 1.0 - distance
        current = best.get(base_id)
        if current is None or similarity > current.similarity:
            best[base_id] = SearchResult(
                id=base_id,
                distance=distance,
                similarity=similarity,
                chunk_id=row["id"],
                context_text=row.get("context_text"),
                metadata=decode_metadata(row.get("metadata")),
            )

    ranked = sorted(best.values(), key=lambda r: r.similarity, reverse=True)
    return ranked[:k]


class SearchDeduplicator:
    """Embeds a query once and returns deduplicated nearest items."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        store: VectorStore,
        oversample_factor: int = DEFAULT_OVERSAMPLE_FACTOR,
        embed_timeout: Optional[float] = None,
    ):
        self.backend = backend
        self.store = store
        self.oversample_factor = max(1, oversample_factor)
        self.embed_timeout = embed_timeout

    async def search(self, query: str, k: int = 10) -> List[SearchResult]:
        if k <= 0:
            return []

        loop = asyncio.get_running_loop()
        vector = await asyncio.wait_for(
            loop.run_in_executor(None, self.backend.embed_single, query),
            timeout=self.embed_timeout,
        )

        rows = await self.store.nearest(vector, k * self.oversample_factor)
        results = dedupe_rows(rows, k)

        logger.debug(f"Search {query[:50]!r}: {len(rows)} rows -> {len(results)} items")
        return results
