"""
Change Index - What is already stored, keyed by item.

Built in one streamed pass over (id, base_id, text_hash, created_at) pages so
memory grows with the number of stored items and chunk ids, never with whole
records or vectors.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .chunker import parse_chunk_id
from .store import VectorStore


logger = logging.getLogger(__name__)

CHANGE_COLUMNS = ["id", "base_id", "text_hash", "created_at"]


@dataclass
class ChangeIndex:
    """
    Existing state used to decide skip / re-embed and to find stale chunks.

    known_fingerprints holds the fingerprint of the first chunk seen for each
    item; every chunk of an item carries the same item-level fingerprint.
    Items whose chunks disagree were left half-written by a failed flush and
    always count as changed.
    """
    known_fingerprints: Dict[str, str] = field(default_factory=dict)
    known_chunk_ids: Dict[str, List[str]] = field(default_factory=dict)
    existing_chunk_ids: Set[str] = field(default_factory=set)
    created_at: Dict[str, int] = field(default_factory=dict)
    mixed: Set[str] = field(default_factory=set)

    def add_row(self, chunk_id: str, base_id: str, fingerprint: str, created_at: int = 0) -> None:
        if base_id not in self.known_fingerprints:
            self.known_fingerprints[base_id] = fingerprint
            self.created_at[base_id] = created_at
        elif self.known_fingerprints[base_id] != fingerprint:
            self.mixed.add(base_id)
        self.known_chunk_ids.setdefault(base_id, []).append(chunk_id)
        self.existing_chunk_ids.add(chunk_id)

    def is_unchanged(self, base_id: str, fingerprint: str) -> bool:
        if base_id in self.mixed:
            return False
        return self.known_fingerprints.get(base_id) == fingerprint

    def stale_chunk_ids(self, base_id: str, new_chunk_ids: Set[str]) -> List[str]:
        """Stored chunks of an item that its new chunk set no longer contains."""
        return [c for c in self.known_chunk_ids.get(base_id, []) if c not in new_chunk_ids]

    def replace_item(self, base_id: str, fingerprint: str, chunk_ids: List[str], created_at: int) -> None:
        """Record that an item's chunk set was persisted."""
        for old in self.known_chunk_ids.get(base_id, []):
            self.existing_chunk_ids.discard(old)
        self.known_fingerprints[base_id] = fingerprint
        self.known_chunk_ids[base_id] = list(chunk_ids)
        self.mixed.discard(base_id)
        self.existing_chunk_ids.update(chunk_ids)
        self.created_at[base_id] = created_at

    def __len__(self) -> int:
        return len(self.known_fingerprints)


class ChangeIndexLoader:
    """Streams the store's existing rows into a ChangeIndex."""

    def __init__(self, store: VectorStore, page_size: Optional[int] = None):
        self.store = store
        self.page_size = page_size

    async def load(self) -> ChangeIndex:
        index = ChangeIndex()
        rows = 0

        async for page in self.store.scan(CHANGE_COLUMNS, self.page_size):
            for row in page:
                chunk_id = row["id"]
                base_id = row.get("base_id") or parse_chunk_id(chunk_id)[0]
                index.add_row(chunk_id, base_id, row["text_hash"], row.get("created_at") or 0)
            rows += len(page)

        if index.mixed:
            logger.warning(f"{len(index.mixed)} items have chunks from different versions; they will be re-embedded")
        logger.debug(f"Loaded change index: {len(index)} items, {rows} chunks")
        return index
