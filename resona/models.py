"""
Data Models - Type definitions for the embedding pipeline and search.

These dataclasses represent the data flowing between the pipeline stages,
the vector store and the search layers, giving each seam a clear interface.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import numpy as np


class Unsupported:
    """
    Sentinel for an optional capability a backend or source does not offer.

    Returned by optional methods (e.g. health_check) and used as the value of
    optional capability fields (e.g. SourceRegistration.get_item).
    """

    _instance: Optional["Unsupported"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSUPPORTED"


UNSUPPORTED = Unsupported()


# ============================================
# ITEMS, CHUNKS & RECORDS
# ============================================

@dataclass
class Item:
    """
    An item supplied by the caller for embedding.

    The id should be unique within a corpus. When served through federated
    search the item is addressed as (source_id, id).
    """
    id: str
    text: str
    context_text: Optional[str] = None   # Enriched text; embedded instead of text
    metadata: Optional[Dict[str, Any]] = None

    @property
    def embedded_text(self) -> str:
        """The text that actually gets embedded."""
        return self.context_text or self.text

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        return cls(
            id=str(data["id"]),
            text=data.get("text", ""),
            context_text=data.get("context_text") or data.get("contextText"),
            metadata=data.get("metadata"),
        )


@dataclass
class Chunk:
    """One window of an item's embedded text."""
    chunk_id: str
    base_id: str
    index: int
    count: int
    text: str


@dataclass
class StoredRecord:
    """
    A persisted embedding row (one per chunk).

    `fingerprint` is the hash of the whole item's embedded text, shared by all
    of its chunks. Timestamps are epoch milliseconds.
    """
    chunk_id: str
    base_id: str
    fingerprint: str
    text: str
    model: str
    dimensions: int
    vector: np.ndarray
    metadata: Optional[Dict[str, Any]] = None
    created_at: int = 0
    updated_at: int = 0

    def to_row(self) -> Dict[str, Any]:
        """Serialize to the store's row layout."""
        return {
            "id": self.chunk_id,
            "base_id": self.base_id,
            "text_hash": self.fingerprint,
            "context_text": self.text,
            "model": self.model,
            "dimensions": self.dimensions,
            # Empty string, not null, when there is no metadata
            "metadata": encode_metadata(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "vector": np.asarray(self.vector, dtype=np.float32).tolist(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StoredRecord":
        return cls(
            chunk_id=row["id"],
            base_id=row.get("base_id") or row["id"],
            fingerprint=row["text_hash"],
            text=row.get("context_text", ""),
            model=row.get("model", ""),
            dimensions=int(row.get("dimensions", 0)),
            vector=np.asarray(row["vector"], dtype=np.float32),
            metadata=decode_metadata(row.get("metadata")),
            created_at=int(row.get("created_at", 0)),
            updated_at=int(row.get("updated_at", 0)),
        )


def encode_metadata(metadata: Optional[Dict[str, Any]]) -> str:
    return json.dumps(metadata) if metadata else ""


def decode_metadata(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    return json.loads(value)


# ============================================
# SEARCH
# ============================================

@dataclass
class SearchResult:
    """Single-corpus search result, one per logical item."""
    id: str                       # Base id of the item
    distance: float               # Store-reported distance (lower = closer)
    similarity: float             # 1 - distance
    chunk_id: Optional[str] = None  # Best-matching chunk
    context_text: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class FederatedResult:
    """
    Search result tagged with its originating source.

    (source, id) uniquely identifies an item across all registered corpora.
    """
    source: str
    id: str
    similarity: float
    preview: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ItemPreview:
    """Item details returned by a source's get_item."""
    preview: str
    url: Optional[str] = None


SearchFn = Callable[[str, int], Awaitable[List[SearchResult]]]
GetItemFn = Callable[[str], Awaitable[Optional[ItemPreview]]]


@dataclass
class SourceRegistration:
    """
    A searchable corpus exposed under a hierarchical source id.

    Source ids have the form "type" or "type/instance", e.g. "tana/main" or
    "email/work". get_item is UNSUPPORTED unless the source can preview items.
    """
    source_id: str
    search: SearchFn
    description: Optional[str] = None
    get_item: Union[GetItemFn, Unsupported] = UNSUPPORTED


@dataclass
class SourceInfo:
    """Source metadata for listing."""
    source_id: str
    description: Optional[str] = None


def parse_source_id(source_id: str) -> Tuple[str, Optional[str]]:
    """Split "type/instance" into (type, instance); instance may contain "/"."""
    source_type, _, instance = source_id.partition("/")
    return source_type, (instance or None)


def create_source_id(source_type: str, instance: Optional[str] = None) -> str:
    return f"{source_type}/{instance}" if instance else source_type


# ============================================
# BATCH PROCESSING
# ============================================

@dataclass
class BatchProgress:
    """
    Progress snapshot for a batch embedding run.

    Item counts: processed, skipped, errors, total, stored.
    Record counts: buffer_size, chunks_processed, chunks_stored.
    `stored` lags `processed` until the write buffer is flushed.
    """
    processed: int
    skipped: int
    errors: int
    total: int
    stored: int = 0
    buffer_size: int = 0
    rate: float = 0.0            # Items embedded per second
    current_item: Optional[str] = None
    chunks_processed: int = 0
    chunks_stored: int = 0


ProgressCallback = Callable[[BatchProgress], None]


@dataclass
class BatchOptions:
    """Options for a batch embedding run."""
    on_progress: Optional[ProgressCallback] = None
    progress_interval: int = 100
    force_all: bool = False
    store_batch_size: int = 5000
    chunk_size: int = 30000
    chunk_overlap: int = 500


@dataclass
class BatchResult:
    """Result of a batch embedding run; counts sum to the input size."""
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    error_samples: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Embedded {self.processed} items "
            f"({self.skipped} skipped, {self.errors} errors)"
        )


@dataclass
class EmbeddingStats:
    """Statistics about the stored embeddings of one corpus."""
    total_embeddings: int
    model: str
    dimensions: int
    oldest_embedding: Optional[datetime] = None
    newest_embedding: Optional[datetime] = None


# ============================================
# MAINTENANCE
# ============================================

@dataclass
class IndexHealth:
    """Coverage of the vector index; stale_percent is 0-100."""
    num_indexed_rows: int
    num_unindexed_rows: int
    stale_percent: float
    needs_rebuild: bool


@dataclass
class Diagnostics:
    total_rows: int
    version: int
    index: Optional[IndexHealth]
    db_path: Optional[str] = None


@dataclass
class CompactionStats:
    fragments_removed: int
    files_created: int


@dataclass
class CleanupStats:
    bytes_removed: int
    versions_removed: int


@dataclass
class IndexRebuild:
    """Outcome of the index step; rebuilt is False when the index was fresh."""
    rebuilt: bool
    num_indexed_rows: int
    num_unindexed_rows: int


MaintenanceProgress = Callable[[str, Dict[str, Any]], None]


@dataclass
class MaintenanceOptions:
    skip_compaction: bool = False
    skip_index: bool = False
    skip_cleanup: bool = False
    retention_days: int = 7
    index_stale_threshold: float = 0.1
    step_timeout: Optional[float] = None   # Seconds allowed per step
    on_progress: Optional[MaintenanceProgress] = None


@dataclass
class MaintenanceResult:
    """Steps that did not run are None, not zeroed."""
    duration_ms: int = 0
    compaction: Optional[CompactionStats] = None
    index: Optional[IndexRebuild] = None
    cleanup: Optional[CleanupStats] = None
