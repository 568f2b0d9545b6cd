"""
Resona - Embedding sync and federated vector search.

Modules:
    - config: Centralized configuration
    - fingerprint: SHA-256 content fingerprints (change detection)
    - chunker: Overlapping windows for oversized items
    - change_index: Streamed snapshot of what is already stored
    - pipeline: Batch embedding with buffered flushes
    - search: Single-corpus search, one result per item
    - federation: One query across many registered corpora
    - maintenance: Index health, compaction, rebuild, cleanup
    - store: Vector store interface + LanceDB
    - embedders: Ollama, OpenAI, Voyage and local backends
    - service: One corpus end to end

Write Flow:
    Items → Fingerprint (skip unchanged) → Chunk → Embed (batched) → Flush

Usage:
    from resona import EmbeddingService, Item

    service = EmbeddingService()
    await service.embed_batch([Item(id="n1", text="Meeting notes")])
    results = await service.search("meeting", k=5)
"""

from .config import ResonaConfig, get_config, set_config
from .federation import FederatedSearchAggregator
from .models import (
    UNSUPPORTED,
    BatchOptions,
    BatchResult,
    FederatedResult,
    Item,
    MaintenanceOptions,
    SearchResult,
    SourceRegistration,
)
from .service import EmbeddingService

__all__ = [
    "UNSUPPORTED",
    "BatchOptions",
    "BatchResult",
    "EmbeddingService",
    "FederatedResult",
    "FederatedSearchAggregator",
    "Item",
    "MaintenanceOptions",
    "ResonaConfig",
    "SearchResult",
    "SourceRegistration",
    "get_config",
    "set_config",
]
