"""
Configuration - Centralized settings for embedding sync and search.

Uses environment variables with sensible defaults. The database path is
resolved to an absolute path for reliability.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class FlushFailurePolicy(Enum):
    """What to do with a write buffer whose flush failed."""
    DISCARD = "discard"     # Count the whole buffer as errors and drop it
    SPLIT = "split"         # Retry in halves, drop only records that still fail


@dataclass
class ResonaConfig:
    """
    Configuration for the embedding pipeline, store and search.

    The database defaults to ~/.resona/embeddings.lance.
    Batch sizes are tuned for a local LanceDB table.
    """

    # --- Store ---
    db_path: Path = field(default_factory=lambda: Path.home() / ".resona" / "embeddings.lance")
    table_name: str = "embeddings"
    distance_type: str = "cosine"   # Metric reported as _distance by the store
    scan_page_size: int = 10000     # Rows per page when streaming the table

    # --- Embedding backend ---
    provider: str = "ollama"
    model: str = "nomic-embed-text"
    dimensions: Optional[int] = None  # Required for models not in the known tables
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    use_onnx: bool = False          # Local backend only: ONNX Runtime inference

    # --- Batching ---
    store_batch_size: int = 5000    # Records buffered before a flush
    progress_interval: int = 100    # Items between progress callbacks
    flush_failure_policy: FlushFailurePolicy = FlushFailurePolicy.DISCARD

    # --- Chunking ---
    chunk_size: int = 30000         # Characters per chunk
    chunk_overlap: int = 500        # Characters shared by neighbouring chunks

    # --- Search ---
    oversample_factor: int = 5      # Extra rows fetched to absorb duplicate chunk hits

    # --- Deadlines (seconds) ---
    request_timeout: float = 60.0   # Per HTTP request to a remote backend
    embed_timeout: float = 300.0    # Per backend batch call
    search_timeout: float = 30.0    # Per source in federated search

    # --- Maintenance ---
    retention_days: int = 7
    index_stale_threshold: float = 0.1

    # --- Logging ---
    verbose: bool = False

    def __post_init__(self):
        """Ensure the database path is absolute and its parent exists."""
        self.db_path = Path(self.db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(self.flush_failure_policy, str):
            self.flush_failure_policy = FlushFailurePolicy(self.flush_failure_policy)

    @classmethod
    def from_env(cls) -> "ResonaConfig":
        """
        Create config from environment variables.

        Supported env vars:
            RESONA_DB_PATH: Path to the LanceDB directory
            RESONA_PROVIDER: ollama, openai, voyage or local
            RESONA_MODEL: Embedding model name
            RESONA_DIMENSIONS: Explicit embedding dimensions
            RESONA_ENDPOINT: Custom backend endpoint
            RESONA_API_KEY: API key for cloud providers
            RESONA_USE_ONNX: 1 to run the local model on ONNX Runtime
            RESONA_STORE_BATCH_SIZE: Records buffered before a flush
            RESONA_FLUSH_POLICY: discard or split
            RESONA_VERBOSE: 1 to enable debug logging
        """
        config = cls()

        if db_path := os.environ.get("RESONA_DB_PATH"):
            config.db_path = Path(db_path)

        if provider := os.environ.get("RESONA_PROVIDER"):
            config.provider = provider

        if model := os.environ.get("RESONA_MODEL"):
            config.model = model

        if dimensions := os.environ.get("RESONA_DIMENSIONS"):
            config.dimensions = int(dimensions)

        if endpoint := os.environ.get("RESONA_ENDPOINT"):
            config.endpoint = endpoint

        if api_key := os.environ.get("RESONA_API_KEY"):
            config.api_key = api_key

        if os.environ.get("RESONA_USE_ONNX", "").lower() in {"1", "true", "yes"}:
            config.use_onnx = True

        if store_batch := os.environ.get("RESONA_STORE_BATCH_SIZE"):
            config.store_batch_size = int(store_batch)

        if policy := os.environ.get("RESONA_FLUSH_POLICY"):
            config.flush_failure_policy = FlushFailurePolicy(policy)

        if os.environ.get("RESONA_VERBOSE", "").lower() in {"1", "true", "yes"}:
            config.verbose = True

        config.__post_init__()
        return config


# Singleton default config
_default_config: ResonaConfig | None = None


def get_config() -> ResonaConfig:
    """Get the default configuration (singleton)."""
    global _default_config
    if _default_config is None:
        _default_config = ResonaConfig.from_env()
    return _default_config


def set_config(config: ResonaConfig) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
