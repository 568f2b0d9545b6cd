"""
Store - Vector store interface and LanceDB implementation.

The pipeline, search and maintenance layers only talk to VectorStore. Rows
use the layout produced by StoredRecord.to_row(); the table is created on
first write with record_schema() sized to the first vector.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import lancedb
import numpy as np
import pyarrow as pa
from lancedb.index import BTree, IvfPq

from .config import get_config, ResonaConfig
from .errors import StoreError, StoreWriteError
from .models import CleanupStats, CompactionStats


logger = logging.getLogger(__name__)

Row = Dict[str, Any]

VECTOR_COLUMN = "vector"
SEARCH_COLUMNS = ["id", "base_id", "context_text", "metadata"]
DELETE_BATCH_SIZE = 500
# IVF_PQ trains 256 centroids per sub-vector; smaller tables build an empty index
MIN_VECTOR_INDEX_ROWS = 256
# Compaction alone must not prune versions
COMPACTION_RETENTION = timedelta(days=365 * 100)


@dataclass
class IndexInfo:
    """An index as listed by the store."""
    name: str
    columns: List[str]
    index_type: str


@dataclass
class IndexCoverage:
    num_indexed_rows: int
    num_unindexed_rows: int


def record_schema(dimensions: int) -> pa.Schema:
    """Arrow schema of the embeddings table, in StoredRecord.to_row() order."""
    return pa.schema([
        pa.field("id", pa.string()),
        pa.field("base_id", pa.string()),
        pa.field("text_hash", pa.string()),
        pa.field("context_text", pa.string()),
        pa.field("model", pa.string()),
        pa.field("dimensions", pa.int64()),
        pa.field("metadata", pa.string()),
        pa.field("created_at", pa.int64()),
        pa.field("updated_at", pa.int64()),
        pa.field(VECTOR_COLUMN, pa.list_(pa.float32(), dimensions)),
    ])


def sql_literal(value: str) -> str:
    """
    Quote a string as a SQL literal.

    LanceDB filters are SQL strings without bind parameters, so every value
    placed in a predicate goes through here.
    """
    return "'" + str(value).replace("'", "''") + "'"


def in_predicate(column: str, values: Sequence[str]) -> str:
    return f"{column} IN ({', '.join(sql_literal(v) for v in values)})"


class VectorStore(ABC):
    """
    Storage capability consumed by the pipeline, search and maintenance.

    Deleting or reading an absent id is a no-op, never an error.
    """

    db_path: Optional[Path] = None
    min_index_rows: int = 1

    @abstractmethod
    async def add(self, rows: List[Row]) -> None:
        """Bulk insert rows whose ids are not yet stored."""

    @abstractmethod
    async def upsert(self, rows: List[Row]) -> None:
        """Bulk insert-or-replace rows keyed by id."""

    @abstractmethod
    async def delete_ids(self, ids: Iterable[str]) -> None:
        """Delete rows by chunk id."""

    @abstractmethod
    async def delete_bases(self, base_ids: Iterable[str]) -> None:
        """Delete every chunk of the given items."""

    @abstractmethod
    async def get(self, chunk_id: str) -> Optional[Row]:
        """Fetch one row by chunk id."""

    @abstractmethod
    async def get_by_base(self, base_id: str) -> List[Row]:
        """Fetch all chunks of an item."""

    @abstractmethod
    async def nearest(self, vector: np.ndarray, limit: int) -> List[Row]:
        """Nearest rows to a vector, closest first, each with a `_distance`."""

    @abstractmethod
    def scan(self, columns: Sequence[str], page_size: Optional[int] = None) -> AsyncIterator[List[Row]]:
        """Stream the table in pages of the selected columns."""

    @abstractmethod
    async def count_rows(self) -> int:
        """Number of stored rows."""

    @abstractmethod
    async def version(self) -> int:
        """Current table version."""

    @abstractmethod
    async def list_indices(self) -> List[IndexInfo]:
        """Indices that exist on the table."""

    @abstractmethod
    async def index_stats(self, index_name: str) -> Optional[IndexCoverage]:
        """Indexed / unindexed row counts for an index, None if absent."""

    @abstractmethod
    async def create_vector_index(self) -> None:
        """(Re)build the nearest-neighbour index over the vector column."""

    @abstractmethod
    async def compact(self) -> CompactionStats:
        """Merge small storage fragments."""

    @abstractmethod
    async def cleanup_old_versions(self, older_than: timedelta) -> CleanupStats:
        """Prune table versions older than the cutoff."""

    def close(self) -> None:
        """Release connections; the default store holds none."""

    async def vector_index(self) -> Optional[IndexInfo]:
        """The index covering the vector column, if any."""
        for index in await self.list_indices():
            if VECTOR_COLUMN in index.columns:
                return index
        return None


class LanceStore(VectorStore):
    """
    LanceDB-backed vector store.

    The connection is opened once, under a lock, on first use. `ready` and
    `init_error` expose the outcome of that initialization.
    """

    min_index_rows = MIN_VECTOR_INDEX_ROWS

    def __init__(
        self,
        config: ResonaConfig | None = None,
        db_path: Path | str | None = None,
        table_name: str | None = None,
    ):
        self.config = config or get_config()
        path = Path(db_path) if db_path else self.config.db_path
        # LanceDB stores a directory, not a single file
        if path.suffix == ".db":
            path = path.with_suffix(".lance")
        self.db_path = path
        self.table_name = table_name or self.config.table_name

        self._db = None
        self._table = None
        self._init_lock = asyncio.Lock()
        self._ready = False
        self._init_error: Optional[BaseException] = None

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def init_error(self) -> Optional[BaseException]:
        return self._init_error

    async def initialize(self) -> None:
        """Open the database and, if present, the embeddings table."""
        if self._ready:
            return
        async with self._init_lock:
            if self._ready:
                return
            try:
                self._db = await lancedb.connect_async(str(self.db_path))
                if self.table_name in await self._table_list():
                    self._table = await self._db.open_table(self.table_name)
                    await self._ensure_id_index()
            except Exception as e:
                self._init_error = e
                raise StoreError(f"Failed to open {self.db_path}: {e}") from e
            self._init_error = None
            self._ready = True
            logger.debug(f"Opened LanceDB at {self.db_path} (table exists: {self._table is not None})")

    async def _table_list(self) -> List[str]:
        names: List[str] = []
        page_token = None
        while True:
            response = await self._db.list_tables(page_token=page_token)
            names.extend(response.tables)
            page_token = response.page_token
            if not page_token:
                return names

    async def _ensure_id_index(self) -> None:
        """Create a scalar index on id so deletes and lookups stay fast."""
        try:
            indices = await self._table.list_indices()
            if not any("id" in index.columns for index in indices):
                await self._table.create_index("id", config=BTree())
        except Exception as e:
            logger.warning(f"Could not create id index on {self.table_name}: {e}")

    async def _create_table(self, rows: List[Row]) -> None:
        schema = record_schema(len(rows[0][VECTOR_COLUMN]))
        self._table = await self._db.create_table(
            self.table_name, data=rows, schema=schema, mode="overwrite"
        )
        await self._ensure_id_index()
        logger.info(f"Created table {self.table_name} with {len(rows)} rows")

    # --- Writes ---

    async def add(self, rows: List[Row]) -> None:
        if not rows:
            return
        await self.initialize()
        try:
            if self._table is None:
                await self._create_table(rows)
            else:
                await self._table.add(rows)
        except Exception as e:
            raise StoreWriteError(f"Insert of {len(rows)} rows failed: {e}", len(rows)) from e

    async def upsert(self, rows: List[Row]) -> None:
        if not rows:
            return
        await self.initialize()
        try:
            if self._table is None:
                await self._create_table(rows)
            else:
                await (
                    self._table.merge_insert("id")
                    .when_matched_update_all()
                    .when_not_matched_insert_all()
                    .execute(rows)
                )
        except Exception as e:
            raise StoreWriteError(f"Upsert of {len(rows)} rows failed: {e}", len(rows)) from e

    async def delete_ids(self, ids: Iterable[str]) -> None:
        await self._delete_where("id", ids)

    async def delete_bases(self, base_ids: Iterable[str]) -> None:
        await self._delete_where("base_id", base_ids)

    async def _delete_where(self, column: str, values: Iterable[str]) -> None:
        values = list(values)
        await self.initialize()
        if self._table is None or not values:
            return
        try:
            for i in range(0, len(values), DELETE_BATCH_SIZE):
                await self._table.delete(in_predicate(column, values[i:i + DELETE_BATCH_SIZE]))
        except Exception as e:
            raise StoreWriteError(f"Delete of {len(values)} {column} values failed: {e}", len(values)) from e

    # --- Reads ---

    async def get(self, chunk_id: str) -> Optional[Row]:
        await self.initialize()
        if self._table is None:
            return None
        rows = await self._table.query().where(f"id = {sql_literal(chunk_id)}").limit(1).to_list()
        return rows[0] if rows else None

    async def get_by_base(self, base_id: str) -> List[Row]:
        await self.initialize()
        if self._table is None:
            return []
        return await self._table.query().where(f"base_id = {sql_literal(base_id)}").to_list()

    async def nearest(self, vector: np.ndarray, limit: int) -> List[Row]:
        await self.initialize()
        if self._table is None:
            return []
        return await (
            self._table.query()
            .nearest_to(np.asarray(vector, dtype=np.float32))
            .distance_type(self.config.distance_type)
            .select(SEARCH_COLUMNS)
            .limit(limit)
            .to_list()
        )

    async def scan(self, columns: Sequence[str], page_size: Optional[int] = None) -> AsyncIterator[List[Row]]:
        await self.initialize()
        if self._table is None:
            return
        reader = await (
            self._table.query()
            .select(list(columns))
            .to_batches(max_batch_length=page_size or self.config.scan_page_size)
        )
        async for batch in reader:
            yield batch.to_pylist()

    async def count_rows(self) -> int:
        await self.initialize()
        if self._table is None:
            return 0
        return await self._table.count_rows()

    async def version(self) -> int:
        await self.initialize()
        if self._table is None:
            return 0
        return await self._table.version()

    # --- Indices & maintenance ---

    async def list_indices(self) -> List[IndexInfo]:
        await self.initialize()
        if self._table is None:
            return []
        return [
            IndexInfo(name=index.name, columns=list(index.columns), index_type=str(index.index_type))
            for index in await self._table.list_indices()
        ]

    async def index_stats(self, index_name: str) -> Optional[IndexCoverage]:
        await self.initialize()
        if self._table is None:
            return None
        stats = await self._table.index_stats(index_name)
        if stats is None:
            return None
        return IndexCoverage(
            num_indexed_rows=stats.num_indexed_rows,
            num_unindexed_rows=stats.num_unindexed_rows,
        )

    async def create_vector_index(self) -> None:
        await self.initialize()
        if self._table is None:
            return
        rows = await self._table.count_rows()
        num_partitions = max(1, int(math.sqrt(rows)))
        try:
            await self._table.create_index(
                VECTOR_COLUMN,
                config=IvfPq(distance_type=self.config.distance_type, num_partitions=num_partitions),
                replace=True,
            )
        except Exception as e:
            raise StoreError(f"Vector index build over {rows} rows failed: {e}") from e
        logger.info(f"Built IVF_PQ index over {rows} rows ({num_partitions} partitions)")

    async def compact(self) -> CompactionStats:
        await self.initialize()
        if self._table is None:
            return CompactionStats(fragments_removed=0, files_created=0)
        stats = await self._table.optimize(cleanup_older_than=COMPACTION_RETENTION)
        return CompactionStats(
            fragments_removed=stats.compaction.fragments_removed,
            files_created=stats.compaction.files_added,
        )

    async def cleanup_old_versions(self, older_than: timedelta) -> CleanupStats:
        await self.initialize()
        if self._table is None:
            return CleanupStats(bytes_removed=0, versions_removed=0)
        stats = await self._table.optimize(cleanup_older_than=older_than)
        return CleanupStats(
            bytes_removed=stats.prune.bytes_removed,
            versions_removed=stats.prune.old_versions_removed,
        )

    def close(self) -> None:
        """Drop the connection; the next call re-initializes."""
        self._table = None
        self._db = None
        self._ready = False


def get_store(config: ResonaConfig | None = None) -> LanceStore:
    """Create a new store instance."""
    return LanceStore(config)
