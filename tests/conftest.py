"""
Test Configuration - Shared fixtures and test doubles for resona tests.

The in-memory store and the deterministic backend stand in for LanceDB and
a real embedding provider so pipeline, search and maintenance behaviour can
be checked without a model or a database.
"""

import hashlib
import re
import shutil
import tempfile
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Sequence, Set

import numpy as np
import pytest

from resona.config import ResonaConfig, set_config
from resona.embedders.base import EmbeddingBackend
from resona.errors import BackendError, StoreWriteError
from resona.models import CleanupStats, CompactionStats, Item
from resona.store import IndexCoverage, IndexInfo, Row, SEARCH_COLUMNS, VectorStore


FAKE_DIMENSIONS = 64


def text_vector(text: str, dimensions: int = FAKE_DIMENSIONS) -> np.ndarray:
    """Normalized bag-of-words vector; shared words mean higher similarity."""
    vector = np.zeros(dimensions, dtype=np.float32)
    for word in re.findall(r"\w+", text.lower()):
        slot = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimensions
        vector[slot] += 1.0
    norm = np.linalg.norm(vector)
    if norm == 0:
        vector[0] = 1.0
        return vector
    return vector / norm


class FakeBackend(EmbeddingBackend):
    """Deterministic backend that records every batch call."""

    name = "fake"

    def __init__(
        self,
        max_batch_size: int = 10,
        fail_when: Optional[Callable[[str], bool]] = None,
        delay: float = 0.0,
        model: str = "fake-embed",
        dimensions: int = FAKE_DIMENSIONS,
    ):
        self.model = model
        self.dimensions = dimensions
        self.max_batch_size = max_batch_size
        self.fail_when = fail_when
        self.delay = delay
        self.calls: List[List[str]] = []

    def embed(self, texts: List[str]) -> List[np.ndarray]:
        self.calls.append(list(texts))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_when and any(self.fail_when(t) for t in texts):
            raise BackendError("simulated backend failure")
        return [text_vector(t, self.dimensions) for t in texts]

    @property
    def embedded_texts(self) -> List[str]:
        return [t for call in self.calls for t in call]


class InMemoryStore(VectorStore):
    """
    VectorStore kept in a dict, with call recording and failure injection.

    fail_writes makes the next N add/upsert calls fail; fail_ids makes any
    write containing one of those ids fail.
    """

    def __init__(self):
        self.rows: Dict[str, Row] = {}
        self.add_calls: List[int] = []
        self.upsert_calls: List[int] = []
        self.delete_calls: List[List[str]] = []
        self.compact_calls = 0
        self.cleanup_calls: List[timedelta] = []
        self.fail_writes = 0
        self.fail_ids: Set[str] = set()
        self.index_name: Optional[str] = None
        self.indexed_ids: Set[str] = set()
        self._version = 1

    def _check_write(self, rows: List[Row]) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StoreWriteError("simulated write failure", len(rows))
        if any(row["id"] in self.fail_ids for row in rows):
            raise StoreWriteError("simulated write failure", len(rows))

    async def add(self, rows: List[Row]) -> None:
        self._check_write(rows)
        for row in rows:
            if row["id"] in self.rows:
                raise StoreWriteError(f"duplicate insert of {row['id']}", len(rows))
        for row in rows:
            self.rows[row["id"]] = dict(row)
        self.add_calls.append(len(rows))
        self._version += 1

    async def upsert(self, rows: List[Row]) -> None:
        self._check_write(rows)
        for row in rows:
            self.rows[row["id"]] = dict(row)
        self.upsert_calls.append(len(rows))
        self._version += 1

    async def delete_ids(self, ids) -> None:
        ids = list(ids)
        self.delete_calls.append(ids)
        for chunk_id in ids:
            self.rows.pop(chunk_id, None)
        self._version += 1

    async def delete_bases(self, base_ids) -> None:
        bases = set(base_ids)
        doomed = [cid for cid, row in self.rows.items() if row["base_id"] in bases]
        await self.delete_ids(doomed)

    async def get(self, chunk_id: str) -> Optional[Row]:
        row = self.rows.get(chunk_id)
        return dict(row) if row else None

    async def get_by_base(self, base_id: str) -> List[Row]:
        return [dict(row) for row in self.rows.values() if row["base_id"] == base_id]

    async def nearest(self, vector: np.ndarray, limit: int) -> List[Row]:
        query = np.asarray(vector, dtype=np.float32)
        scored = []
        for row in self.rows.values():
            stored = np.asarray(row["vector"], dtype=np.float32)
            denom = float(np.linalg.norm(query) * np.linalg.norm(stored)) or 1.0
            distance = 1.0 - float(np.dot(query, stored)) / denom
            result = {column: row.get(column) for column in SEARCH_COLUMNS}
            result["_distance"] = distance
            scored.append(result)
        scored.sort(key=lambda r: r["_distance"])
        return scored[:limit]

    async def scan(self, columns: Sequence[str], page_size: Optional[int] = None):
        rows = list(self.rows.values())
        size = page_size or 1000
        for i in range(0, len(rows), size):
            yield [{column: row.get(column) for column in columns} for row in rows[i:i + size]]

    async def count_rows(self) -> int:
        return len(self.rows)

    async def version(self) -> int:
        return self._version

    async def list_indices(self) -> List[IndexInfo]:
        if self.index_name is None:
            return []
        return [IndexInfo(name=self.index_name, columns=["vector"], index_type="IvfPq")]

    async def index_stats(self, index_name: str) -> Optional[IndexCoverage]:
        if index_name != self.index_name:
            return None
        indexed = len(self.indexed_ids & set(self.rows))
        return IndexCoverage(num_indexed_rows=indexed, num_unindexed_rows=len(self.rows) - indexed)

    async def create_vector_index(self) -> None:
        self.index_name = "vector_idx"
        self.indexed_ids = set(self.rows)

    async def compact(self) -> CompactionStats:
        self.compact_calls += 1
        return CompactionStats(fragments_removed=4, files_created=1)

    async def cleanup_old_versions(self, older_than: timedelta) -> CleanupStats:
        self.cleanup_calls.append(older_than)
        return CleanupStats(bytes_removed=2048, versions_removed=3)

    def base_ids(self) -> Set[str]:
        return {row["base_id"] for row in self.rows.values()}

    def chunk_ids_of(self, base_id: str) -> Set[str]:
        return {cid for cid, row in self.rows.items() if row["base_id"] == base_id}


def make_items(count: int, prefix: str = "item", text: str = "note number {i} about topic {i}") -> List[Item]:
    return [Item(id=f"{prefix}-{i}", text=text.format(i=i)) for i in range(count)]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="resona_test_")
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ResonaConfig:
    """Create an isolated test configuration."""
    config = ResonaConfig(
        db_path=temp_dir / "test.lance",
        provider="ollama",
        model="nomic-embed-text",
        store_batch_size=100,
        progress_interval=10,
        embed_timeout=5.0,
        search_timeout=1.0,
        scan_page_size=7,
    )
    set_config(config)
    return config


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
