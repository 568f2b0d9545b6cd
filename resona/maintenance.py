"""
Maintenance - Index health diagnostics and on-demand optimization.

Appends leave rows outside the vector index and every write adds a table
version and small fragments. diagnose() reports how far the index lags;
maintain() compacts fragments, rebuilds a stale index and prunes old versions.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Dict, Optional, TypeVar

from .config import get_config, ResonaConfig
from .models import (
    CleanupStats, CompactionStats, Diagnostics, IndexHealth, IndexRebuild,
    MaintenanceOptions, MaintenanceResult,
)
from .store import IndexCoverage, VectorStore


logger = logging.getLogger(__name__)

T = TypeVar("T")


def index_health(coverage: IndexCoverage, threshold: float) -> IndexHealth:
    """
    Staleness of an index from its row coverage.

    stale_percent is on a 0-100 scale; needs_rebuild once the unindexed
    fraction reaches the threshold.
    """
    total = coverage.num_indexed_rows + coverage.num_unindexed_rows
    stale_fraction = coverage.num_unindexed_rows / total if total else 0.0
    return IndexHealth(
        num_indexed_rows=coverage.num_indexed_rows,
        num_unindexed_rows=coverage.num_unindexed_rows,
        stale_percent=round(stale_fraction * 100, 2),
        needs_rebuild=coverage.num_unindexed_rows > 0 and stale_fraction >= threshold,
    )


class MaintenancePlanner:
    """Evaluates index staleness and runs compaction, rebuild and cleanup."""

    def __init__(self, store: VectorStore, config: ResonaConfig | None = None):
        self.store = store
        self.config = config or get_config()

    def default_options(self) -> MaintenanceOptions:
        return MaintenanceOptions(
            retention_days=self.config.retention_days,
            index_stale_threshold=self.config.index_stale_threshold,
        )

    async def _index_health(self, threshold: float, rows: int) -> Optional[IndexHealth]:
        index = await self.store.vector_index()
        if index is None:
            return None
        coverage = await self.store.index_stats(index.name)
        if coverage is None:
            return None
        health = index_health(coverage, threshold)
        # A rebuild below the training minimum would index nothing
        if rows < self.store.min_index_rows:
            health.needs_rebuild = False
        return health

    async def diagnose(self, threshold: Optional[float] = None) -> Diagnostics:
        """Row count, table version and vector index health (None without an index)."""
        threshold = self.config.index_stale_threshold if threshold is None else threshold
        rows = await self.store.count_rows()
        return Diagnostics(
            total_rows=rows,
            version=await self.store.version(),
            index=await self._index_health(threshold, rows),
            db_path=str(self.store.db_path) if self.store.db_path else None,
        )

    async def maintain(self, options: MaintenanceOptions | None = None) -> MaintenanceResult:
        """
        Run the maintenance steps in order: compaction, index, cleanup.

        Skipped steps stay None in the result. Each step runs under
        options.step_timeout when set; cancelling the awaiting task stops
        the remaining steps.
        """
        options = options or self.default_options()
        started = time.monotonic()
        result = MaintenanceResult()

        if not options.skip_compaction:
            self._progress(options, "compaction", {"status": "started"})
            result.compaction = await self._step(self.store.compact(), options)
            self._progress(options, "compaction", {
                "status": "completed",
                "fragments_removed": result.compaction.fragments_removed,
                "files_created": result.compaction.files_created,
            })

        if not options.skip_index:
            self._progress(options, "index", {"status": "started"})
            result.index = await self._step(self._rebuild_if_needed(options), options)
            self._progress(options, "index", {
                "status": "completed",
                "rebuilt": result.index.rebuilt,
                "num_unindexed_rows": result.index.num_unindexed_rows,
            })

        if not options.skip_cleanup:
            self._progress(options, "cleanup", {"status": "started"})
            older_than = timedelta(days=options.retention_days)
            result.cleanup = await self._step(self.store.cleanup_old_versions(older_than), options)
            self._progress(options, "cleanup", {
                "status": "completed",
                "bytes_removed": result.cleanup.bytes_removed,
                "versions_removed": result.cleanup.versions_removed,
            })

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Maintenance finished in {result.duration_ms}ms")
        return result

    async def _rebuild_if_needed(self, options: MaintenanceOptions) -> IndexRebuild:
        rows = await self.store.count_rows()
        health = await self._index_health(options.index_stale_threshold, rows)

        if rows < self.store.min_index_rows:
            logger.info(f"Skipping vector index: {rows} rows, {self.store.min_index_rows} needed")
            should_rebuild = False
        elif health is None:
            should_rebuild = rows > 0
        else:
            should_rebuild = health.needs_rebuild

        if not should_rebuild:
            indexed = health.num_indexed_rows if health else 0
            unindexed = health.num_unindexed_rows if health else 0
            return IndexRebuild(rebuilt=False, num_indexed_rows=indexed, num_unindexed_rows=unindexed)

        reason = "no vector index" if health is None else f"{health.stale_percent}% stale"
        logger.info(f"Rebuilding vector index over {rows} rows ({reason})")
        await self.store.create_vector_index()

        after = await self._index_health(options.index_stale_threshold, rows)
        if after is None or after.num_indexed_rows == 0:
            logger.warning(f"Vector index build over {rows} rows indexed nothing")
            return IndexRebuild(
                rebuilt=False,
                num_indexed_rows=0,
                num_unindexed_rows=after.num_unindexed_rows if after else rows,
            )
        return IndexRebuild(
            rebuilt=True,
            num_indexed_rows=after.num_indexed_rows,
            num_unindexed_rows=after.num_unindexed_rows,
        )

    async def _step(self, step: Awaitable[T], options: MaintenanceOptions) -> T:
        if options.step_timeout is None:
            return await step
        return await asyncio.wait_for(step, timeout=options.step_timeout)

    def _progress(self, options: MaintenanceOptions, step: str, details: Dict[str, Any]) -> None:
        if options.on_progress is not None:
            options.on_progress(step, details)
