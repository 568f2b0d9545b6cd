"""
Federated Search - One query across many registered corpora.

Sources register under hierarchical ids ("tana/main", "email/work"). A query
fans out to the selected sources concurrently; each source has its own
deadline and a failing source never sinks the others.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .config import get_config, ResonaConfig
from .errors import ErrorAction, handle_error
from .models import (
    UNSUPPORTED, FederatedResult, ItemPreview, SourceInfo, SourceRegistration,
    parse_source_id,
)


logger = logging.getLogger(__name__)


class FederatedSearchAggregator:
    """Registry of searchable sources with merged, globally ranked search."""

    def __init__(self, config: ResonaConfig | None = None, search_timeout: Optional[float] = None):
        self.config = config or get_config()
        self.search_timeout = search_timeout if search_timeout is not None else self.config.search_timeout
        self._sources: Dict[str, SourceRegistration] = {}

    # --- Registry ---

    def register(self, registration: SourceRegistration) -> None:
        """Register a source; an existing registration with the same id is replaced."""
        if registration.source_id in self._sources:
            logger.debug(f"Replacing source {registration.source_id}")
        self._sources[registration.source_id] = registration

    def unregister(self, source_id: str) -> bool:
        return self._sources.pop(source_id, None) is not None

    def has_source(self, source_id: str) -> bool:
        return source_id in self._sources

    def list_sources(self) -> List[SourceInfo]:
        return [
            SourceInfo(source_id=r.source_id, description=r.description)
            for r in self._sources.values()
        ]

    def clear(self) -> None:
        self._sources.clear()

    def __len__(self) -> int:
        return len(self._sources)

    # --- Search ---

    def select(
        self,
        source_types: Optional[Iterable[str]] = None,
        sources: Optional[Iterable[str]] = None,
    ) -> List[SourceRegistration]:
        """
        Sources passing both filters.

        `sources` is an exact-id allow-list; `source_types` matches only the
        type component of "type/instance".
        """
        types = set(source_types) if source_types is not None else None
        ids = set(sources) if sources is not None else None

        selected = []
        for registration in self._sources.values():
            if ids is not None and registration.source_id not in ids:
                continue
            if types is not None and parse_source_id(registration.source_id)[0] not in types:
                continue
            selected.append(registration)
        return selected

    async def search(
        self,
        query: str,
        k: int = 10,
        source_types: Optional[Iterable[str]] = None,
        sources: Optional[Iterable[str]] = None,
    ) -> List[FederatedResult]:
        """
        Query every selected source and merge the results.

        Args:
            query: Query text, sent unchanged to each source
            k: Maximum number of merged results
            source_types: Only sources whose type is listed
            sources: Only these exact source ids

        Returns:
            Results from all sources, ranked by similarity, truncated to k
        """
        selected = self.select(source_types, sources)
        if not selected or k <= 0:
            return []

        outcomes = await asyncio.gather(
            *[self._search_source(r, query, k) for r in selected],
            return_exceptions=True,
        )

        merged: List[FederatedResult] = []
        for registration, outcome in zip(selected, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                action = handle_error(outcome, item=registration.source_id, context="federated search")
                if action == ErrorAction.ABORT:
                    raise outcome
                continue
            merged.extend(outcome)

        merged.sort(key=lambda r: r.similarity, reverse=True)
        logger.debug(f"Federated search over {len(selected)} sources: {len(merged)} results")
        return merged[:k]

    async def _search_source(self, registration: SourceRegistration, query: str, k: int) -> List[FederatedResult]:
        results = await asyncio.wait_for(registration.search(query, k), timeout=self.search_timeout)
        return [
            FederatedResult(
                source=registration.source_id,
                id=r.id,
                similarity=r.similarity,
                preview=r.context_text,
                metadata=r.metadata,
            )
            for r in results
        ]

    # --- Items ---

    async def get_item(self, source_id: str, item_id: str) -> Optional[ItemPreview]:
        """Route to the source's get_item; None if the source, capability or item is absent."""
        registration = self._sources.get(source_id)
        if registration is None or registration.get_item is UNSUPPORTED:
            return None
        return await registration.get_item(item_id)
