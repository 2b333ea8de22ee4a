"""
Per-table field pruning over the field vector index.

Every target table is searched on its own, with the index filtered to that
table's fields, so relevance is judged within the table rather than across
the whole schema. The vector backend applies its result limit before the
filter, hence the large over-fetch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from .config import DEFAULT_SCOPED_OVERFETCH
from .graph_store import FIELD_INDEX, GraphStore
from .models import ScopedFieldResult

logger = logging.getLogger(__name__)

CORE_FIELDS = ("Id", "Name", "CreatedDate", "SystemModstamp")
DEFAULT_MAX_FIELDS_PER_TABLE = 15
DEFAULT_MIN_SCORE = 0.3


def core_only(table: str) -> ScopedFieldResult:
    return ScopedFieldResult(object_api_name=table, fields=list(CORE_FIELDS), used_fallback=True)


class ScopedFieldSearcher:
    def __init__(self, graph_store: GraphStore, embedder=None, overfetch: int = DEFAULT_SCOPED_OVERFETCH) -> None:
        self.graph_store = graph_store
        self.embedder = embedder
        self.overfetch = overfetch

    async def search_fields_scoped(
        self,
        target_tables: Sequence[str],
        query: str,
        max_fields_per_table: int = DEFAULT_MAX_FIELDS_PER_TABLE,
        min_score: float = DEFAULT_MIN_SCORE,
        org_id: Optional[str] = None,
    ) -> List[ScopedFieldResult]:
        tables = list(target_tables)
        if not tables:
            return []

        vector = await self._embed_query(query)
        if vector is None:
            return [core_only(t) for t in tables]

        results = await asyncio.gather(
            *(self._search_table(t, vector, max_fields_per_table, min_score) for t in tables)
        )
        logger.info(
            "scoped field search: %s tables, %s vector matches, %s fallbacks",
            len(tables),
            sum(len(r.vector_matched) for r in results),
            sum(1 for r in results if r.used_fallback),
        )
        return list(results)

    async def _embed_query(self, query: str) -> Optional[List[float]]:
        if self.embedder is None:
            return None
        try:
            if not await self.graph_store.is_available():
                logger.warning("vector store unavailable; using core fields only")
                return None
            return list(await self.embedder.embed(query))
        except Exception as exc:
            logger.error("query embedding failed; using core fields only: %s", exc)
            return None

    async def _search_table(
        self, table: str, vector: Sequence[float], max_fields: int, min_score: float
    ) -> ScopedFieldResult:
        try:
            hits = await self.graph_store.vector_search(
                FIELD_INDEX, vector, self.overfetch, min_score=min_score, filters={"sobjectType": table}
            )
        except Exception as exc:
            logger.warning("field search failed for %s; using core fields only: %s", table, exc)
            return core_only(table)

        matched: List[str] = []
        scores: Dict[str, float] = {}
        for hit in hits:
            name = hit.properties.get("apiName") or hit.node_id
            if name and name not in scores:
                matched.append(name)
                scores[name] = hit.score

        missing_core = [f for f in CORE_FIELDS if f not in scores]
        slots = max(0, max_fields - len(missing_core))
        fields = list(CORE_FIELDS) + [f for f in matched[:slots] if f not in CORE_FIELDS]
        logger.debug("table %s: %s vector matches, %s fields kept", table, len(matched), len(fields))
        return ScopedFieldResult(
            object_api_name=table,
            fields=fields,
            vector_matched=matched,
            scores=scores,
            used_fallback=not matched,
        )


def get_field_max_score(results: Sequence[ScopedFieldResult], field_name: str) -> Optional[float]:
    best: Optional[float] = None
    for result in results:
        score = result.scores.get(field_name)
        if score is not None and (best is None or score > best):
            best = score
    return best


def field_map(results: Sequence[ScopedFieldResult]) -> Dict[str, List[str]]:
    return {r.object_api_name: list(r.fields) for r in results}


__all__ = [
    "ScopedFieldSearcher",
    "CORE_FIELDS",
    "core_only",
    "get_field_max_score",
    "field_map",
    "DEFAULT_MAX_FIELDS_PER_TABLE",
    "DEFAULT_MIN_SCORE",
]
