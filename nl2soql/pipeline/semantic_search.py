from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .graph_store import FIELD_INDEX, OBJECT_INDEX, GraphStore
from .models import MIN_SIMILARITY, GraphField, GraphObject
from .utils import normalize_text

logger = logging.getLogger(__name__)

EXACT_SIMILARITY = 1.0
VARIANT_SIMILARITY = 0.85
VECTOR_TOP_K = 10

STANDARD_OBJECT_SYNONYMS: Dict[str, List[str]] = {
    "Account": ["acct", "acc", "company", "companies", "organization", "org", "client", "customer", "business", "vendor", "partner"],
    "Contact": ["con", "person", "people", "individual"],
    "Opportunity": ["opp", "oppty", "deal", "deals", "potential sale", "revenue", "negotiation", "pipeline"],
    "Lead": ["ld", "prospect", "potential customer", "suspect", "inquiry"],
    "Case": ["cs", "ticket", "issue", "problem", "request", "incident", "support request", "complaint"],
    "Task": ["todo", "action item", "activity", "reminder"],
    "Event": ["meeting", "appointment", "calendar entry", "scheduled item"],
    "User": ["agent", "rep", "employee", "owner", "staff member"],
    "Campaign": ["marketing campaign", "promotion"],
    "Product2": ["product", "item", "sku"],
    "Pricebook2": ["pricebook", "price book", "price list"],
    "Contract": ["agreement"],
    "Order": ["purchase order", "po"],
    "Asset": ["installed product"],
    "Quote": ["proposal", "estimate"],
    "OpportunityLineItem": ["opportunity product", "line item"],
}


@dataclass
class SemanticMatch:
    api_name: str
    label: str
    similarity: float
    match_type: str  # exact | fuzzy | semantic
    object_api_name: Optional[str] = None


def _strip_custom(api_name: str) -> str:
    return api_name[:-3] if api_name.lower().endswith("__c") else api_name


def get_variants(term: str) -> List[str]:
    """Singular/plural forms plus standard-object synonyms, normalized."""
    base = normalize_text(term)
    if not base:
        return []
    variants = {base}
    if base.endswith("ies") and len(base) > 3:
        variants.add(base[:-3] + "y")
    elif base.endswith("es") and len(base) > 2:
        variants.add(base[:-2])
        variants.add(base[:-1])
    elif base.endswith("s") and len(base) > 1:
        variants.add(base[:-1])
    else:
        variants.add(base + "s")
    for canonical_name, synonyms in STANDARD_OBJECT_SYNONYMS.items():
        canon = normalize_text(canonical_name)
        normalized_syns = [normalize_text(s) for s in synonyms]
        if variants & set(normalized_syns):
            variants.add(canon)
        if canon in variants:
            variants.update(normalized_syns)
    variants.discard(base)
    return [base] + sorted(variants)


class SemanticSearchService:
    def __init__(self, graph_store: GraphStore, embedder=None) -> None:
        self.graph_store = graph_store
        self.embedder = embedder
        self._object_index: Dict[Optional[str], Dict[str, GraphObject]] = {}
        self._field_index: Dict[Optional[str], List[GraphField]] = {}

    async def _objects_by_name(self, org_id: Optional[str]) -> Dict[str, GraphObject]:
        if org_id not in self._object_index:
            index: Dict[str, GraphObject] = {}
            for obj in await self.graph_store.get_all_objects(org_id):
                index.setdefault(normalize_text(obj.label or obj.api_name), obj)
                index.setdefault(normalize_text(obj.api_name), obj)
                index.setdefault(normalize_text(_strip_custom(obj.api_name).replace("_", " ")), obj)
            self._object_index[org_id] = index
        return self._object_index[org_id]

    async def _all_fields(self, org_id: Optional[str]) -> List[GraphField]:
        if org_id not in self._field_index:
            self._field_index[org_id] = await self.graph_store.get_all_fields(org_id)
        return self._field_index[org_id]

    def invalidate(self) -> None:
        self._object_index.clear()
        self._field_index.clear()

    async def _vector_ready(self) -> bool:
        if self.embedder is None:
            return False
        return await self.graph_store.is_available() and await self.embedder.is_available()

    async def find_objects(
        self, term: str, org_id: Optional[str] = None, *, top_k: int = VECTOR_TOP_K, min_similarity: float = MIN_SIMILARITY
    ) -> List[SemanticMatch]:
        """Exact, then variant, then vector; the first tier with hits wins."""
        matches = await self.lookup_objects(term, org_id)
        if matches:
            return matches
        return await self.vector_objects(term, org_id, top_k=top_k, min_similarity=min_similarity)

    async def lookup_objects(self, term: str, org_id: Optional[str] = None) -> List[SemanticMatch]:
        normalized = normalize_text(term)
        if not normalized:
            return []
        try:
            index = await self._objects_by_name(org_id)
        except Exception as exc:
            logger.warning("object index unavailable for %r: %s", term, exc)
            return []

        exact = index.get(normalized)
        if exact:
            return [SemanticMatch(exact.api_name, exact.label, EXACT_SIMILARITY, "exact")]

        fuzzy: List[SemanticMatch] = []
        seen = set()
        for variant in get_variants(term)[1:]:
            obj = index.get(variant)
            if obj and obj.api_name not in seen:
                seen.add(obj.api_name)
                fuzzy.append(SemanticMatch(obj.api_name, obj.label, VARIANT_SIMILARITY, "fuzzy"))
        return fuzzy

    async def vector_objects(
        self, term: str, org_id: Optional[str] = None, *, top_k: int = VECTOR_TOP_K, min_similarity: float = MIN_SIMILARITY
    ) -> List[SemanticMatch]:
        if not normalize_text(term):
            return []
        try:
            if not await self._vector_ready():
                return []
            vector = await self.embedder.embed(term)
            hits = await self.graph_store.vector_search(OBJECT_INDEX, vector, top_k, min_score=min_similarity)
        except Exception as exc:
            logger.warning("object vector search failed for %r: %s", term, exc)
            return []
        return [
            SemanticMatch(h.node_id, str(h.properties.get("label") or h.node_id), h.score, "semantic")
            for h in hits
        ]

    async def find_fields(
        self,
        term: str,
        object_api_name: Optional[str] = None,
        org_id: Optional[str] = None,
        *,
        top_k: int = VECTOR_TOP_K,
        min_similarity: float = MIN_SIMILARITY,
    ) -> List[SemanticMatch]:
        normalized = normalize_text(term)
        if not normalized:
            return []
        try:
            if object_api_name:
                fields = await self.graph_store.get_object_fields(object_api_name, org_id)
            else:
                fields = await self._all_fields(org_id)
        except Exception as exc:
            logger.warning("field lookup failed for %r: %s", term, exc)
            return []

        def _keys(fld: GraphField) -> Tuple[str, str]:
            return normalize_text(fld.label or fld.api_name), normalize_text(_strip_custom(fld.api_name).replace("_", " "))

        exact = [f for f in fields if normalized in _keys(f) or normalized == normalize_text(f.api_name)]
        if exact:
            return [SemanticMatch(f.api_name, f.label, EXACT_SIMILARITY, "exact", f.sobject_type) for f in exact]

        variants = set(get_variants(term)[1:])
        fuzzy = [f for f in fields if variants & set(_keys(f))]
        if fuzzy:
            return [SemanticMatch(f.api_name, f.label, VARIANT_SIMILARITY, "fuzzy", f.sobject_type) for f in fuzzy]

        try:
            if not await self._vector_ready():
                return []
            vector = await self.embedder.embed(term)
            filters = {"sobjectType": object_api_name} if object_api_name else None
            hits = await self.graph_store.vector_search(FIELD_INDEX, vector, top_k, min_score=min_similarity, filters=filters)
        except Exception as exc:
            logger.warning("field vector search failed for %r: %s", term, exc)
            return []
        return [
            SemanticMatch(h.node_id, str(h.properties.get("label") or h.node_id), h.score, "semantic", h.properties.get("sobjectType"))
            for h in hits
        ]


__all__ = [
    "SemanticSearchService",
    "SemanticMatch",
    "STANDARD_OBJECT_SYNONYMS",
    "get_variants",
    "EXACT_SIMILARITY",
    "VARIANT_SIMILARITY",
]
