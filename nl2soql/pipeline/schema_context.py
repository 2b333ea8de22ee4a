"""
Schema context for prompt construction.

Maps a question onto a handful of objects from the metadata graph and keeps,
per object, the fields most likely to matter plus the relationships needed to
join them. The result is bounded by MAX_OBJECTS and MAX_FIELDS_PER_OBJECT.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .anti_patterns import detect_anti_patterns
from .graph_store import GraphStore
from .models import (
    MAX_FIELDS_PER_OBJECT,
    MAX_OBJECTS,
    MAX_PICKLIST_VALUES,
    ChildRelationship,
    ContextStats,
    FieldSchema,
    GraphField,
    GraphObject,
    ObjectSchema,
    ParentRelationship,
    SchemaContext,
)
from .semantic_search import SemanticMatch, SemanticSearchService
from .utils import dedupe, normalize_text

logger = logging.getLogger(__name__)

MIN_TERM_LENGTH = 3
ALWAYS_INCLUDE_FIELDS = ("Id", "Name", "CreatedDate", "LastModifiedDate", "OwnerId")
PICKLIST_TYPES = {"picklist", "multipicklist"}

EXACT_MATCH_SCORE = 10
PARTIAL_MATCH_SCORE = 5
DESCRIPTION_MATCH_SCORE = 2
REFERENCE_BOOST = 1

STOPWORDS = {
    "a", "an", "the", "and", "or", "of", "in", "on", "at", "to", "for", "with",
    "from", "by", "show", "me", "get", "all", "find", "list", "that", "have",
    "what", "is", "are", "was", "were", "which", "who", "their", "its",
}


@dataclass(frozen=True)
class PolymorphicInfo:
    relationship_name: str
    description: str
    common_targets: Tuple[str, ...]


KNOWN_POLYMORPHIC_FIELDS: Dict[str, PolymorphicInfo] = {
    "WhoId": PolymorphicInfo("Who", "References a person (Contact or Lead)", ("Contact", "Lead")),
    "WhatId": PolymorphicInfo(
        "What",
        "References a business object (Account, Opportunity, Case, etc.)",
        ("Account", "Opportunity", "Case", "Campaign", "Contract"),
    ),
    "OwnerId": PolymorphicInfo("Owner", "References User or Queue", ("User", "Group")),
}


@dataclass
class RelationshipIntent:
    type: str  # parent_lookup | child_subquery
    source_entity: str
    target_entity: str
    phrase: str


_PARENT_PATTERNS = [
    re.compile(r"(\w+)\s+with\s+(?:their\s+)?(\w+)\s+(?:name|id|details?|info(?:rmation)?)\b"),
    re.compile(r"(\w+)\s+including\s+(\w+)\s+(?:name|id|details?)\b"),
    re.compile(r"(\w+)\s+and\s+(?:their\s+)?(\w+)\s+(?:name|id)\b"),
]
_CHILD_PATTERNS = [
    re.compile(r"(\w+)\s+that\s+have\s+(\w+s)\b"),
    re.compile(r"(\w+)\s+with\s+(?:their\s+)?(?:all\s+)?(\w+s)\b(?!\s+(?:name|id|details?))"),
    re.compile(r"(\w+)\s+and\s+(?:their\s+)?(\w+s)\b(?!\s+(?:name|id))"),
    re.compile(r"(\w+)\s+(?:including|showing)\s+(?:all\s+)?(?:related\s+)?(\w+s)\b"),
]
_CAPITALIZED_SPAN_RE = re.compile(r"\b[A-Z][A-Za-z0-9&'-]*(?:\s+[A-Z][A-Za-z0-9&'-]*)+\b")


def _entity_name(word: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_]", "", word.lower())
    return cleaned[:1].upper() + cleaned[1:]


def detect_relationship_intent(query: str) -> List[RelationshipIntent]:
    """Phrases implying a dot-notation parent lookup or a child subquery."""
    lowered = query.lower()
    intents: List[RelationshipIntent] = []
    for kind, patterns in (("parent_lookup", _PARENT_PATTERNS), ("child_subquery", _CHILD_PATTERNS)):
        for pattern in patterns:
            for match in pattern.finditer(lowered):
                source, target = _entity_name(match.group(1)), _entity_name(match.group(2))
                if source != target:
                    intents.append(RelationshipIntent(kind, source, target, match.group(0)))
    seen = set()
    unique: List[RelationshipIntent] = []
    for intent in intents:
        key = (intent.type, intent.source_entity, intent.target_entity)
        if key not in seen:
            seen.add(key)
            unique.append(intent)
    return unique


def extract_search_terms(query: str) -> List[str]:
    """Stopword-filtered lowercase tokens, then capitalized multi-word spans."""
    tokens = [t for t in normalize_text(query).split() if len(t) >= MIN_TERM_LENGTH and t not in STOPWORDS]
    spans = [m.group(0) for m in _CAPITALIZED_SPAN_RE.finditer(query)]
    return dedupe(tokens + spans)


@dataclass
class ExtractedTerms:
    entities: List[str]
    potential_values: List[str]


_VALUE_KEYWORDS = {
    "high", "medium", "low", "critical", "urgent", "normal", "open", "closed",
    "new", "pending", "escalated", "won", "lost", "active", "inactive",
}
_COMPANY_PATTERNS = (
    re.compile(r"(?:for|from)\s+(\w+)\s+(?:deals?|accounts?|opportunities?|cases?)", re.IGNORECASE),
    re.compile(r"(\w+)\s+(?:deals?|accounts?|opportunities?|cases?)\s+(?:owned|with|where)", re.IGNORECASE),
)
_NOT_COMPANIES = {"the", "all", "my", "our", "their", "some", "any", "open", "closed", "new"}
_CUSTOM_NAME_RE = re.compile(r"\b(\w+__c)\b", re.IGNORECASE)
_CAPITALIZED_WORD_RE = re.compile(r"\b([A-Z][a-z]+(?:[A-Z][a-z]+)*)\b")
_NOT_ENTITIES = {"The", "Show", "Get", "Find", "All", "With", "From", "And", "For"}


def extract_potential_entities(query: str) -> ExtractedTerms:
    """
    Syntactic candidates the graph search cannot find on its own.

    Status and priority keywords become capitalized values, "for X deals"
    style phrases yield company names, ``__c`` names are explicit API names,
    and capitalized words count as both.
    """
    entities: List[str] = []
    values: List[str] = []
    for word in query.lower().split():
        cleaned = re.sub(r"[^a-z0-9_]", "", word)
        if cleaned in _VALUE_KEYWORDS:
            values.append(cleaned.capitalize())
    for pattern in _COMPANY_PATTERNS:
        for match in pattern.finditer(query):
            if match.group(1).lower() not in _NOT_COMPANIES:
                values.append(match.group(1))
    entities.extend(m.group(1) for m in _CUSTOM_NAME_RE.finditer(query))
    for match in _CAPITALIZED_WORD_RE.finditer(query):
        word = match.group(1)
        if len(word) > 2 and word not in _NOT_ENTITIES:
            entities.append(word)
            values.append(word)
    return ExtractedTerms(entities=dedupe(entities), potential_values=dedupe(values))


def query_terms(query: str) -> List[str]:
    return [t for t in normalize_text(query).split() if t]


def calculate_field_relevance(fld: GraphField, terms: Sequence[str], min_term_length: int = MIN_TERM_LENGTH) -> int:
    score = 0
    api_name = fld.api_name.lower()
    label = (fld.label or "").lower()
    description = (fld.description or "").lower()
    for term in terms:
        if len(term) < min_term_length:
            continue
        if term in (api_name, label):
            score += EXACT_MATCH_SCORE
        elif term in api_name or term in label:
            score += PARTIAL_MATCH_SCORE
        elif term in description:
            score += DESCRIPTION_MATCH_SCORE
    if fld.type == "reference":
        score += REFERENCE_BOOST
    return score


def select_relevant_fields(
    fields: Sequence[GraphField], query: str, limit: int = MAX_FIELDS_PER_OBJECT
) -> List[GraphField]:
    """Always-include fields first, then the best-scoring rest up to ``limit``."""
    must_have = [f for f in fields if f.api_name in ALWAYS_INCLUDE_FIELDS]
    others = [f for f in fields if f.api_name not in ALWAYS_INCLUDE_FIELDS]
    terms = query_terms(query)
    ranked = sorted(others, key=lambda f: (-calculate_field_relevance(f, terms), f.api_name))
    slots = max(0, limit - len(must_have))
    return must_have + ranked[:slots]


def enrich_polymorphic_field(schema: FieldSchema, source: Optional[GraphField]) -> FieldSchema:
    targets = list(source.reference_to) if source else []
    if len(targets) < 2:
        schema.is_polymorphic = False
        schema.polymorphic_targets = None
        schema.relationship_name = None
        return schema
    relationship = source.relationship_name if source else None
    if not relationship and schema.api_name in KNOWN_POLYMORPHIC_FIELDS:
        relationship = KNOWN_POLYMORPHIC_FIELDS[schema.api_name].relationship_name
    if not relationship and schema.api_name.endswith("Id"):
        relationship = schema.api_name[:-2]
    schema.is_polymorphic = True
    schema.polymorphic_targets = targets
    schema.relationship_name = relationship
    return schema


class SchemaContextBuilder:
    def __init__(self, search: SemanticSearchService, graph_store: GraphStore, cache=None) -> None:
        self.search = search
        self.graph_store = graph_store
        self.cache = cache

    async def get_context(self, query: str, org_id: Optional[str] = None) -> SchemaContext:
        """Cached front door to build_context."""
        if self.cache is not None:
            cached = self.cache.get(query, org_id)
            if cached is not None:
                return cached
        context = await self.build_context(query, org_id)
        if self.cache is not None:
            self.cache.set(query, context, org_id)
        return context

    def invalidate_cache(self, org_id: Optional[str] = None) -> None:
        if self.cache is None:
            return
        if org_id:
            self.cache.invalidate(org_id)
        else:
            self.cache.clear()

    async def _search_term(self, term: str, org_id: Optional[str]) -> List[SemanticMatch]:
        try:
            return await self.search.find_objects(term, org_id)
        except Exception as exc:
            logger.warning("object search failed for term %r: %s", term, exc)
            return []

    async def match_objects(self, query: str, org_id: Optional[str] = None) -> List[str]:
        terms = extract_search_terms(query)
        if not terms:
            return []
        per_term = await asyncio.gather(*(self._search_term(t, org_id) for t in terms))
        best: Dict[str, float] = {}
        for matches in per_term:
            for match in matches:
                if match.similarity > best.get(match.api_name, -1.0):
                    best[match.api_name] = match.similarity
        ranked = sorted(best.items(), key=lambda item: (-item[1], item[0]))
        return [name for name, _score in ranked[:MAX_OBJECTS]]

    async def build_context(self, query: str, org_id: Optional[str] = None) -> SchemaContext:
        names = await self.match_objects(query, org_id)
        if not names:
            logger.debug("no objects matched %r", query)
            return SchemaContext()

        built = await asyncio.gather(*(self._safe_object_schema(n, query, org_id) for n in names))
        objects = [schema for schema, _category in built if schema is not None]
        categories = {schema.api_name: category for schema, category in built if schema is not None}
        stats = ContextStats(
            object_count=len(objects),
            total_fields=sum(len(o.fields) for o in objects),
            total_relationships=sum(len(o.parent_relationships) + len(o.child_relationships) for o in objects),
        )
        warnings = detect_anti_patterns([o.api_name for o in objects], query, categories)
        logger.debug("schema context for %r: %s objects, %s fields", query, stats.object_count, stats.total_fields)
        return SchemaContext(objects=objects, stats=stats, warnings=warnings)

    async def _safe_object_schema(
        self, api_name: str, query: str, org_id: Optional[str]
    ) -> Tuple[Optional[ObjectSchema], Optional[str]]:
        try:
            obj = await self.graph_store.get_object(api_name, org_id)
            if obj is None:
                return None, None
            return await self.build_object_schema(obj, query, org_id), obj.category
        except Exception as exc:
            logger.warning("failed to build schema for %s: %s", api_name, exc)
            return None, None

    async def build_object_schema(self, obj: GraphObject, query: str, org_id: Optional[str] = None) -> ObjectSchema:
        fields = await self.graph_store.get_object_fields(obj.api_name, org_id)
        relationships = await self.graph_store.get_object_relationships(obj.api_name, org_id)
        try:
            children = await self.graph_store.get_child_relationships(obj.api_name, org_id)
        except Exception as exc:
            logger.debug("no child relationships for %s: %s", obj.api_name, exc)
            children = []

        by_name = {f.api_name: f for f in fields}
        schemas: List[FieldSchema] = []
        for fld in select_relevant_fields(fields, query):
            schema = FieldSchema(
                api_name=fld.api_name,
                label=fld.label or fld.api_name,
                type=fld.type,
                description=fld.description or None,
                picklist_values=await self._picklist_values(obj.api_name, fld, org_id),
            )
            schemas.append(enrich_polymorphic_field(schema, by_name.get(fld.api_name)))

        parents = [
            ParentRelationship(r.field_api_name, r.relationship_name, r.target_object)
            for r in relationships
            if r.direction == "outgoing" and r.relationship_name and r.field_api_name
        ]
        child_rels = [ChildRelationship(c.relationship_name, c.child_object) for c in children if c.relationship_name]
        return ObjectSchema(
            api_name=obj.api_name,
            label=obj.label or obj.api_name,
            description=obj.description or None,
            fields=schemas,
            parent_relationships=parents,
            child_relationships=child_rels,
        )

    async def _picklist_values(self, object_api_name: str, fld: GraphField, org_id: Optional[str]) -> Optional[List[str]]:
        if fld.type not in PICKLIST_TYPES:
            return None
        try:
            values = await self.graph_store.get_picklist_values(object_api_name, fld.api_name, org_id)
        except Exception as exc:
            logger.warning("failed to fetch picklist values for %s.%s: %s", object_api_name, fld.api_name, exc)
            return None
        return list(values[:MAX_PICKLIST_VALUES])


__all__ = [
    "SchemaContextBuilder",
    "RelationshipIntent",
    "PolymorphicInfo",
    "KNOWN_POLYMORPHIC_FIELDS",
    "ALWAYS_INCLUDE_FIELDS",
    "STOPWORDS",
    "detect_relationship_intent",
    "extract_search_terms",
    "extract_potential_entities",
    "ExtractedTerms",
    "calculate_field_relevance",
    "select_relevant_fields",
    "enrich_polymorphic_field",
]
