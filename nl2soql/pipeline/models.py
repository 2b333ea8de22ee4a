from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

MAX_OBJECTS = 5
MAX_FIELDS_PER_OBJECT = 25
MAX_PICKLIST_VALUES = 50
MIN_SIMILARITY = 0.5


# --- graph store records -------------------------------------------------


@dataclass
class GraphObject:
    api_name: str
    label: str = ""
    description: Optional[str] = None
    category: Optional[str] = None
    org_id: Optional[str] = None


@dataclass
class GraphField:
    api_name: str
    sobject_type: str
    label: str = ""
    type: str = "string"
    description: Optional[str] = None
    reference_to: List[str] = field(default_factory=list)
    relationship_name: Optional[str] = None


@dataclass
class GraphRelationship:
    source_object: str
    target_object: str
    field_api_name: str
    relationship_name: Optional[str] = None
    direction: str = "outgoing"
    relationship_type: str = "Lookup"


@dataclass
class ChildRelationshipInfo:
    relationship_name: str
    child_object: str
    field_api_name: Optional[str] = None


@dataclass
class PicklistMatch:
    object_api_name: str
    field_api_name: str
    value: str


@dataclass
class RelationshipTarget:
    source_object: str
    target_object: str
    field_api_name: str
    relationship_name: Optional[str] = None


@dataclass
class VectorHit:
    node_id: str
    node_label: str
    score: float
    properties: Dict[str, Any] = field(default_factory=dict)


# --- schema context ------------------------------------------------------


@dataclass
class FieldSchema:
    api_name: str
    label: str
    type: str
    description: Optional[str] = None
    picklist_values: Optional[List[str]] = None
    is_polymorphic: bool = False
    polymorphic_targets: Optional[List[str]] = None
    relationship_name: Optional[str] = None


@dataclass
class ParentRelationship:
    field_api_name: str
    relationship_name: str
    target_object: str


@dataclass
class ChildRelationship:
    relationship_name: str
    child_object: str


@dataclass
class ObjectSchema:
    api_name: str
    label: str
    description: Optional[str] = None
    fields: List[FieldSchema] = field(default_factory=list)
    parent_relationships: List[ParentRelationship] = field(default_factory=list)
    child_relationships: List[ChildRelationship] = field(default_factory=list)


@dataclass
class ContextStats:
    object_count: int = 0
    total_fields: int = 0
    total_relationships: int = 0


@dataclass
class AntiPatternWarning:
    type: str
    element: str
    message: str
    severity: str = "warning"
    suggestion: Optional[str] = None


@dataclass
class SchemaContext:
    objects: List[ObjectSchema] = field(default_factory=list)
    stats: ContextStats = field(default_factory=ContextStats)
    warnings: List[AntiPatternWarning] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.objects

    def object_names(self) -> List[str]:
        return [o.api_name for o in self.objects]


# --- grounding -----------------------------------------------------------


class GroundingType(str, Enum):
    ACCOUNT_NAME = "account_name"
    CONTACT_NAME = "contact_name"
    PERSON_NAME = "person_name"
    COMPANY_NAME = "company_name"
    PICKLIST_VALUE = "picklist_value"
    OBJECT_REFERENCE = "object_reference"
    FIELD_REFERENCE = "field_reference"
    STATUS_VALUE = "status_value"
    PRIORITY_VALUE = "priority_value"
    DATE_REFERENCE = "date_reference"
    NUMERIC_VALUE = "numeric_value"
    ID_REFERENCE = "id_reference"
    UNKNOWN = "unknown"


class GroundingSource(str, Enum):
    EXACT_PICKLIST = "exact_picklist"
    EXACT_OBJECT = "exact_object"
    FUZZY_MATCH = "fuzzy_match"
    SEMANTIC_MATCH = "semantic_match"
    PATTERN_MATCH = "pattern_match"
    LIVE_VERIFIED = "live_verified"
    HEURISTIC = "heuristic"


@dataclass
class GroundingEvidence:
    matched_node: Optional[str] = None
    matched_value: Optional[str] = None
    pattern: Optional[str] = None
    similarity: Optional[float] = None


@dataclass
class GroundingResult:
    value: str
    type: GroundingType
    confidence: float
    suggested_filter: str
    fields: List[str] = field(default_factory=list)
    source: GroundingSource = GroundingSource.HEURISTIC
    evidence: GroundingEvidence = field(default_factory=GroundingEvidence)
    alternatives: List[str] = field(default_factory=list)


@dataclass
class GroundedEntity:
    value: str
    results: List[GroundingResult] = field(default_factory=list)

    @property
    def best_match(self) -> Optional[GroundingResult]:
        if not self.results:
            return None
        return max(self.results, key=lambda r: r.confidence)


# --- field pruning -------------------------------------------------------


@dataclass
class ScopedFieldResult:
    object_api_name: str
    fields: List[str]
    vector_matched: List[str] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)
    used_fallback: bool = False


# --- few-shot ------------------------------------------------------------


@dataclass(frozen=True)
class SoqlExample:
    id: str
    question: str
    soql: str
    complexity: str = "simple"
    patterns: Tuple[str, ...] = ()
    objects: Tuple[str, ...] = ()
    explanation: Optional[str] = None


@dataclass(frozen=True)
class StoredExample(SoqlExample):
    embedding_model: str = ""
    content_hash: str = ""


# --- validation ----------------------------------------------------------


@dataclass
class ValidationMessage:
    type: str  # error | warning | correction
    message: str
    original: Optional[str] = None
    corrected: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.type == "error"


__all__ = [
    "MAX_OBJECTS",
    "MAX_FIELDS_PER_OBJECT",
    "MAX_PICKLIST_VALUES",
    "MIN_SIMILARITY",
    "GraphObject",
    "GraphField",
    "GraphRelationship",
    "ChildRelationshipInfo",
    "PicklistMatch",
    "RelationshipTarget",
    "VectorHit",
    "FieldSchema",
    "ParentRelationship",
    "ChildRelationship",
    "ObjectSchema",
    "ContextStats",
    "AntiPatternWarning",
    "SchemaContext",
    "GroundingType",
    "GroundingSource",
    "GroundingEvidence",
    "GroundingResult",
    "GroundedEntity",
    "ScopedFieldResult",
    "SoqlExample",
    "StoredExample",
    "ValidationMessage",
]
