from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    ChildRelationshipInfo,
    GraphField,
    GraphObject,
    GraphRelationship,
    PicklistMatch,
    RelationshipTarget,
    VectorHit,
)
from .utils import cosine_similarity

OBJECT_INDEX = "object_embedding"
FIELD_INDEX = "field_embedding"
FEW_SHOT_INDEX = "few_shot_example_embedding"


@runtime_checkable
class GraphStore(Protocol):
    """Read-only view over the metadata graph plus its vector indexes."""

    async def is_available(self) -> bool: ...

    async def get_all_objects(self, org_id: Optional[str] = None) -> List[GraphObject]: ...

    async def get_object(self, api_name: str, org_id: Optional[str] = None) -> Optional[GraphObject]: ...

    async def get_object_fields(self, api_name: str, org_id: Optional[str] = None) -> List[GraphField]: ...

    async def get_all_fields(self, org_id: Optional[str] = None) -> List[GraphField]: ...

    async def get_picklist_values(
        self, object_api_name: str, field_api_name: str, org_id: Optional[str] = None
    ) -> List[str]: ...

    async def find_picklist_matches(self, value: str, org_id: Optional[str] = None) -> List[PicklistMatch]: ...

    async def get_object_relationships(
        self, api_name: str, org_id: Optional[str] = None
    ) -> List[GraphRelationship]: ...

    async def get_child_relationships(
        self, api_name: str, org_id: Optional[str] = None
    ) -> List[ChildRelationshipInfo]: ...

    async def find_relationship_target(
        self, name: str, org_id: Optional[str] = None
    ) -> Optional[RelationshipTarget]: ...

    async def find_child_relationship_target(
        self, name: str, org_id: Optional[str] = None
    ) -> Optional[RelationshipTarget]: ...

    async def vector_search(
        self,
        index_name: str,
        vector: Sequence[float],
        top_k: int,
        *,
        min_score: float = 0.0,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[VectorHit]: ...


@dataclass
class _IndexedNode:
    node_id: str
    node_label: str
    properties: Dict[str, Any]
    vector: List[float]


@dataclass
class MemoryGraphStore:
    """
    In-process graph store.

    Vector search applies ``top_k`` before property filters, mirroring the
    behaviour of the Neo4j vector index so over-fetching callers behave the
    same against both stores.
    """

    objects: Dict[str, GraphObject] = field(default_factory=dict)
    fields: Dict[str, List[GraphField]] = field(default_factory=dict)
    picklists: Dict[str, List[str]] = field(default_factory=dict)
    child_relationships: Dict[str, List[ChildRelationshipInfo]] = field(default_factory=dict)
    indexes: Dict[str, List[_IndexedNode]] = field(default_factory=lambda: defaultdict(list))
    available: bool = True

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> "MemoryGraphStore":
        store = cls()
        for raw_obj in document.get("objects", []):
            api_name = raw_obj["apiName"]
            store.objects[api_name] = GraphObject(
                api_name=api_name,
                label=raw_obj.get("label", api_name),
                description=raw_obj.get("description"),
                category=raw_obj.get("category"),
            )
            obj_fields: List[GraphField] = []
            for raw_field in raw_obj.get("fields", []):
                gf = GraphField(
                    api_name=raw_field["apiName"],
                    sobject_type=api_name,
                    label=raw_field.get("label", raw_field["apiName"]),
                    type=raw_field.get("type", "string"),
                    description=raw_field.get("description"),
                    reference_to=list(raw_field.get("referenceTo", [])),
                    relationship_name=raw_field.get("relationshipName"),
                )
                obj_fields.append(gf)
                if raw_field.get("picklistValues"):
                    store.picklists[f"{api_name}.{gf.api_name}"] = list(raw_field["picklistValues"])
                child_name = raw_field.get("childRelationshipName")
                for target in gf.reference_to:
                    if child_name:
                        store.child_relationships.setdefault(target, []).append(
                            ChildRelationshipInfo(child_name, api_name, gf.api_name)
                        )
            store.fields[api_name] = obj_fields
        return store

    def _resolve(self, api_name: str) -> Optional[str]:
        if api_name in self.objects:
            return api_name
        lowered = api_name.lower()
        for name in self.objects:
            if name.lower() == lowered:
                return name
        return None

    def add_vector(
        self, index_name: str, node_id: str, node_label: str, vector: Sequence[float], **properties: Any
    ) -> None:
        props = dict(properties)
        props.setdefault("apiName", node_id)
        self.indexes[index_name].append(_IndexedNode(node_id, node_label, props, list(vector)))

    async def index_embeddings(self, embedder: Any) -> None:
        """Embed every object and field into the object/field indexes."""
        objects = list(self.objects.values())
        texts = [f"{o.label} {o.description or ''}".strip() for o in objects]
        vectors = await embedder.embed_batch(texts)
        for obj, vec in zip(objects, vectors):
            self.add_vector(OBJECT_INDEX, obj.api_name, "Object", vec)
        all_fields = [f for flist in self.fields.values() for f in flist]
        texts = [f"{f.label} {f.description or ''}".strip() for f in all_fields]
        vectors = await embedder.embed_batch(texts)
        for fld, vec in zip(all_fields, vectors):
            self.add_vector(FIELD_INDEX, fld.api_name, "Field", vec, sobjectType=fld.sobject_type)

    async def is_available(self) -> bool:
        return self.available

    async def get_all_objects(self, org_id: Optional[str] = None) -> List[GraphObject]:
        return [self.objects[name] for name in sorted(self.objects)]

    async def get_object(self, api_name: str, org_id: Optional[str] = None) -> Optional[GraphObject]:
        name = self._resolve(api_name)
        return self.objects.get(name) if name else None

    async def get_object_fields(self, api_name: str, org_id: Optional[str] = None) -> List[GraphField]:
        name = self._resolve(api_name)
        return list(self.fields.get(name, [])) if name else []

    async def get_all_fields(self, org_id: Optional[str] = None) -> List[GraphField]:
        return [f for name in sorted(self.fields) for f in self.fields[name]]

    async def get_picklist_values(
        self, object_api_name: str, field_api_name: str, org_id: Optional[str] = None
    ) -> List[str]:
        name = self._resolve(object_api_name) or object_api_name
        return sorted(self.picklists.get(f"{name}.{field_api_name}", []))

    async def find_picklist_matches(self, value: str, org_id: Optional[str] = None) -> List[PicklistMatch]:
        lowered = value.lower()
        matches: List[PicklistMatch] = []
        for key, values in self.picklists.items():
            obj, fld = key.split(".", 1)
            for item in values:
                if item.lower() == lowered:
                    matches.append(PicklistMatch(obj, fld, item))
        return matches[:20]

    async def get_object_relationships(
        self, api_name: str, org_id: Optional[str] = None
    ) -> List[GraphRelationship]:
        name = self._resolve(api_name)
        if not name:
            return []
        rels: List[GraphRelationship] = []
        for fld in sorted(self.fields.get(name, []), key=lambda f: f.api_name):
            for target in fld.reference_to:
                rels.append(
                    GraphRelationship(name, target, fld.api_name, fld.relationship_name, "outgoing")
                )
        for source in sorted(self.fields):
            if source == name:
                continue
            for fld in self.fields[source]:
                if name in fld.reference_to:
                    rels.append(
                        GraphRelationship(source, name, fld.api_name, fld.relationship_name, "incoming")
                    )
        return rels

    async def get_child_relationships(
        self, api_name: str, org_id: Optional[str] = None
    ) -> List[ChildRelationshipInfo]:
        name = self._resolve(api_name)
        return list(self.child_relationships.get(name, [])) if name else []

    async def find_relationship_target(
        self, name: str, org_id: Optional[str] = None
    ) -> Optional[RelationshipTarget]:
        lowered = name.lower()
        for source in sorted(self.fields):
            for fld in self.fields[source]:
                if not fld.reference_to:
                    continue
                if (fld.relationship_name or "").lower() == lowered or fld.api_name.lower() == lowered:
                    return RelationshipTarget(source, fld.reference_to[0], fld.api_name, fld.relationship_name)
        return None

    async def find_child_relationship_target(
        self, name: str, org_id: Optional[str] = None
    ) -> Optional[RelationshipTarget]:
        lowered = name.lower()
        for parent in sorted(self.child_relationships):
            for child in self.child_relationships[parent]:
                if child.relationship_name.lower() == lowered:
                    return RelationshipTarget(parent, child.child_object, child.field_api_name or "", name)
        return None

    async def vector_search(
        self,
        index_name: str,
        vector: Sequence[float],
        top_k: int,
        *,
        min_score: float = 0.0,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[VectorHit]:
        scored = [
            VectorHit(node.node_id, node.node_label, cosine_similarity(vector, node.vector), dict(node.properties))
            for node in self.indexes.get(index_name, [])
        ]
        scored.sort(key=lambda h: h.score, reverse=True)
        hits = scored[:top_k]
        if filters:
            hits = [h for h in hits if all(h.properties.get(k) == v for k, v in filters.items())]
        return [h for h in hits if h.score >= min_score]


__all__ = [
    "GraphStore",
    "MemoryGraphStore",
    "OBJECT_INDEX",
    "FIELD_INDEX",
    "FEW_SHOT_INDEX",
]
