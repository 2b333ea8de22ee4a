from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from neo4j import AsyncGraphDatabase, RoutingControl
from neo4j.exceptions import DriverError, Neo4jError

from .config import DEFAULT_NEO4J_DATABASE, DEFAULT_NEO4J_PASSWORD, DEFAULT_NEO4J_URI, DEFAULT_NEO4J_USER
from .errors import GraphStoreError, VectorStoreError
from .graph_store import FEW_SHOT_INDEX
from .models import (
    ChildRelationshipInfo,
    GraphField,
    GraphObject,
    GraphRelationship,
    PicklistMatch,
    RelationshipTarget,
    StoredExample,
    VectorHit,
)

logger = logging.getLogger(__name__)

_ORG = "($orgId IS NULL OR {alias}.orgId = $orgId)"


def _org(alias: str) -> str:
    return _ORG.format(alias=alias)


def _field_from_props(props: Mapping[str, Any], sobject_type: str) -> GraphField:
    return GraphField(
        api_name=props.get("apiName", ""),
        sobject_type=props.get("sobjectType") or sobject_type,
        label=props.get("label") or props.get("apiName", ""),
        type=props.get("type") or "string",
        description=props.get("description"),
        reference_to=list(props.get("referenceTo") or []),
        relationship_name=props.get("relationshipName"),
    )


class Neo4jGraphStore:
    """GraphStore backed by a Neo4j 5.11+ database with native vector indexes."""

    def __init__(
        self,
        uri: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        database: Optional[str] = None,
        *,
        driver: Any = None,
    ) -> None:
        self.uri = uri or DEFAULT_NEO4J_URI
        self.database = database or DEFAULT_NEO4J_DATABASE
        if driver is not None:
            self.driver = driver
        else:
            if not self.uri:
                raise GraphStoreError("NEO4J_URI is not configured")
            self.driver = AsyncGraphDatabase.driver(
                self.uri,
                auth=(user or DEFAULT_NEO4J_USER, password or DEFAULT_NEO4J_PASSWORD),
                max_connection_pool_size=50,
                connection_acquisition_timeout=30,
            )

    async def close(self) -> None:
        await self.driver.close()

    async def _read(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        try:
            result = await self.driver.execute_query(
                query, params, database_=self.database, routing_=RoutingControl.READ
            )
        except (Neo4jError, DriverError) as exc:
            raise GraphStoreError(f"graph query failed: {exc}") from exc
        return [record.data() for record in result.records]

    async def _write(self, query: str, **params: Any) -> None:
        try:
            await self.driver.execute_query(query, params, database_=self.database, routing_=RoutingControl.WRITE)
        except (Neo4jError, DriverError) as exc:
            raise GraphStoreError(f"graph write failed: {exc}") from exc

    async def is_available(self) -> bool:
        try:
            await self._read("RETURN 1 AS ok")
            return True
        except GraphStoreError as exc:
            logger.warning("Neo4j unavailable: %s", exc)
            return False

    async def get_all_objects(self, org_id: Optional[str] = None) -> List[GraphObject]:
        rows = await self._read(
            f"""
            MATCH (o:Object)
            WHERE {_org('o')}
            RETURN o.apiName AS apiName, o.label AS label, o.description AS description,
                   o.category AS category, o.orgId AS orgId
            ORDER BY o.apiName
            """,
            orgId=org_id,
        )
        return [
            GraphObject(r["apiName"], r.get("label") or r["apiName"], r.get("description"), r.get("category"), r.get("orgId"))
            for r in rows
        ]

    async def get_object(self, api_name: str, org_id: Optional[str] = None) -> Optional[GraphObject]:
        rows = await self._read(
            f"""
            MATCH (o:Object)
            WHERE toLower(o.apiName) = toLower($apiName) AND {_org('o')}
            RETURN o.apiName AS apiName, o.label AS label, o.description AS description,
                   o.category AS category, o.orgId AS orgId
            LIMIT 1
            """,
            apiName=api_name,
            orgId=org_id,
        )
        if not rows:
            return None
        r = rows[0]
        return GraphObject(r["apiName"], r.get("label") or r["apiName"], r.get("description"), r.get("category"), r.get("orgId"))

    async def get_object_fields(self, api_name: str, org_id: Optional[str] = None) -> List[GraphField]:
        rows = await self._read(
            f"""
            MATCH (o:Object)-[:HAS_FIELD]->(f:Field)
            WHERE toLower(o.apiName) = toLower($apiName) AND {_org('o')}
            WITH o, f ORDER BY f.lastRefreshed DESC
            WITH o, f.apiName AS name, head(collect(f)) AS f
            RETURN o.apiName AS objectName, properties(f) AS field
            ORDER BY name
            """,
            apiName=api_name,
            orgId=org_id,
        )
        return [_field_from_props(r["field"], r["objectName"]) for r in rows]

    async def get_all_fields(self, org_id: Optional[str] = None) -> List[GraphField]:
        rows = await self._read(
            f"""
            MATCH (o:Object)-[:HAS_FIELD]->(f:Field)
            WHERE {_org('o')}
            RETURN o.apiName AS objectName, properties(f) AS field
            ORDER BY o.apiName, f.apiName
            """,
            orgId=org_id,
        )
        return [_field_from_props(r["field"], r["objectName"]) for r in rows]

    async def get_picklist_values(
        self, object_api_name: str, field_api_name: str, org_id: Optional[str] = None
    ) -> List[str]:
        rows = await self._read(
            f"""
            MATCH (f:Field {{apiName: $fieldApiName, sobjectType: $objectApiName}})
            WHERE {_org('f')}
            MATCH (f)-[:HAS_VALUE]->(v:PicklistValue)
            RETURN v.value AS value
            ORDER BY v.value
            """,
            fieldApiName=field_api_name,
            objectApiName=object_api_name,
            orgId=org_id,
        )
        return [r["value"] for r in rows if r.get("value")]

    async def find_picklist_matches(self, value: str, org_id: Optional[str] = None) -> List[PicklistMatch]:
        rows = await self._read(
            f"""
            MATCH (v:PicklistValue {{isActive: true}})
            WHERE toLower(v.value) = toLower($value) AND {_org('v')}
            MATCH (v)<-[:HAS_VALUE]-(f:Field)<-[:HAS_FIELD]-(o:Object)
            WHERE {_org('o')}
            RETURN o.apiName AS objectName, f.apiName AS fieldName, v.value AS matchedValue
            LIMIT 20
            """,
            value=value,
            orgId=org_id,
        )
        return [PicklistMatch(r["objectName"], r["fieldName"], r["matchedValue"]) for r in rows]

    async def get_object_relationships(
        self, api_name: str, org_id: Optional[str] = None
    ) -> List[GraphRelationship]:
        outgoing = await self._read(
            f"""
            MATCH (source:Object)-[:HAS_FIELD]->(f:Field)-[:LOOKS_UP|MASTER_DETAIL]->(target:Object)
            WHERE toLower(source.apiName) = toLower($apiName) AND {_org('source')} AND {_org('target')}
            RETURN DISTINCT source.apiName AS source, target.apiName AS target, f.apiName AS fieldApiName,
                   f.relationshipName AS relationshipName,
                   COALESCE(f.relationshipType, 'Lookup') AS relationshipType
            ORDER BY fieldApiName
            """,
            apiName=api_name,
            orgId=org_id,
        )
        incoming = await self._read(
            f"""
            MATCH (source:Object)-[:HAS_FIELD]->(f:Field)-[:LOOKS_UP|MASTER_DETAIL]->(target:Object)
            WHERE toLower(target.apiName) = toLower($apiName) AND {_org('source')} AND {_org('target')}
            RETURN DISTINCT source.apiName AS source, target.apiName AS target, f.apiName AS fieldApiName,
                   f.relationshipName AS relationshipName,
                   COALESCE(f.relationshipType, 'Lookup') AS relationshipType
            ORDER BY source, fieldApiName
            """,
            apiName=api_name,
            orgId=org_id,
        )
        rels = [
            GraphRelationship(r["source"], r["target"], r["fieldApiName"], r.get("relationshipName"), "outgoing", r["relationshipType"])
            for r in outgoing
        ]
        rels.extend(
            GraphRelationship(r["source"], r["target"], r["fieldApiName"], r.get("relationshipName"), "incoming", r["relationshipType"])
            for r in incoming
        )
        return rels

    async def get_child_relationships(
        self, api_name: str, org_id: Optional[str] = None
    ) -> List[ChildRelationshipInfo]:
        rows = await self._read(
            f"""
            MATCH (parent:Object)-[r:HAS_CHILD_RELATIONSHIP]->(child:Object)
            WHERE toLower(parent.apiName) = toLower($apiName) AND {_org('parent')}
            RETURN r.relationshipName AS relationshipName, child.apiName AS childObject, r.field AS field
            ORDER BY relationshipName
            """,
            apiName=api_name,
            orgId=org_id,
        )
        return [
            ChildRelationshipInfo(r["relationshipName"], r["childObject"], r.get("field"))
            for r in rows
            if r.get("relationshipName")
        ]

    async def find_relationship_target(
        self, name: str, org_id: Optional[str] = None
    ) -> Optional[RelationshipTarget]:
        rows = await self._read(
            f"""
            MATCH (source:Object)-[:HAS_FIELD]->(f:Field)-[:LOOKS_UP|MASTER_DETAIL]->(target:Object)
            WHERE (toLower(f.relationshipName) = toLower($relName) OR toLower(f.apiName) = toLower($relName))
              AND {_org('f')}
            RETURN source.apiName AS source, target.apiName AS target, f.apiName AS fieldApiName,
                   f.relationshipName AS relationshipName
            LIMIT 1
            """,
            relName=name,
            orgId=org_id,
        )
        if not rows:
            return None
        r = rows[0]
        return RelationshipTarget(r["source"], r["target"], r["fieldApiName"], r.get("relationshipName"))

    async def find_child_relationship_target(
        self, name: str, org_id: Optional[str] = None
    ) -> Optional[RelationshipTarget]:
        rows = await self._read(
            f"""
            MATCH (child:Object)-[:HAS_FIELD]->(f:Field)-[:LOOKS_UP|MASTER_DETAIL]->(parent:Object)
            WHERE (toLower(f.childRelationshipName) = toLower($relName)
                   OR toLower(child.apiName + 's') = toLower(replace($relName, '__r', '')))
              AND {_org('child')}
            RETURN parent.apiName AS source, child.apiName AS target, f.apiName AS fieldApiName
            LIMIT 1
            """,
            relName=name,
            orgId=org_id,
        )
        if not rows:
            return None
        r = rows[0]
        return RelationshipTarget(r["source"], r["target"], r["fieldApiName"], name)

    async def vector_search(
        self,
        index_name: str,
        vector: Sequence[float],
        top_k: int,
        *,
        min_score: float = 0.0,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[VectorHit]:
        params: Dict[str, Any] = {"indexName": index_name, "topK": int(top_k), "embedding": list(vector), "minScore": min_score}
        conditions = ["score >= $minScore"]
        for idx, (key, value) in enumerate((filters or {}).items()):
            params[f"filter_{idx}"] = value
            conditions.append(f"node.{key} = $filter_{idx}")
        query = f"""
            CALL db.index.vector.queryNodes($indexName, $topK, $embedding)
            YIELD node, score
            WHERE {' AND '.join(conditions)}
            RETURN properties(node) AS props, labels(node) AS nodeLabels, elementId(node) AS elementId, score
            ORDER BY score DESC
        """
        try:
            rows = await self._read(query, **params)
        except GraphStoreError as exc:
            raise VectorStoreError(f"vector search on {index_name} failed: {exc}") from exc
        hits: List[VectorHit] = []
        for r in rows:
            props = dict(r["props"])
            props.pop("embedding", None)
            node_id = props.get("apiName") or props.get("name") or props.get("id") or r["elementId"]
            labels = r.get("nodeLabels") or ["Unknown"]
            hits.append(VectorHit(str(node_id), labels[0], float(r["score"]), props))
        return hits


class Neo4jExampleStore:
    """Few-shot example storage on ``FewShotExample`` nodes with a vector index."""

    LABEL = "FewShotExample"

    def __init__(self, store: Neo4jGraphStore, index_name: str = FEW_SHOT_INDEX) -> None:
        self.store = store
        self.index_name = index_name

    @staticmethod
    def _to_example(props: Mapping[str, Any]) -> StoredExample:
        return StoredExample(
            id=props["id"],
            question=props["question"],
            soql=props["soql"],
            complexity=props.get("complexity") or "simple",
            patterns=tuple(props.get("patterns") or ()),
            objects=tuple(props.get("objects") or ()),
            explanation=props.get("explanation"),
            embedding_model=props.get("embeddingModel") or "",
            content_hash=props.get("contentHash") or "",
        )

    async def count(self) -> int:
        rows = await self.store._read(f"MATCH (e:{self.LABEL}) RETURN count(e) AS count")
        return int(rows[0]["count"]) if rows else 0

    async def clear(self) -> None:
        await self.store._write(f"MATCH (e:{self.LABEL}) DETACH DELETE e")

    async def ensure_index(self, dimensions: int) -> None:
        await self.store._write(
            f"""
            CREATE VECTOR INDEX {self.index_name} IF NOT EXISTS
            FOR (e:{self.LABEL}) ON (e.embedding)
            OPTIONS {{indexConfig: {{`vector.dimensions`: $dimensions, `vector.similarity_function`: 'cosine'}}}}
            """,
            dimensions=int(dimensions),
        )

    async def store_examples(self, examples: Sequence[StoredExample], vectors: Sequence[Sequence[float]]) -> None:
        rows = [
            {
                "id": ex.id,
                "question": ex.question,
                "soql": ex.soql,
                "complexity": ex.complexity,
                "patterns": list(ex.patterns),
                "objects": list(ex.objects),
                "explanation": ex.explanation,
                "embeddingModel": ex.embedding_model,
                "contentHash": ex.content_hash,
                "embedding": list(vec),
            }
            for ex, vec in zip(examples, vectors)
        ]
        await self.store._write(f"UNWIND $rows AS row CREATE (e:{self.LABEL}) SET e = row", rows=rows)
        if vectors:
            await self.ensure_index(len(vectors[0]))

    async def search(self, vector: Sequence[float], k: int, model: str) -> List[StoredExample]:
        rows = await self.store._read(
            f"""
            CALL db.index.vector.queryNodes($indexName, $k, $embedding)
            YIELD node, score
            WHERE node.embeddingModel = $currentModel
            RETURN properties(node) AS props, score
            ORDER BY score DESC
            LIMIT $limit
            """,
            indexName=self.index_name,
            k=int(k) * 4,
            embedding=list(vector),
            currentModel=model,
            limit=int(k),
        )
        return [self._to_example(r["props"]) for r in rows]

    async def list_examples(self) -> List[StoredExample]:
        rows = await self.store._read(f"MATCH (e:{self.LABEL}) RETURN properties(e) AS props ORDER BY e.id")
        return [self._to_example(r["props"]) for r in rows]

    async def examples_by_pattern(self, pattern: str) -> List[StoredExample]:
        rows = await self.store._read(
            f"MATCH (e:{self.LABEL}) WHERE $pattern IN e.patterns RETURN properties(e) AS props ORDER BY e.id",
            pattern=pattern,
        )
        return [self._to_example(r["props"]) for r in rows]

    async def stored_embedding_model(self) -> Optional[str]:
        rows = await self.store._read(f"MATCH (e:{self.LABEL}) RETURN e.embeddingModel AS model LIMIT 1")
        return rows[0]["model"] if rows else None


__all__ = ["Neo4jGraphStore", "Neo4jExampleStore"]
