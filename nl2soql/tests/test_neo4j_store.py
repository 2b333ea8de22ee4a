import asyncio
from types import SimpleNamespace

import pytest
from neo4j.exceptions import ServiceUnavailable

from nl2soql.pipeline.errors import GraphStoreError, VectorStoreError
from nl2soql.pipeline.neo4j_store import Neo4jExampleStore, Neo4jGraphStore


class _Record:
    def __init__(self, data):
        self._data = data

    def data(self):
        return dict(self._data)


class FakeDriver:
    """Replays canned rows and records the Cypher it was given."""

    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.queries = []

    async def execute_query(self, query, params, **kwargs):
        self.queries.append((query, params, kwargs))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(records=[_Record(r) for r in self.rows])

    async def close(self):
        pass


def test_get_object_maps_rows():
    driver = FakeDriver([{"apiName": "Account", "label": "Account", "description": None, "category": "standard", "orgId": "o1"}])
    store = Neo4jGraphStore(driver=driver)

    obj = asyncio.run(store.get_object("account", "o1"))

    assert obj.api_name == "Account"
    assert obj.category == "standard"
    query, params, kwargs = driver.queries[0]
    assert params == {"apiName": "account", "orgId": "o1"}
    assert "$orgId IS NULL" in query
    assert kwargs["database_"] == "neo4j"


def test_missing_object_is_none():
    assert asyncio.run(Neo4jGraphStore(driver=FakeDriver()).get_object("Zebra")) is None


def test_vector_search_applies_filters_and_drops_embeddings():
    driver = FakeDriver(
        [
            {
                "props": {"apiName": "Industry", "sobjectType": "Account", "embedding": [0.1]},
                "nodeLabels": ["Field"],
                "elementId": "4:x:1",
                "score": 0.91,
            }
        ]
    )
    store = Neo4jGraphStore(driver=driver)

    hits = asyncio.run(store.vector_search("field_embedding", [0.1, 0.2], 5, min_score=0.5, filters={"sobjectType": "Account"}))

    assert [(h.node_id, h.node_label, h.score) for h in hits] == [("Industry", "Field", 0.91)]
    assert "embedding" not in hits[0].properties
    query, params, _ = driver.queries[0]
    assert "node.sobjectType = $filter_0" in query
    assert params["filter_0"] == "Account"
    assert params["topK"] == 5


def test_driver_errors_become_store_errors():
    store = Neo4jGraphStore(driver=FakeDriver(error=ServiceUnavailable("connection refused")))

    assert asyncio.run(store.is_available()) is False
    with pytest.raises(GraphStoreError, match="connection refused"):
        asyncio.run(store.get_all_objects())
    with pytest.raises(VectorStoreError):
        asyncio.run(store.vector_search("object_embedding", [0.1], 3))


def test_example_store_round_trips_properties():
    driver = FakeDriver(
        [
            {
                "props": {
                    "id": "filter-001",
                    "question": "Show accounts in the technology industry",
                    "soql": "SELECT Id FROM Account",
                    "patterns": ["filter"],
                    "embeddingModel": "text-embedding-3-small",
                }
            }
        ]
    )
    examples = Neo4jExampleStore(Neo4jGraphStore(driver=driver))

    found = asyncio.run(examples.search([0.1, 0.2], 2, "text-embedding-3-small"))

    assert found[0].id == "filter-001"
    assert found[0].patterns == ("filter",)
    assert found[0].embedding_model == "text-embedding-3-small"
    _, params, _ = driver.queries[0]
    assert params["k"] == 8
    assert params["limit"] == 2
    assert params["currentModel"] == "text-embedding-3-small"
