import asyncio

from nl2soql.pipeline.field_pruning import (
    CORE_FIELDS,
    ScopedFieldSearcher,
    field_map,
    get_field_max_score,
)
from nl2soql.pipeline.graph_store import FIELD_INDEX
from nl2soql.pipeline.models import ScopedFieldResult
from nl2soql.tests.fakes import FakeEmbedder, indexed_store, make_store


def test_no_embedder_returns_core_fields_only():
    searcher = ScopedFieldSearcher(make_store(), None)

    results = asyncio.run(searcher.search_fields_scoped(["Account", "Contact"], "accounts by industry"))

    assert [r.object_api_name for r in results] == ["Account", "Contact"]
    for result in results:
        assert result.used_fallback
        assert result.fields == list(CORE_FIELDS)


def test_unavailable_store_returns_core_fields_only():
    embedder = FakeEmbedder()
    store = indexed_store(embedder)
    store.available = False

    results = asyncio.run(ScopedFieldSearcher(store, embedder).search_fields_scoped(["Account"], "industry"))

    assert results[0].used_fallback
    assert results[0].fields == list(CORE_FIELDS)
    assert embedder.embed_calls == 0


def test_embedding_failure_returns_core_fields_only():
    embedder = FakeEmbedder()
    store = indexed_store(embedder)
    embedder.fail = True

    results = asyncio.run(ScopedFieldSearcher(store, embedder).search_fields_scoped(["Account"], "industry"))

    assert results[0].fields == list(CORE_FIELDS)


def test_vector_matches_follow_core_fields():
    embedder = FakeEmbedder()
    store = indexed_store(embedder)

    results = asyncio.run(
        ScopedFieldSearcher(store, embedder).search_fields_scoped(["Account"], "accounts by industry")
    )

    result = results[0]
    assert not result.used_fallback
    assert result.fields[: len(CORE_FIELDS)] == list(CORE_FIELDS)
    assert "Industry" in result.fields
    assert set(result.vector_matched) <= {f.api_name for f in store.fields["Account"]}
    assert result.scores["Industry"] > 0.3


def test_matches_are_scoped_to_the_table():
    embedder = FakeEmbedder()
    store = indexed_store(embedder)

    results = asyncio.run(ScopedFieldSearcher(store, embedder).search_fields_scoped(["Opportunity"], "deal amount"))

    assert "Amount" in results[0].vector_matched
    assert "Industry" not in results[0].fields


def test_overfetch_limits_candidates_before_filtering():
    embedder = FakeEmbedder()
    store = indexed_store(embedder)

    results = asyncio.run(
        ScopedFieldSearcher(store, embedder, overfetch=1).search_fields_scoped(["Lead"], "accounts by industry")
    )

    assert results[0].used_fallback
    assert results[0].fields == list(CORE_FIELDS)


def test_max_fields_caps_vector_matches():
    embedder = FakeEmbedder()
    store = indexed_store(embedder)
    for i in range(10):
        store.add_vector(FIELD_INDEX, f"Industry{i}__c", "Field", [0.0] * 7 + [1.0] + [0.0] * 20, sobjectType="Account")

    results = asyncio.run(
        ScopedFieldSearcher(store, embedder).search_fields_scoped(["Account"], "industry", max_fields_per_table=6)
    )

    assert len(results[0].fields) == 6
    assert results[0].fields[: len(CORE_FIELDS)] == list(CORE_FIELDS)


def test_empty_table_list():
    assert asyncio.run(ScopedFieldSearcher(make_store(), FakeEmbedder()).search_fields_scoped([], "anything")) == []


def test_max_score_and_field_map():
    results = [
        ScopedFieldResult("Account", ["Id", "Industry"], ["Industry"], {"Industry": 0.7}),
        ScopedFieldResult("Lead", ["Id", "Industry"], ["Industry"], {"Industry": 0.9}),
    ]

    assert get_field_max_score(results, "Industry") == 0.9
    assert get_field_max_score(results, "Phone") is None
    assert field_map(results) == {"Account": ["Id", "Industry"], "Lead": ["Id", "Industry"]}
