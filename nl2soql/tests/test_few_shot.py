import asyncio
import logging

from nl2soql.pipeline.few_shot import (
    FewShotRetriever,
    MemoryExampleStore,
    content_hash,
    format_examples_for_prompt,
    load_bundled_examples,
)
from nl2soql.pipeline.models import SoqlExample
from nl2soql.tests.fakes import FakeEmbedder


def test_bundled_examples_load():
    examples = load_bundled_examples()

    assert len(examples) == 14
    assert len({ex.id for ex in examples}) == 14
    assert all(ex.soql.upper().startswith("SELECT") for ex in examples)


def test_seed_replaces_existing_examples():
    store = MemoryExampleStore()
    retriever = FewShotRetriever(store, FakeEmbedder())
    examples = load_bundled_examples()

    assert asyncio.run(retriever.seed(examples)) == 14
    assert asyncio.run(retriever.seed(examples[:2])) == 2
    assert asyncio.run(store.count()) == 2

    stored = asyncio.run(store.list_examples())
    assert {ex.embedding_model for ex in stored} == {"fake-embed-1"}
    assert stored[0].content_hash == content_hash(stored[0].question)


def test_ensure_initialized_seeds_once():
    embedder = FakeEmbedder()
    retriever = FewShotRetriever(MemoryExampleStore(), embedder)

    assert asyncio.run(retriever.ensure_initialized()) is True
    assert asyncio.run(retriever.ensure_initialized()) is False
    assert embedder.batch_calls == 1


def test_find_similar_returns_closest_examples():
    retriever = FewShotRetriever(MemoryExampleStore(), FakeEmbedder())

    results = asyncio.run(retriever.find_similar("accounts in the technology industry", k=2))

    assert len(results) == 2
    assert results[0].id == "filter-001"


def test_examples_from_another_model_are_not_returned(caplog):
    store = MemoryExampleStore()
    asyncio.run(FewShotRetriever(store, FakeEmbedder("model-one")).ensure_initialized())
    retriever = FewShotRetriever(store, FakeEmbedder("model-two"))

    with caplog.at_level(logging.WARNING):
        results = asyncio.run(retriever.find_similar("accounts in the technology industry"))

    assert results == []
    assert "model-one" in caplog.text


def test_embedding_failures_yield_no_examples():
    retriever = FewShotRetriever(MemoryExampleStore(), FakeEmbedder(fail=True))

    assert asyncio.run(retriever.find_similar("anything")) == []


def test_examples_by_pattern():
    store = MemoryExampleStore()
    asyncio.run(FewShotRetriever(store, FakeEmbedder()).ensure_initialized())

    polymorphic = asyncio.run(store.examples_by_pattern("polymorphic"))

    assert {ex.id for ex in polymorphic} >= {"polymorphic-001", "polymorphic-002"}


def test_format_examples_for_prompt():
    text = format_examples_for_prompt(
        [
            SoqlExample("a", "List accounts", "SELECT Id FROM Account"),
            SoqlExample("b", "Count leads", "SELECT COUNT() FROM Lead", explanation="COUNT() returns a number."),
        ]
    )

    assert text == (
        '**Example 1:**\nQuestion: "List accounts"\n```soql\nSELECT Id FROM Account\n```\n\n'
        '**Example 2:**\nQuestion: "Count leads"\n```soql\nSELECT COUNT() FROM Lead\n```\n'
        "Note: COUNT() returns a number."
    )
    assert format_examples_for_prompt([]) == ""
