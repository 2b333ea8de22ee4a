import asyncio

from nl2soql.pipeline.graph_store import MemoryGraphStore
from nl2soql.pipeline.semantic_search import SemanticSearchService, get_variants
from nl2soql.pipeline.utils import normalize_text
from nl2soql.tests.fakes import FakeEmbedder, indexed_store, make_store, sample_document


class _OfflineStore(MemoryGraphStore):
    async def get_all_objects(self, org_id=None):
        raise RuntimeError("graph offline")


def _find(service, term):
    return [(m.api_name, m.similarity, m.match_type) for m in asyncio.run(service.find_objects(term))]


def test_normalize_text():
    assert normalize_text("  Billing-State!! ") == "billing state"


def test_variants_cover_plurals_and_synonyms():
    variants = get_variants("Opportunities")

    assert variants[0] == "opportunities"
    assert "opportunity" in variants
    assert "deal" in variants
    assert "opportunity" in get_variants("deals")
    assert get_variants("box")[1:] == ["boxs"]
    assert get_variants("  ") == []


def test_find_objects_cascade():
    service = SemanticSearchService(make_store())

    assert _find(service, "Account") == [("Account", 1.0, "exact")]
    assert _find(service, "accounts") == [("Account", 0.85, "fuzzy")]
    assert _find(service, "tickets") == [("Case", 0.85, "fuzzy")]
    assert _find(service, "zzqx") == []


def test_vector_tier_runs_only_when_lookups_miss():
    embedder = FakeEmbedder()
    service = SemanticSearchService(indexed_store(embedder), embedder)

    _find(service, "contacts")
    assert embedder.embed_calls == 0

    matches = asyncio.run(service.find_objects("billing"))
    assert embedder.embed_calls == 1
    assert all(m.match_type == "semantic" for m in matches)


def test_vector_failures_yield_no_matches():
    embedder = FakeEmbedder()
    service = SemanticSearchService(indexed_store(embedder), embedder)
    embedder.fail = True

    assert _find(service, "zzqx") == []


def test_find_fields_by_label_and_variant():
    service = SemanticSearchService(make_store())

    billing = asyncio.run(service.find_fields("Billing State", "Account"))
    assert [(m.api_name, m.match_type) for m in billing] == [("BillingState", "exact")]

    industries = asyncio.run(service.find_fields("industries"))
    assert [(m.api_name, m.object_api_name, m.match_type) for m in industries] == [("Industry", "Account", "fuzzy")]


def test_store_failures_yield_no_matches():
    service = SemanticSearchService(_OfflineStore.from_dict(sample_document()))

    assert _find(service, "Account") == []
