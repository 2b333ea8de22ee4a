import asyncio
from dataclasses import dataclass, field
from typing import List

from nl2soql.pipeline.grounding import (
    GroundingOptions,
    LiveRecord,
    ValueGroundingService,
    detect_patterns,
    format_grounding_for_prompt,
    is_proper_noun,
)
from nl2soql.pipeline.models import GroundedEntity, GroundingResult, GroundingSource, GroundingType
from nl2soql.pipeline.semantic_search import SemanticSearchService
from nl2soql.tests.fakes import FakeEmbedder, indexed_store, make_store


@dataclass
class _FakeLive:
    records: List[LiveRecord] = field(default_factory=list)
    calls: int = 0

    async def search_names(self, term, objects, limit):
        self.calls += 1
        return self.records


def _service(store=None, embedder=None, live=None):
    store = store or make_store()
    return ValueGroundingService(store, SemanticSearchService(store, embedder), live)


def test_exact_picklist_match_short_circuits_vector_search():
    embedder = FakeEmbedder()
    service = _service(indexed_store(embedder), embedder)

    entity = asyncio.run(service.ground("Technology"))

    best = entity.best_match
    assert best is not None
    assert best.confidence == 1.0
    assert best.source == GroundingSource.EXACT_PICKLIST
    assert best.suggested_filter == "Industry = 'Technology'"
    assert embedder.embed_calls == 0


def test_exact_object_name_scores_below_picklist():
    embedder = FakeEmbedder()
    service = _service(indexed_store(embedder), embedder)

    entity = asyncio.run(service.ground("Opportunity"))

    assert entity.best_match.type == GroundingType.OBJECT_REFERENCE
    assert entity.best_match.confidence == 0.95
    assert entity.best_match.suggested_filter == "FROM Opportunity"
    assert embedder.embed_calls == 0


def test_picklist_match_is_case_insensitive_and_typed_by_field():
    entity = asyncio.run(_service().ground("escalated"))

    best = entity.best_match
    assert best.type == GroundingType.STATUS_VALUE
    assert best.suggested_filter == "Status = 'Escalated'"


def test_context_objects_restrict_exact_picklist_matches():
    opts = GroundingOptions(context_objects=["Opportunity"])
    entity = asyncio.run(_service().ground("Technology", opts))

    assert all(r.source != GroundingSource.EXACT_PICKLIST for r in entity.results)


def test_fuzzy_tier_scans_context_object_picklists():
    opts = GroundingOptions(context_objects=["Opportunity"])
    entity = asyncio.run(_service().ground("closed", opts))

    filters = [r.suggested_filter for r in entity.results if r.source == GroundingSource.FUZZY_MATCH]
    assert "StageName = 'Closed Won'" in filters
    assert "StageName = 'Closed Lost'" in filters


def test_vector_tier_runs_only_when_lookups_miss():
    embedder = FakeEmbedder()
    service = _service(indexed_store(embedder), embedder)

    entity = asyncio.run(service.ground("zzqx"))

    assert embedder.embed_calls == 1
    assert entity.best_match.type == GroundingType.UNKNOWN
    assert entity.best_match.confidence == 0.3


def test_unmatched_proper_noun_falls_back_to_company_name():
    entity = asyncio.run(_service().ground("Acme Corp", GroundingOptions(use_live=False)))

    best = entity.best_match
    assert best.type == GroundingType.COMPANY_NAME
    assert best.confidence == 0.6
    assert best.suggested_filter == "Account.Name LIKE 'Acme Corp%'"
    assert best.alternatives == ["Name LIKE 'Acme Corp%'"]


def test_live_tier_verifies_names_when_nothing_is_confident():
    live = _FakeLive([LiveRecord("Account", "Acme Corp", "001000000000001AAA")])
    entity = asyncio.run(_service(live=live).ground("Acme"))

    assert live.calls == 1
    assert entity.best_match.source == GroundingSource.LIVE_VERIFIED
    assert entity.best_match.suggested_filter == "Account.Name LIKE 'Acme%'"


def test_patterns_recognise_common_value_formats():
    assert detect_patterns("last month")[0].suggested_filter == "CreatedDate = LAST_MONTH"
    assert detect_patterns("LAST_N_DAYS:30")[0].confidence == 0.98
    assert detect_patterns("$50k")[0].suggested_filter == "Amount >= 50000"
    assert detect_patterns("jane@example.com")[0].fields == ["Email"]
    status = detect_patterns("open")
    assert status[0].type == GroundingType.STATUS_VALUE
    assert status[0].confidence == 0.85


def test_currency_pattern_needs_a_digit():
    assert detect_patterns("1,250,000")[0].suggested_filter == "Amount >= 1250000"
    assert all(p.evidence.pattern != "currency" for p in detect_patterns(","))
    assert all(p.evidence.pattern != "currency" for p in detect_patterns("$,"))


def test_punctuation_only_values_ground_without_raising():
    entities = asyncio.run(_service().build_grounding_context([",", "$,"], 1.0))

    assert [e.value for e in entities] == [",", "$,"]


def test_high_confidence_pattern_skips_graph_lookups():
    embedder = FakeEmbedder()
    service = _service(indexed_store(embedder), embedder)

    entity = asyncio.run(service.ground("this quarter"))

    assert entity.best_match.suggested_filter == "CreatedDate = THIS_QUARTER"
    assert embedder.embed_calls == 0


def test_proper_noun_detection():
    assert is_proper_noun("Acme Corp")
    assert not is_proper_noun("acme corp")


def test_grounding_context_returns_empty_on_timeout():
    class _SlowService(ValueGroundingService):
        async def ground(self, value, options=None):
            await asyncio.sleep(0.2)
            return GroundedEntity(value=value)

    store = make_store()
    service = _SlowService(store, SemanticSearchService(store))

    entities = asyncio.run(service.build_grounding_context(["Acme"], 0.01))

    assert entities == []


def test_grounding_context_dedupes_values():
    entities = asyncio.run(_service().build_grounding_context(["Technology", "Technology ", ""], 1.0))

    assert [e.value for e in entities] == ["Technology"]


def test_format_grounding_skips_low_confidence():
    confident = GroundedEntity(
        value="Technology",
        results=[GroundingResult("Technology", GroundingType.PICKLIST_VALUE, 1.0, "Industry = 'Technology'")],
    )
    weak = GroundedEntity(
        value="stuff", results=[GroundingResult("stuff", GroundingType.UNKNOWN, 0.3, "Name LIKE 'stuff%'")]
    )

    text = format_grounding_for_prompt([confident, weak])

    assert text.startswith("GROUNDED VALUES:")
    assert "Industry = 'Technology'" in text
    assert "stuff" not in text
    assert format_grounding_for_prompt([weak]) == ""
