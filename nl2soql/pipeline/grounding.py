from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .graph_store import GraphStore
from .models import (
    GroundedEntity,
    GroundingEvidence,
    GroundingResult,
    GroundingSource,
    GroundingType,
)
from .semantic_search import SemanticSearchService
from .utils import dedupe, race_timeout

logger = logging.getLogger(__name__)

EXACT_PICKLIST_CONFIDENCE = 1.0
EXACT_OBJECT_CONFIDENCE = 0.95
SEMANTIC_FLOOR = 0.7
SEMANTIC_PENALTY = 0.9
LIVE_CONFIDENCE = 0.85
PROPER_NOUN_CONFIDENCE = 0.6
UNKNOWN_CONFIDENCE = 0.3
DEFAULT_MAX_RESULTS = 10
LIVE_SEARCH_OBJECTS = ("Account", "Contact", "Lead", "Opportunity")
LIVE_SEARCH_LIMIT = 5

_ID_RE = re.compile(r"^[a-zA-Z0-9]{15}(?:[a-zA-Z0-9]{3})?$")
_DATE_LITERAL_RE = re.compile(
    r"^(TODAY|YESTERDAY|TOMORROW|(?:LAST|THIS|NEXT)_(?:WEEK|MONTH|QUARTER|YEAR)|LAST_90_DAYS|NEXT_90_DAYS"
    r"|(?:LAST|NEXT)_N_DAYS:\d+)$",
    re.IGNORECASE,
)
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CURRENCY_RE = re.compile(r"^\$?\d[\d,]*(?:\.\d{2})?$")
_SUFFIX_AMOUNT_RE = re.compile(r"^\$?(\d+(?:\.\d+)?)\s*([kmb])$", re.IGNORECASE)
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[\d\s().-]{7,}$")
_URL_RE = re.compile(r"^(?:https?://)?(?:www\.)?[a-z0-9-]+(?:\.[a-z0-9-]+)*\.[a-z]{2,}(?:/\S*)?$", re.IGNORECASE)
_PROPER_NOUN_RE = re.compile(r"^[A-Z][\w&'.-]*(?:\s+[A-Z0-9][\w&'.-]*)*$")
_LAST_N_DAYS_RE = re.compile(r"^(last|next)\s+(\d+)\s+days$", re.IGNORECASE)

NATURAL_DATES: Dict[str, str] = {
    "today": "TODAY",
    "yesterday": "YESTERDAY",
    "tomorrow": "TOMORROW",
    "this week": "THIS_WEEK",
    "last week": "LAST_WEEK",
    "next week": "NEXT_WEEK",
    "this month": "THIS_MONTH",
    "last month": "LAST_MONTH",
    "next month": "NEXT_MONTH",
    "this quarter": "THIS_QUARTER",
    "last quarter": "LAST_QUARTER",
    "next quarter": "NEXT_QUARTER",
    "this year": "THIS_YEAR",
    "last year": "LAST_YEAR",
    "next year": "NEXT_YEAR",
}

PRIORITY_KEYWORDS = {"high", "medium", "low", "critical", "urgent", "highest", "lowest", "normal"}

STATUS_KEYWORDS: Dict[str, str] = {
    "open": "Open",
    "closed": "Closed",
    "new": "New",
    "active": "Active",
    "inactive": "Inactive",
    "pending": "Pending",
    "in progress": "In Progress",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "on hold": "On Hold",
    "escalated": "Escalated",
    "resolved": "Resolved",
    "won": "Closed Won",
    "lost": "Closed Lost",
}

DATE_FIELDS = ["CreatedDate", "CloseDate", "LastModifiedDate"]
AMOUNT_FIELDS = ["Amount", "AnnualRevenue", "ExpectedRevenue"]
_LIVE_TYPES = {
    "Account": GroundingType.ACCOUNT_NAME,
    "Contact": GroundingType.CONTACT_NAME,
    "Lead": GroundingType.PERSON_NAME,
    "User": GroundingType.PERSON_NAME,
}


@dataclass
class LiveRecord:
    object_type: str
    name: str
    record_id: Optional[str] = None


@runtime_checkable
class LiveQueryExecutor(Protocol):
    """Looks names up in the live source system."""

    async def search_names(self, term: str, objects: Sequence[str], limit: int) -> List[LiveRecord]: ...


@dataclass
class GroundingOptions:
    org_id: Optional[str] = None
    context_objects: Optional[List[str]] = None
    min_confidence: float = 0.0
    max_results: int = DEFAULT_MAX_RESULTS
    use_live: bool = True


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _format_amount(amount: float) -> str:
    return str(int(amount)) if float(amount).is_integer() else f"{amount:.2f}"


def is_proper_noun(value: str) -> bool:
    return bool(_PROPER_NOUN_RE.match(value.strip()))


def detect_patterns(value: str) -> List[GroundingResult]:
    """Deterministic format recognizers; no I/O."""
    raw = value.strip()
    lowered = raw.lower()
    results: List[GroundingResult] = []

    def _add(gtype: GroundingType, confidence: float, flt: str, fields: List[str], pattern: str) -> None:
        results.append(
            GroundingResult(
                value=raw,
                type=gtype,
                confidence=confidence,
                suggested_filter=flt,
                fields=fields,
                source=GroundingSource.PATTERN_MATCH,
                evidence=GroundingEvidence(pattern=pattern, matched_value=raw),
            )
        )

    if _ID_RE.match(raw) and any(ch.isdigit() for ch in raw):
        _add(GroundingType.ID_REFERENCE, 0.95, f"Id = '{raw}'", ["Id"], "record_id")
    if _DATE_LITERAL_RE.match(raw):
        _add(GroundingType.DATE_REFERENCE, 0.98, f"CreatedDate = {raw.upper()}", list(DATE_FIELDS), "date_literal")
    elif lowered in NATURAL_DATES:
        _add(GroundingType.DATE_REFERENCE, 0.95, f"CreatedDate = {NATURAL_DATES[lowered]}", list(DATE_FIELDS), "natural_date")
    else:
        last_n = _LAST_N_DAYS_RE.match(raw)
        if last_n:
            literal = f"{last_n.group(1).upper()}_N_DAYS:{last_n.group(2)}"
            _add(GroundingType.DATE_REFERENCE, 0.95, f"CreatedDate = {literal}", list(DATE_FIELDS), "natural_date")
    if _ISO_DATE_RE.match(raw):
        _add(GroundingType.DATE_REFERENCE, 0.95, f"CreatedDate = {raw}", list(DATE_FIELDS), "iso_date")
    if _CURRENCY_RE.match(raw) and not _ID_RE.match(raw):
        amount = float(raw.replace("$", "").replace(",", ""))
        _add(GroundingType.NUMERIC_VALUE, 0.9, f"Amount >= {_format_amount(amount)}", list(AMOUNT_FIELDS), "currency")
    suffix = _SUFFIX_AMOUNT_RE.match(raw)
    if suffix:
        scale = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}[suffix.group(2).lower()]
        amount = float(suffix.group(1)) * scale
        _add(GroundingType.NUMERIC_VALUE, 0.9, f"Amount >= {_format_amount(amount)}", list(AMOUNT_FIELDS), "amount_suffix")
    if _EMAIL_RE.match(raw):
        _add(GroundingType.FIELD_REFERENCE, 0.95, f"Email = '{_quote(raw)}'", ["Email"], "email")
    elif _URL_RE.match(raw) and "." in raw:
        _add(GroundingType.FIELD_REFERENCE, 0.95, f"Website = '{_quote(raw)}'", ["Website"], "url")
    digits = re.sub(r"\D", "", raw)
    if _PHONE_RE.match(raw) and len(digits) >= 7 and not _ISO_DATE_RE.match(raw) and not _CURRENCY_RE.match(raw):
        _add(GroundingType.FIELD_REFERENCE, 0.85, f"Phone LIKE '%{digits[-10:]}%'", ["Phone", "MobilePhone"], "phone")
    if lowered in PRIORITY_KEYWORDS:
        _add(GroundingType.PRIORITY_VALUE, 0.9, f"Priority = '{lowered.capitalize()}'", ["Priority"], "priority")
    if lowered in STATUS_KEYWORDS:
        status = STATUS_KEYWORDS[lowered]
        _add(GroundingType.STATUS_VALUE, 0.85, f"Status = '{status}'", ["Status", "StageName"], "status")
    return results


def _picklist_type(field_api_name: str) -> GroundingType:
    if field_api_name in {"Status", "StageName"}:
        return GroundingType.STATUS_VALUE
    if field_api_name == "Priority":
        return GroundingType.PRIORITY_VALUE
    return GroundingType.PICKLIST_VALUE


class ValueGroundingService:
    def __init__(
        self,
        graph_store: GraphStore,
        search: SemanticSearchService,
        live_executor: Optional[LiveQueryExecutor] = None,
    ) -> None:
        self.graph_store = graph_store
        self.search = search
        self.live_executor = live_executor

    async def ground(self, value: str, options: Optional[GroundingOptions] = None) -> GroundedEntity:
        opts = options or GroundingOptions()
        raw = value.strip()
        entity = GroundedEntity(value=raw)
        if not raw:
            return entity

        patterns = detect_patterns(raw)
        if patterns and max(p.confidence for p in patterns) >= 0.95:
            entity.results = self._finalize(patterns, opts)
            return entity

        tiered = await self._exact_tier(raw, opts)
        if not tiered:
            tiered = await self._fuzzy_tier(raw, opts)
        if not tiered:
            tiered = await self._vector_tier(raw, opts)

        results = patterns + tiered
        if opts.use_live and self.live_executor and not any(r.confidence >= LIVE_CONFIDENCE for r in results):
            results.extend(await self._live_tier(raw))

        if not results:
            results = [self._fallback(raw)]
        entity.results = self._finalize(results, opts)
        return entity

    def _finalize(self, results: List[GroundingResult], opts: GroundingOptions) -> List[GroundingResult]:
        kept = [r for r in results if r.confidence >= opts.min_confidence]
        kept.sort(key=lambda r: r.confidence, reverse=True)
        return kept[: opts.max_results]

    def _in_context(self, object_api_name: str, opts: GroundingOptions) -> bool:
        if not opts.context_objects:
            return True
        return object_api_name.lower() in {o.lower() for o in opts.context_objects}

    async def _exact_tier(self, raw: str, opts: GroundingOptions) -> List[GroundingResult]:
        results: List[GroundingResult] = []
        try:
            matches = await self.graph_store.find_picklist_matches(raw, opts.org_id)
        except Exception as exc:
            logger.warning("picklist lookup failed for %r: %s", raw, exc)
            matches = []
        for match in matches:
            if not self._in_context(match.object_api_name, opts):
                continue
            results.append(
                GroundingResult(
                    value=raw,
                    type=_picklist_type(match.field_api_name),
                    confidence=EXACT_PICKLIST_CONFIDENCE,
                    suggested_filter=f"{match.field_api_name} = '{_quote(match.value)}'",
                    fields=[match.field_api_name],
                    source=GroundingSource.EXACT_PICKLIST,
                    evidence=GroundingEvidence(
                        matched_node=f"{match.object_api_name}.{match.field_api_name}", matched_value=match.value
                    ),
                )
            )
        for obj in await self.search.lookup_objects(raw, opts.org_id):
            if obj.match_type == "exact":
                results.append(self._object_result(raw, obj.api_name, EXACT_OBJECT_CONFIDENCE, GroundingSource.EXACT_OBJECT, 1.0))
        return results

    async def _fuzzy_tier(self, raw: str, opts: GroundingOptions) -> List[GroundingResult]:
        results: List[GroundingResult] = []
        lowered = raw.lower()
        for obj_name in opts.context_objects or []:
            try:
                fields = await self.graph_store.get_object_fields(obj_name, opts.org_id)
                for fld in fields:
                    if fld.type not in {"picklist", "multipicklist"}:
                        continue
                    values = await self.graph_store.get_picklist_values(obj_name, fld.api_name, opts.org_id)
                    for candidate in values:
                        cand = candidate.lower()
                        if cand.startswith(lowered):
                            confidence = 0.9
                        elif lowered in cand:
                            confidence = 0.8
                        elif cand in lowered:
                            confidence = 0.7
                        else:
                            continue
                        results.append(
                            GroundingResult(
                                value=raw,
                                type=_picklist_type(fld.api_name),
                                confidence=confidence,
                                suggested_filter=f"{fld.api_name} = '{_quote(candidate)}'",
                                fields=[fld.api_name],
                                source=GroundingSource.FUZZY_MATCH,
                                evidence=GroundingEvidence(
                                    matched_node=f"{obj_name}.{fld.api_name}", matched_value=candidate
                                ),
                            )
                        )
            except Exception as exc:
                logger.warning("fuzzy picklist scan failed on %s: %s", obj_name, exc)
        for obj in await self.search.lookup_objects(raw, opts.org_id):
            if obj.match_type == "fuzzy":
                results.append(self._object_result(raw, obj.api_name, obj.similarity, GroundingSource.FUZZY_MATCH, obj.similarity))
        return results

    async def _vector_tier(self, raw: str, opts: GroundingOptions) -> List[GroundingResult]:
        results: List[GroundingResult] = []
        for obj in await self.search.vector_objects(raw, opts.org_id):
            if obj.similarity > SEMANTIC_FLOOR:
                results.append(
                    self._object_result(
                        raw, obj.api_name, obj.similarity * SEMANTIC_PENALTY, GroundingSource.SEMANTIC_MATCH, obj.similarity
                    )
                )
        return results

    async def _live_tier(self, raw: str) -> List[GroundingResult]:
        if not is_proper_noun(raw) and len(raw) < 3:
            return []
        try:
            records = await self.live_executor.search_names(raw, LIVE_SEARCH_OBJECTS, LIVE_SEARCH_LIMIT)
        except Exception as exc:
            logger.debug("live lookup failed for %r: %s", raw, exc)
            return []
        results: List[GroundingResult] = []
        seen = set()
        for rec in records:
            if rec.object_type in seen:
                continue
            seen.add(rec.object_type)
            results.append(
                GroundingResult(
                    value=raw,
                    type=_LIVE_TYPES.get(rec.object_type, GroundingType.COMPANY_NAME),
                    confidence=LIVE_CONFIDENCE,
                    suggested_filter=f"{rec.object_type}.Name LIKE '{_quote(raw)}%'",
                    fields=["Name"],
                    source=GroundingSource.LIVE_VERIFIED,
                    evidence=GroundingEvidence(matched_node=rec.object_type, matched_value=rec.name),
                )
            )
        return results

    @staticmethod
    def _object_result(
        raw: str, api_name: str, confidence: float, source: GroundingSource, similarity: float
    ) -> GroundingResult:
        return GroundingResult(
            value=raw,
            type=GroundingType.OBJECT_REFERENCE,
            confidence=confidence,
            suggested_filter=f"FROM {api_name}",
            fields=[],
            source=source,
            evidence=GroundingEvidence(matched_node=api_name, similarity=similarity),
        )

    @staticmethod
    def _fallback(raw: str) -> GroundingResult:
        if is_proper_noun(raw):
            return GroundingResult(
                value=raw,
                type=GroundingType.COMPANY_NAME,
                confidence=PROPER_NOUN_CONFIDENCE,
                suggested_filter=f"Account.Name LIKE '{_quote(raw)}%'",
                fields=["Account.Name", "Name"],
                source=GroundingSource.HEURISTIC,
                alternatives=[f"Name LIKE '{_quote(raw)}%'"],
            )
        return GroundingResult(
            value=raw,
            type=GroundingType.UNKNOWN,
            confidence=UNKNOWN_CONFIDENCE,
            suggested_filter=f"Name LIKE '{_quote(raw)}%'",
            fields=["Name"],
            source=GroundingSource.HEURISTIC,
        )

    async def ground_values(self, values: Sequence[str], options: Optional[GroundingOptions] = None) -> List[GroundedEntity]:
        unique = dedupe(v.strip() for v in values if v and v.strip())
        return list(await asyncio.gather(*(self.ground(v, options) for v in unique)))

    async def build_grounding_context(
        self, values: Sequence[str], timeout: float, options: Optional[GroundingOptions] = None
    ) -> List[GroundedEntity]:
        finished, entities = await race_timeout(self.ground_values(values, options), timeout)
        if not finished:
            logger.info("grounding timed out after %.2fs; continuing without it", timeout)
            return []
        return entities or []


def format_grounding_for_prompt(entities: Sequence[GroundedEntity], min_confidence: float = 0.5) -> str:
    lines: List[str] = []
    for entity in entities:
        best = entity.best_match
        if not best or best.confidence < min_confidence:
            continue
        line = f'- "{entity.value}" -> {best.type.value} ({best.confidence:.2f}): {best.suggested_filter}'
        if best.alternatives:
            line += f" (or {', '.join(best.alternatives)})"
        lines.append(line)
    if not lines:
        return ""
    return "GROUNDED VALUES:\n" + "\n".join(lines)


__all__ = [
    "ValueGroundingService",
    "GroundingOptions",
    "LiveQueryExecutor",
    "LiveRecord",
    "detect_patterns",
    "is_proper_noun",
    "format_grounding_for_prompt",
    "NATURAL_DATES",
    "STATUS_KEYWORDS",
    "PRIORITY_KEYWORDS",
]
