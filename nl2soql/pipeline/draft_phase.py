from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .config import DEFAULT_DRAFT_TIMEOUT_S
from .field_pruning import CORE_FIELDS
from .openai_client import ChatProvider, chat_complete
from .soql_ast import extract_soql_block
from .utils import race_timeout

logger = logging.getLogger(__name__)

DRAFT_PROMPT = """You are a SOQL query assistant. Given a natural language query and a schema, write a QUICK DRAFT of the SOQL query.

IMPORTANT: This is a DRAFT. Don't worry about perfect syntax. Focus on:
1. Identifying the correct fields to SELECT
2. Identifying the correct objects in FROM
3. Basic WHERE clause structure

Output ONLY the SOQL query, no explanations. It's okay if it has minor syntax issues."""

SQL_KEYWORDS = frozenset(
    """
    SELECT FROM WHERE AND OR NOT IN LIKE NULL TRUE FALSE ORDER BY ASC DESC LIMIT OFFSET GROUP HAVING AS
    NULLS FIRST LAST COUNT SUM AVG MIN MAX COUNT_DISTINCT CALENDAR_MONTH CALENDAR_QUARTER CALENDAR_YEAR
    DAY_IN_MONTH DAY_IN_WEEK DAY_IN_YEAR DAY_ONLY FISCAL_MONTH FISCAL_QUARTER FISCAL_YEAR HOUR_IN_DAY
    WEEK_IN_MONTH WEEK_IN_YEAR INCLUDES EXCLUDES TYPEOF WHEN THEN ELSE END WITH DATA CATEGORY ABOVE BELOW AT
    ROLLUP CUBE FOR VIEW REFERENCE UPDATE TRACKING VIEWSTAT USING SCOPE EVERYTHING DELEGATED MINE
    MY_TEAM_TERRITORY MY_TERRITORY TEAM FORMAT TOLABEL CONVERTCURRENCY CONVERTTZ DISTANCE GEOLOCATION
    """.split()
)

_IDENT_RE = re.compile(r"\b[a-zA-Z][a-zA-Z0-9_]*(?:\.[a-zA-Z0-9_]+)?\b")
_FROM_RE = re.compile(r"\bFROM\s+([a-zA-Z][a-zA-Z0-9_]*)\b", re.IGNORECASE)


@dataclass
class DraftPhaseResult:
    draft_soql: str = ""
    extracted_columns: Dict[str, List[str]] = field(default_factory=dict)
    success: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0


def extract_columns_loose(draft_soql: str, valid_fields: Set[str]) -> List[str]:
    """
    Identifier-shaped tokens from a possibly malformed draft that name a known field.

    Quoted strings are blanked first; ``Account.Name`` counts as ``Name``.
    Matching against ``valid_fields`` is case-sensitive.
    """
    if not draft_soql or not valid_fields:
        return []
    cleaned = re.sub(r"'[^']*'", "''", draft_soql)
    cleaned = re.sub(r'"[^"]*"', '""', cleaned)
    found: List[str] = []
    for token in _IDENT_RE.findall(cleaned):
        if token.upper() in SQL_KEYWORDS:
            continue
        name = token.split(".")[-1]
        if name in valid_fields and name not in found:
            found.append(name)
    return found


def merge_with_core_fields(extracted: Iterable[str], valid_fields: Set[str]) -> List[str]:
    merged = list(dict.fromkeys(extracted))
    for core in CORE_FIELDS:
        if core in valid_fields and core not in merged:
            merged.append(core)
    return merged


def extract_main_object(draft_soql: str) -> Optional[str]:
    if not draft_soql:
        return None
    match = _FROM_RE.search(draft_soql)
    return match.group(1) if match else None


def should_run_draft_phase(enabled: Optional[bool]) -> bool:
    return enabled is True


class DraftPhase:
    """Cheap draft generation whose only output is a set of mentioned fields."""

    def __init__(self, chat: ChatProvider, timeout_s: float = DEFAULT_DRAFT_TIMEOUT_S, max_tokens: int = 400) -> None:
        self.chat = chat
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    async def _draft(self, query: str, schema_context: str) -> str:
        prompt = f'SCHEMA:\n{schema_context}\n\nQUERY: "{query}"\n\nWrite a draft SOQL query:'
        raw = await chat_complete(self.chat, DRAFT_PROMPT, prompt, max_tokens=self.max_tokens)
        return extract_soql_block(raw)

    async def run(
        self,
        query: str,
        schema_context: str,
        relevant_tables: Sequence[str],
        valid_fields_by_table: Mapping[str, Set[str]],
    ) -> DraftPhaseResult:
        started = time.monotonic()
        try:
            finished, draft = await race_timeout(self._draft(query, schema_context), self.timeout_s)
        except Exception as exc:
            elapsed = (time.monotonic() - started) * 1000
            logger.warning("draft phase failed after %.0fms: %s", elapsed, exc)
            return DraftPhaseResult(success=False, error=str(exc), duration_ms=elapsed)

        elapsed = (time.monotonic() - started) * 1000
        if not finished or draft is None:
            logger.info("draft phase timed out after %.0fms", elapsed)
            return DraftPhaseResult(success=False, error=f"timed out after {self.timeout_s}s", duration_ms=elapsed)

        columns: Dict[str, List[str]] = {}
        for table in relevant_tables:
            valid = set(valid_fields_by_table.get(table) or ())
            if not valid:
                columns[table] = list(CORE_FIELDS)
                continue
            columns[table] = merge_with_core_fields(extract_columns_loose(draft, valid), valid)

        logger.info(
            "draft phase done in %.0fms (main object %s): %s",
            elapsed,
            extract_main_object(draft),
            {t: len(c) for t, c in columns.items()},
        )
        return DraftPhaseResult(draft_soql=draft, extracted_columns=columns, success=True, duration_ms=elapsed)


__all__ = [
    "DraftPhase",
    "DraftPhaseResult",
    "DRAFT_PROMPT",
    "SQL_KEYWORDS",
    "extract_columns_loose",
    "merge_with_core_fields",
    "extract_main_object",
    "should_run_draft_phase",
]
