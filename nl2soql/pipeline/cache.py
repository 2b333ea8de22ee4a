from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional

from .config import DEFAULT_CACHE_MAX_ENTRIES, DEFAULT_CACHE_SIMILARITY, DEFAULT_CACHE_TTL_MS
from .models import SchemaContext
from .utils import jaccard

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "default"

CACHE_STOPWORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "of", "in", "on", "at", "to", "for", "with",
        "from", "by", "show", "me", "get", "all", "find", "list", "that", "have",
        "what", "is", "are", "was", "were", "my", "our", "their", "describe", "tell",
        "about", "records", "objects",
        # filler that does not change which schema is needed
        "located", "based", "situated", "please", "give", "display", "can", "you",
    }
)


def normalize_query(query: str) -> FrozenSet[str]:
    """Term set used for similarity; tokens shorter than three characters are dropped."""
    tokens = re.sub(r"[^a-z0-9\s]", "", query.lower()).split()
    return frozenset(t for t in tokens if len(t) > 2 and t not in CACHE_STOPWORDS)


@dataclass(frozen=True)
class CacheEntry:
    context: SchemaContext
    created_at_ms: float
    term_set: FrozenSet[str]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class SchemaContextCache:
    """
    Per-scope schema context cache keyed by query similarity.

    Entries in a scope are kept oldest to newest. Reads scan newest first and
    skip expired entries; writes drop expired entries and evict the oldest one
    when the scope is full.
    """

    def __init__(
        self,
        similarity: float = DEFAULT_CACHE_SIMILARITY,
        ttl_ms: float = DEFAULT_CACHE_TTL_MS,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.similarity = similarity
        self.ttl_ms = ttl_ms
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: Dict[str, List[CacheEntry]] = {}
        self._lock = threading.Lock()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at_ms > self.ttl_ms

    def get(self, query: str, scope: Optional[str] = None) -> Optional[SchemaContext]:
        key = scope or DEFAULT_SCOPE
        terms = normalize_query(query)
        now = self._clock()
        with self._lock:
            entries = list(self._entries.get(key, ()))
        for entry in reversed(entries):
            if self._expired(entry, now):
                continue
            score = jaccard(set(terms), set(entry.term_set))
            if score >= self.similarity:
                logger.debug("schema context cache hit for %r (similarity %.2f)", query, score)
                return entry.context
        return None

    def set(self, query: str, context: SchemaContext, scope: Optional[str] = None) -> None:
        key = scope or DEFAULT_SCOPE
        now = self._clock()
        entry = CacheEntry(context, now, normalize_query(query))
        with self._lock:
            fresh = [e for e in self._entries.get(key, ()) if not self._expired(e, now)]
            while len(fresh) >= self.max_entries:
                fresh.pop(0)
            fresh.append(entry)
            self._entries[key] = fresh
            size = len(fresh)
        logger.debug("cached schema context for %r in scope %s (%s entries)", query, key, size)

    def invalidate(self, scope: str) -> None:
        with self._lock:
            self._entries.pop(scope, None)
        logger.info("invalidated schema context cache for %s", scope)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("cleared schema context cache")

    def size(self, scope: Optional[str] = None) -> int:
        with self._lock:
            return len(self._entries.get(scope or DEFAULT_SCOPE, ()))


__all__ = [
    "SchemaContextCache",
    "CacheEntry",
    "normalize_query",
    "CACHE_STOPWORDS",
    "DEFAULT_SCOPE",
]
