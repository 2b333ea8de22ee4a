from __future__ import annotations

import asyncio
import json
import math
import re
from typing import Any, Awaitable, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

T = TypeVar("T")


def normalize_text(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    lowered = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return re.sub(r"\s+", " ", lowered).strip()


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost))
        prev = cur
    return prev[-1]


def closest_match(value: str, candidates: Iterable[str], max_distance: int = 3) -> Optional[str]:
    """Exact, then prefix, then substring, then edit distance within max_distance."""
    pool = [c for c in candidates if c]
    lowered = value.lower()
    for cand in pool:
        if cand.lower() == lowered:
            return cand
    for cand in pool:
        if cand.lower().startswith(lowered):
            return cand
    for cand in pool:
        if lowered in cand.lower():
            return cand
    best: Optional[str] = None
    best_distance = max_distance + 1
    for cand in pool:
        distance = levenshtein(lowered, cand.lower())
        if distance < best_distance:
            best, best_distance = cand, distance
    return best


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def dedupe(items: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _discard_result(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled():
        task.exception()


async def race_timeout(coro: Awaitable[T], timeout: float) -> Tuple[bool, Optional[T]]:
    """
    Await ``coro`` for at most ``timeout`` seconds without cancelling it.

    Returns ``(True, result)`` when it finished first and ``(False, None)`` when
    the timer won; a late result or exception is dropped.
    """
    task = asyncio.ensure_future(coro)
    done, _pending = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return True, task.result()
    task.add_done_callback(_discard_result)
    return False, None


def clean_block(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped[stripped.find("\n") + 1 :] if "\n" in stripped else stripped.lstrip("`")
    if stripped.endswith("```"):
        stripped = stripped[: stripped.rfind("```")]
    return stripped.strip()


def safe_json_loads(text: str) -> Optional[Any]:
    try:
        return json.loads(clean_block(text))
    except (TypeError, ValueError):
        return None


__all__ = [
    "normalize_text",
    "levenshtein",
    "closest_match",
    "cosine_similarity",
    "jaccard",
    "dedupe",
    "race_timeout",
    "clean_block",
    "safe_json_loads",
]
