"""
Few-shot retrieval of curated question/SOQL pairs.

Examples are embedded once and stored next to the metadata graph. Lookups are
best effort: any failure yields an empty list and generation proceeds without
examples.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .models import SoqlExample, StoredExample
from .utils import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_EXAMPLE_COUNT = 3
BUNDLED_EXAMPLES = Path(__file__).resolve().parent / "data" / "examples.json"


def content_hash(question: str) -> str:
    return hashlib.sha256(question.encode("utf-8")).hexdigest()


def example_from_dict(raw: Dict[str, Any]) -> SoqlExample:
    return SoqlExample(
        id=str(raw["id"]),
        question=raw["question"],
        soql=raw["soql"],
        complexity=raw.get("complexity") or "simple",
        patterns=tuple(raw.get("patterns") or ()),
        objects=tuple(raw.get("objects") or ()),
        explanation=raw.get("explanation"),
    )


def load_bundled_examples(path: Optional[Path] = None) -> List[SoqlExample]:
    target = Path(path) if path else BUNDLED_EXAMPLES
    with target.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return [example_from_dict(raw) for raw in payload]


@runtime_checkable
class ExampleStore(Protocol):
    async def count(self) -> int: ...

    async def clear(self) -> None: ...

    async def store_examples(self, examples: Sequence[StoredExample], vectors: Sequence[Sequence[float]]) -> None: ...

    async def search(self, vector: Sequence[float], k: int, model: str) -> List[StoredExample]: ...

    async def list_examples(self) -> List[StoredExample]: ...

    async def examples_by_pattern(self, pattern: str) -> List[StoredExample]: ...

    async def stored_embedding_model(self) -> Optional[str]: ...


@dataclass
class MemoryExampleStore:
    """In-process example store; search is brute-force cosine over examples embedded with ``model``."""

    rows: List[Tuple[StoredExample, List[float]]] = field(default_factory=list)

    async def count(self) -> int:
        return len(self.rows)

    async def clear(self) -> None:
        self.rows.clear()

    async def store_examples(self, examples: Sequence[StoredExample], vectors: Sequence[Sequence[float]]) -> None:
        self.rows.extend((ex, list(vec)) for ex, vec in zip(examples, vectors))

    async def search(self, vector: Sequence[float], k: int, model: str) -> List[StoredExample]:
        scored = [
            (cosine_similarity(vector, vec), ex) for ex, vec in self.rows if ex.embedding_model == model
        ]
        scored.sort(key=lambda pair: (-pair[0], pair[1].id))
        return [ex for _, ex in scored[:k]]

    async def list_examples(self) -> List[StoredExample]:
        return sorted((ex for ex, _ in self.rows), key=lambda ex: ex.id)

    async def examples_by_pattern(self, pattern: str) -> List[StoredExample]:
        return [ex for ex in await self.list_examples() if pattern in ex.patterns]

    async def stored_embedding_model(self) -> Optional[str]:
        return self.rows[0][0].embedding_model if self.rows else None


class FewShotRetriever:
    def __init__(
        self,
        store: ExampleStore,
        embedder: Any,
        examples_loader: Callable[[], List[SoqlExample]] = load_bundled_examples,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.examples_loader = examples_loader

    async def is_ready(self) -> bool:
        try:
            return await self.store.count() > 0
        except Exception as exc:
            logger.debug("example store count failed: %s", exc)
            return False

    async def seed(self, examples: Sequence[SoqlExample]) -> int:
        """Replace the stored examples with ``examples`` embedded under the current model."""
        if not examples:
            logger.warning("no few-shot examples to seed")
            return 0
        model = self.embedder.model_name
        logger.info("seeding %s few-shot examples with %s", len(examples), model)
        vectors = await self.embedder.embed_batch([ex.question for ex in examples])
        stored = [
            StoredExample(
                **{f: getattr(ex, f) for f in ("id", "question", "soql", "complexity", "patterns", "objects", "explanation")},
                embedding_model=model,
                content_hash=content_hash(ex.question),
            )
            for ex in examples
        ]
        await self.store.clear()
        await self.store.store_examples(stored, vectors)
        return len(stored)

    async def ensure_initialized(self) -> bool:
        """Seed the store on first use. Returns True only when seeding happened."""
        try:
            if await self.is_ready():
                return False
            seeded = await self.seed(self.examples_loader())
            logger.info("few-shot examples initialized (%s)", seeded)
            return seeded > 0
        except Exception as exc:
            logger.warning("failed to initialize few-shot examples: %s", exc)
            return False

    async def find_similar(self, question: str, k: int = DEFAULT_EXAMPLE_COUNT) -> List[SoqlExample]:
        try:
            await self.ensure_initialized()
            if await self.store.count() == 0:
                logger.debug("no few-shot examples available")
                return []

            current = self.embedder.model_name
            stored_model = await self.store.stored_embedding_model()
            if stored_model and stored_model != current:
                logger.warning(
                    "few-shot examples were embedded with %s but the current model is %s; reseed to refresh",
                    stored_model,
                    current,
                )

            vector = await self.embedder.embed(question)
            results = await self.store.search(vector, k, current)
            logger.debug("found %s few-shot examples for %r", len(results), question[:50])
            return list(results)
        except Exception as exc:
            logger.warning("few-shot search failed, proceeding without examples: %s", exc)
            return []


def format_examples_for_prompt(examples: Sequence[SoqlExample]) -> str:
    blocks: List[str] = []
    for i, ex in enumerate(examples, start=1):
        block = f'**Example {i}:**\nQuestion: "{ex.question}"\n```soql\n{ex.soql}\n```'
        if ex.explanation:
            block += f"\nNote: {ex.explanation}"
        blocks.append(block)
    return "\n\n".join(blocks)


__all__ = [
    "ExampleStore",
    "MemoryExampleStore",
    "FewShotRetriever",
    "format_examples_for_prompt",
    "load_bundled_examples",
    "example_from_dict",
    "content_hash",
    "DEFAULT_EXAMPLE_COUNT",
]
