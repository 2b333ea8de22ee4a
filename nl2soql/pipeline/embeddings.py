from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .config import (
    DEFAULT_EMBED_BATCH_SIZE,
    DEFAULT_EMBED_INITIAL_BACKOFF_S,
    DEFAULT_EMBED_MAX_RETRIES,
    DEFAULT_EMBEDDING_MODEL,
)
from .errors import EmbeddingError, RateLimitError

logger = logging.getLogger(__name__)

MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


@dataclass
class BatchOptions:
    batch_size: int = DEFAULT_EMBED_BATCH_SIZE
    max_retries: int = DEFAULT_EMBED_MAX_RETRIES
    initial_backoff_s: float = DEFAULT_EMBED_INITIAL_BACKOFF_S


@dataclass
class EmbeddingResponse:
    """Provider-neutral embedding payload produced at the adapter boundary."""

    vectors: List[List[float]]
    model: str
    usage: Dict[str, int] = field(default_factory=dict)


@runtime_checkable
class EmbeddingProvider(Protocol):
    @property
    def model_name(self) -> str: ...

    def get_dimensions(self) -> int: ...

    async def is_available(self) -> bool: ...

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: Sequence[str], options: Optional[BatchOptions] = None) -> List[List[float]]: ...


def backoff_wait(initial_s: float):
    """Doubling backoff that defers to a provider supplied retry-after."""

    def _wait(retry_state: Any) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            return float(retry_after)
        return initial_s * (2 ** (retry_state.attempt_number - 1))

    return _wait


class OpenAIEmbeddingProvider:
    provider = "openai"

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        *,
        client: Any = None,
        api_key: Optional[str] = None,
        batch_options: Optional[BatchOptions] = None,
    ) -> None:
        self._model = model
        self.batch_options = batch_options or BatchOptions()
        self._dimensions = MODEL_DIMENSIONS.get(model, 1536)
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key) if api_key else AsyncOpenAI()
        self._client = client
        logger.debug("OpenAI embedding provider ready model=%s dims=%d", model, self._dimensions)

    @property
    def model_name(self) -> str:
        return self._model

    def get_dimensions(self) -> int:
        return self._dimensions

    async def is_available(self) -> bool:
        try:
            await self._create(["test"])
            return True
        except EmbeddingError as exc:
            logger.warning("OpenAI embedding provider not available: %s", exc)
            return False

    async def _create(self, inputs: List[str]) -> EmbeddingResponse:
        import openai

        try:
            raw = await self._client.embeddings.create(model=self._model, input=inputs)
        except openai.RateLimitError as exc:
            retry_after = None
            headers = getattr(getattr(exc, "response", None), "headers", None) or {}
            if headers.get("retry-after"):
                try:
                    retry_after = float(headers["retry-after"])
                except ValueError:
                    retry_after = None
            raise RateLimitError(self.provider, retry_after) from exc
        except openai.OpenAIError as exc:
            raise EmbeddingError(f"embedding request failed: {exc}", self.provider) from exc
        return self._to_response(raw)

    def _to_response(self, raw: Any) -> EmbeddingResponse:
        data = sorted(getattr(raw, "data", []) or [], key=lambda d: getattr(d, "index", 0))
        usage_raw = getattr(raw, "usage", None)
        usage = {}
        if usage_raw is not None:
            usage = {
                "prompt_tokens": int(getattr(usage_raw, "prompt_tokens", 0) or 0),
                "total_tokens": int(getattr(usage_raw, "total_tokens", 0) or 0),
            }
        return EmbeddingResponse([list(d.embedding) for d in data], getattr(raw, "model", self._model), usage)

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingError("cannot embed empty text", self.provider)
        response = await self._create([text])
        return response.vectors[0]

    async def embed_batch(self, texts: Sequence[str], options: Optional[BatchOptions] = None) -> List[List[float]]:
        opts = options or self.batch_options
        results: List[List[float]] = [[] for _ in texts]
        valid = [(idx, text) for idx, text in enumerate(texts) if text and text.strip()]
        if not valid:
            return results

        for start in range(0, len(valid), opts.batch_size):
            batch = valid[start : start + opts.batch_size]
            try:
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception_type(RateLimitError),
                    wait=backoff_wait(opts.initial_backoff_s),
                    stop=stop_after_attempt(opts.max_retries + 1),
                    before_sleep=lambda state: logger.warning(
                        "rate limited on batch starting at %d, retry %d", start, state.attempt_number
                    ),
                    reraise=True,
                ):
                    with attempt:
                        response = await self._create([text for _, text in batch])
            except EmbeddingError as exc:
                raise EmbeddingError(
                    f"failed to embed batch starting at {start}: {exc}", self.provider, partial=results
                ) from exc
            for (idx, _), vector in zip(batch, response.vectors):
                results[idx] = vector
            logger.debug("embedded batch start=%d size=%d total=%d", start, len(batch), len(valid))
        return results


__all__ = [
    "BatchOptions",
    "EmbeddingResponse",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "MODEL_DIMENSIONS",
    "backoff_wait",
]
