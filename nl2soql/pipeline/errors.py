from __future__ import annotations

from typing import List, Optional


class Nl2SoqlError(Exception):
    """Base class for errors raised by the grounding pipeline."""


class EmbeddingError(Nl2SoqlError):
    def __init__(self, message: str, provider: str = "unknown", partial: Optional[List[List[float]]] = None) -> None:
        super().__init__(message)
        self.provider = provider
        # Vectors produced by batches that finished before the failure.
        self.partial = partial or []


class RateLimitError(EmbeddingError):
    def __init__(self, provider: str, retry_after: Optional[float] = None) -> None:
        super().__init__(f"rate limited by {provider}", provider)
        self.retry_after = retry_after


class ChatError(Nl2SoqlError):
    pass


class ModelUnavailableError(ChatError):
    pass


class GraphStoreError(Nl2SoqlError):
    pass


class VectorStoreError(GraphStoreError):
    pass


class QueryParseError(Nl2SoqlError):
    def __init__(self, message: str, position: int = -1) -> None:
        super().__init__(message if position < 0 else f"{message} at position {position}")
        self.position = position


__all__ = [
    "Nl2SoqlError",
    "EmbeddingError",
    "RateLimitError",
    "ChatError",
    "ModelUnavailableError",
    "GraphStoreError",
    "VectorStoreError",
    "QueryParseError",
]
