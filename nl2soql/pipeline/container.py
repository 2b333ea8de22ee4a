from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from .cache import SchemaContextCache
from .config import Settings
from .draft_phase import DraftPhase
from .embeddings import EmbeddingProvider
from .entity_resolver import EntityResolver
from .few_shot import ExampleStore, FewShotRetriever, MemoryExampleStore
from .field_pruning import ScopedFieldSearcher
from .graph_store import GraphStore
from .grounding import LiveQueryExecutor, ValueGroundingService
from .openai_client import ChatProvider
from .schema_context import SchemaContextBuilder
from .semantic_search import SemanticSearchService
from .validator import LiveMetadataSource, SoqlValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceContainer:
    """
    Owns the shared collaborators for one process and builds services on demand.

    Services are created on first access and memoized; ``reset`` drops them
    (and empties the schema context cache) so tests start from a clean slate.
    """

    def __init__(
        self,
        graph_store: GraphStore,
        *,
        settings: Optional[Settings] = None,
        embedder: Optional[EmbeddingProvider] = None,
        chat: Optional[ChatProvider] = None,
        live_executor: Optional[LiveQueryExecutor] = None,
        live_metadata: Optional[LiveMetadataSource] = None,
        example_store: Optional[ExampleStore] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.graph_store = graph_store
        self.embedder = embedder
        self.chat = chat
        self.live_executor = live_executor
        self.live_metadata = live_metadata
        self.example_store: ExampleStore = example_store or MemoryExampleStore()
        self._services: Dict[str, Any] = {}

    @classmethod
    def connect(cls, settings: Optional[Settings] = None) -> "ServiceContainer":
        """Container over Neo4j and OpenAI configured from the environment."""
        from .embeddings import BatchOptions, OpenAIEmbeddingProvider
        from .neo4j_store import Neo4jExampleStore, Neo4jGraphStore
        from .openai_client import OpenAIChatProvider

        settings = settings or Settings.from_env()
        store = Neo4jGraphStore(
            settings.neo4j_uri, settings.neo4j_user, settings.neo4j_password, settings.neo4j_database
        )
        return cls(
            store,
            settings=settings,
            embedder=OpenAIEmbeddingProvider(
                settings.embedding_model,
                batch_options=BatchOptions(
                    settings.embed_batch_size, settings.embed_max_retries, settings.embed_initial_backoff_s
                ),
            ),
            chat=OpenAIChatProvider(settings.draft_model),
            example_store=Neo4jExampleStore(store),
        )

    def _get(self, key: str, factory: Callable[[], T]) -> T:
        if key not in self._services:
            logger.debug("building service %s", key)
            self._services[key] = factory()
        return self._services[key]

    @property
    def cache(self) -> SchemaContextCache:
        s = self.settings
        return self._get(
            "cache",
            lambda: SchemaContextCache(s.cache_similarity, s.cache_ttl_ms, s.cache_max_entries),
        )

    @property
    def search(self) -> SemanticSearchService:
        return self._get("search", lambda: SemanticSearchService(self.graph_store, self.embedder))

    @property
    def grounding(self) -> ValueGroundingService:
        return self._get(
            "grounding", lambda: ValueGroundingService(self.graph_store, self.search, self.live_executor)
        )

    @property
    def resolver(self) -> EntityResolver:
        return self._get("resolver", lambda: EntityResolver(self.graph_store))

    @property
    def context_builder(self) -> SchemaContextBuilder:
        return self._get("context_builder", lambda: SchemaContextBuilder(self.search, self.graph_store, self.cache))

    @property
    def field_searcher(self) -> ScopedFieldSearcher:
        return self._get(
            "field_searcher",
            lambda: ScopedFieldSearcher(self.graph_store, self.embedder, self.settings.scoped_overfetch),
        )

    @property
    def draft_phase(self) -> Optional[DraftPhase]:
        if self.chat is None:
            return None
        return self._get("draft_phase", lambda: DraftPhase(self.chat, self.settings.draft_timeout_s))

    @property
    def few_shot(self) -> Optional[FewShotRetriever]:
        if self.embedder is None:
            return None
        return self._get("few_shot", lambda: FewShotRetriever(self.example_store, self.embedder))

    @property
    def validator(self) -> SoqlValidator:
        return self._get("validator", lambda: SoqlValidator(self.graph_store, self.live_metadata, self.resolver))

    def reset(self) -> None:
        cache = self._services.get("cache")
        if cache is not None:
            cache.clear()
        self._services.clear()
        logger.debug("service container reset")


__all__ = ["ServiceContainer"]
