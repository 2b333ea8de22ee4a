from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_ENV_PATH = Path(__file__).resolve().parents[1] / "config.env"

if _ENV_PATH.exists():
    load_dotenv(_ENV_PATH)
else:
    load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


DEFAULT_OPENAI_MODEL_DRAFT = os.getenv("OPENAI_MODEL_DRAFT", "gpt-4o-mini")
DEFAULT_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")

DEFAULT_NEO4J_URI: Optional[str] = os.getenv("NEO4J_URI")
DEFAULT_NEO4J_USER = os.getenv("NEO4J_USER", "neo4j")
DEFAULT_NEO4J_PASSWORD = os.getenv("NEO4J_PASSWORD", "")
DEFAULT_NEO4J_DATABASE = os.getenv("NEO4J_DATABASE", "neo4j")

DEFAULT_LOG_LEVEL = os.getenv("NL2SOQL_LOG_LEVEL", "INFO")

DEFAULT_CACHE_SIMILARITY = _env_float("NL2SOQL_CACHE_SIMILARITY", 0.8)
DEFAULT_CACHE_TTL_MS = _env_int("NL2SOQL_CACHE_TTL_MS", 300_000)
DEFAULT_CACHE_MAX_ENTRIES = _env_int("NL2SOQL_CACHE_MAX_ENTRIES", 100)
DEFAULT_SCOPED_OVERFETCH = _env_int("NL2SOQL_SCOPED_OVERFETCH", 500)
DEFAULT_DRAFT_TIMEOUT_S = _env_float("NL2SOQL_DRAFT_TIMEOUT_S", 3.0)
DEFAULT_GROUNDING_TIMEOUT_S = _env_float("NL2SOQL_GROUNDING_TIMEOUT_S", 2.0)
DEFAULT_EMBED_BATCH_SIZE = _env_int("NL2SOQL_EMBED_BATCH_SIZE", 100)
DEFAULT_EMBED_MAX_RETRIES = _env_int("NL2SOQL_EMBED_MAX_RETRIES", 5)
DEFAULT_EMBED_INITIAL_BACKOFF_S = _env_float("NL2SOQL_EMBED_INITIAL_BACKOFF_S", 1.0)
DEFAULT_ENABLE_DRAFT_PHASE = os.getenv("NL2SOQL_ENABLE_DRAFT_PHASE", "false").lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    """Snapshot of the tunables consumed by the service container."""

    draft_model: str = DEFAULT_OPENAI_MODEL_DRAFT
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    cache_similarity: float = DEFAULT_CACHE_SIMILARITY
    cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    scoped_overfetch: int = DEFAULT_SCOPED_OVERFETCH
    draft_timeout_s: float = DEFAULT_DRAFT_TIMEOUT_S
    grounding_timeout_s: float = DEFAULT_GROUNDING_TIMEOUT_S
    embed_batch_size: int = DEFAULT_EMBED_BATCH_SIZE
    embed_max_retries: int = DEFAULT_EMBED_MAX_RETRIES
    embed_initial_backoff_s: float = DEFAULT_EMBED_INITIAL_BACKOFF_S
    enable_draft_phase: bool = DEFAULT_ENABLE_DRAFT_PHASE
    neo4j_uri: Optional[str] = DEFAULT_NEO4J_URI
    neo4j_user: str = DEFAULT_NEO4J_USER
    neo4j_password: str = field(default=DEFAULT_NEO4J_PASSWORD, repr=False)
    neo4j_database: str = DEFAULT_NEO4J_DATABASE

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            draft_model=os.getenv("OPENAI_MODEL_DRAFT", DEFAULT_OPENAI_MODEL_DRAFT),
            embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
            cache_similarity=_env_float("NL2SOQL_CACHE_SIMILARITY", DEFAULT_CACHE_SIMILARITY),
            cache_ttl_ms=_env_int("NL2SOQL_CACHE_TTL_MS", DEFAULT_CACHE_TTL_MS),
            cache_max_entries=_env_int("NL2SOQL_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES),
            scoped_overfetch=_env_int("NL2SOQL_SCOPED_OVERFETCH", DEFAULT_SCOPED_OVERFETCH),
            draft_timeout_s=_env_float("NL2SOQL_DRAFT_TIMEOUT_S", DEFAULT_DRAFT_TIMEOUT_S),
            grounding_timeout_s=_env_float("NL2SOQL_GROUNDING_TIMEOUT_S", DEFAULT_GROUNDING_TIMEOUT_S),
            embed_batch_size=_env_int("NL2SOQL_EMBED_BATCH_SIZE", DEFAULT_EMBED_BATCH_SIZE),
            embed_max_retries=_env_int("NL2SOQL_EMBED_MAX_RETRIES", DEFAULT_EMBED_MAX_RETRIES),
            embed_initial_backoff_s=_env_float("NL2SOQL_EMBED_INITIAL_BACKOFF_S", DEFAULT_EMBED_INITIAL_BACKOFF_S),
            enable_draft_phase=os.getenv("NL2SOQL_ENABLE_DRAFT_PHASE", "false").lower() in {"1", "true", "yes"},
            neo4j_uri=os.getenv("NEO4J_URI", DEFAULT_NEO4J_URI),
            neo4j_user=os.getenv("NEO4J_USER", DEFAULT_NEO4J_USER),
            neo4j_password=os.getenv("NEO4J_PASSWORD", DEFAULT_NEO4J_PASSWORD),
            neo4j_database=os.getenv("NEO4J_DATABASE", DEFAULT_NEO4J_DATABASE),
        )


__all__ = [
    "Settings",
    "DEFAULT_OPENAI_MODEL_DRAFT",
    "DEFAULT_EMBEDDING_MODEL",
    "DEFAULT_NEO4J_URI",
    "DEFAULT_NEO4J_USER",
    "DEFAULT_NEO4J_PASSWORD",
    "DEFAULT_NEO4J_DATABASE",
    "DEFAULT_LOG_LEVEL",
    "DEFAULT_CACHE_SIMILARITY",
    "DEFAULT_CACHE_TTL_MS",
    "DEFAULT_CACHE_MAX_ENTRIES",
    "DEFAULT_SCOPED_OVERFETCH",
    "DEFAULT_DRAFT_TIMEOUT_S",
    "DEFAULT_GROUNDING_TIMEOUT_S",
    "DEFAULT_EMBED_BATCH_SIZE",
    "DEFAULT_EMBED_MAX_RETRIES",
    "DEFAULT_EMBED_INITIAL_BACKOFF_S",
]
