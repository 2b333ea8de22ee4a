from nl2soql.pipeline.config import Settings


def test_settings_read_the_environment(monkeypatch):
    monkeypatch.setenv("NL2SOQL_CACHE_TTL_MS", "1000")
    monkeypatch.setenv("NL2SOQL_CACHE_SIMILARITY", "0.6")
    monkeypatch.setenv("NL2SOQL_ENABLE_DRAFT_PHASE", "yes")
    monkeypatch.setenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-large")

    settings = Settings.from_env()

    assert settings.cache_ttl_ms == 1000
    assert settings.cache_similarity == 0.6
    assert settings.enable_draft_phase is True
    assert settings.embedding_model == "text-embedding-3-large"


def test_blank_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("NL2SOQL_CACHE_MAX_ENTRIES", " ")
    monkeypatch.delenv("NL2SOQL_ENABLE_DRAFT_PHASE", raising=False)

    settings = Settings.from_env()

    assert settings.cache_max_entries == Settings().cache_max_entries
    assert settings.enable_draft_phase is False


def test_neo4j_connection_settings(monkeypatch):
    monkeypatch.setenv("NEO4J_URI", "neo4j://localhost:7687")
    monkeypatch.setenv("NEO4J_USER", "reader")
    monkeypatch.setenv("NEO4J_DATABASE", "orgs")

    settings = Settings.from_env()

    assert settings.neo4j_uri == "neo4j://localhost:7687"
    assert settings.neo4j_user == "reader"
    assert settings.neo4j_database == "orgs"
