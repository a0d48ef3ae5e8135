from pathlib import Path

import pytest

from recall.config import EngineSettings, extract_sqlite_file_path, index_artifact_path


def test_from_env_reads_settings_with_fallbacks(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:////var/lib/recall/memory.db")
    monkeypatch.setenv("MEMORY_INDEX_STRATEGY", "Semantic")
    monkeypatch.setenv("RETRIEVAL_EMBEDDING_BACKEND", "openai")
    monkeypatch.delenv("RETRIEVAL_EMBEDDING_MODEL", raising=False)
    monkeypatch.setenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    monkeypatch.delenv("RETRIEVAL_EMBEDDING_API_BASE", raising=False)
    monkeypatch.setenv("OPENAI_BASE_URL", "https://api.example/v1")
    monkeypatch.setenv("RETRIEVAL_EMBEDDING_DIM", "not-a-number")
    monkeypatch.setenv("SEARCH_RESULT_CEILING", "50")
    monkeypatch.setenv("SEARCH_DEFAULT_LIMIT", "80")

    settings = EngineSettings.from_env()

    assert settings.index_strategy == "semantic"
    assert settings.embedding_backend == "openai"
    assert settings.embedding_model == "text-embedding-3-small"
    assert settings.embedding_api_base == "https://api.example/v1"
    assert settings.embedding_dim == 64
    assert settings.result_ceiling == 50
    assert settings.default_limit == 50
    assert settings.index_path == Path("/var/lib/recall/memory.db.index.json")


def test_from_env_requires_database_url(monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(ValueError, match="DATABASE_URL"):
        EngineSettings.from_env()


def test_invalid_strategy_is_rejected() -> None:
    with pytest.raises(ValueError, match="index_strategy"):
        EngineSettings(database_url="sqlite+aiosqlite:///:memory:", index_strategy="fuzzy")


def test_sqlite_url_parsing() -> None:
    assert extract_sqlite_file_path("sqlite+aiosqlite:////tmp/a%20b.db") == Path("/tmp/a b.db")
    assert extract_sqlite_file_path("sqlite+aiosqlite:///:memory:") is None
    assert index_artifact_path(None) is None
    with pytest.raises(ValueError):
        extract_sqlite_file_path("mysql://localhost/db")
