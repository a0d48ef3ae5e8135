"""
Environment-driven settings for the memory engine.

Values are read once when the engine is built. A ``.env`` file found from the
working directory is loaded first, so local deployments can keep their
settings next to the database.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote

from dotenv import load_dotenv, find_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

INDEX_STRATEGIES = ("lexical", "semantic")
EMBEDDING_BACKENDS = ("hash", "api", "openai", "router")
INDEX_ARTIFACT_SUFFIX = ".index.json"

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def extract_sqlite_file_path(database_url: str) -> Optional[Path]:
    """
    Extract a local file path from a sqlite SQLAlchemy URL.

    Supports:
    - sqlite+aiosqlite:///absolute/path.db
    - sqlite:///absolute/path.db

    Returns None for in-memory databases.
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix):]
        raw_path = raw_path.split("?", 1)[0].split("#", 1)[0]
        raw_path = unquote(raw_path)
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        f"Unsupported DATABASE_URL '{database_url}': expected a sqlite+aiosqlite URL."
    )


def index_artifact_path(store_path: Optional[Path]) -> Optional[Path]:
    """The index artifact lives next to the store file."""
    if store_path is None:
        return None
    return store_path.with_name(store_path.name + INDEX_ARTIFACT_SUFFIX)


@dataclass
class EngineSettings:
    """Settings for one MemoryEngine instance."""

    database_url: str
    index_strategy: str = "lexical"
    embedding_backend: str = "hash"
    embedding_model: str = "hash-v1"
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    embedding_dim: int = 64
    remote_timeout_sec: float = 8.0
    result_ceiling: int = 100
    default_limit: int = 5

    def __post_init__(self) -> None:
        self.index_strategy = (self.index_strategy or "lexical").strip().lower()
        self.embedding_backend = (self.embedding_backend or "hash").strip().lower()
        if self.index_strategy not in INDEX_STRATEGIES:
            raise ValueError(
                f"index_strategy must be one of: {', '.join(INDEX_STRATEGIES)}"
            )
        if self.embedding_backend not in EMBEDDING_BACKENDS:
            raise ValueError(
                f"embedding_backend must be one of: {', '.join(EMBEDDING_BACKENDS)}"
            )
        self.embedding_dim = max(16, int(self.embedding_dim))
        self.remote_timeout_sec = max(1.0, float(self.remote_timeout_sec))
        self.result_ceiling = max(1, int(self.result_ceiling))
        self.default_limit = min(self.result_ceiling, max(1, int(self.default_limit)))

    @property
    def store_path(self) -> Optional[Path]:
        return extract_sqlite_file_path(self.database_url)

    @property
    def index_path(self) -> Optional[Path]:
        return index_artifact_path(self.store_path)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        return cls(
            database_url=database_url,
            index_strategy=os.getenv("MEMORY_INDEX_STRATEGY", "lexical"),
            embedding_backend=os.getenv("RETRIEVAL_EMBEDDING_BACKEND", "hash"),
            embedding_model=_first_env(
                ["RETRIEVAL_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"],
                default="hash-v1",
            ),
            embedding_api_base=_first_env(
                [
                    "RETRIEVAL_EMBEDDING_API_BASE",
                    "OPENAI_BASE_URL",
                    "OPENAI_API_BASE",
                ]
            ),
            embedding_api_key=_first_env(
                ["RETRIEVAL_EMBEDDING_API_KEY", "OPENAI_API_KEY"]
            ),
            embedding_dim=_env_int("RETRIEVAL_EMBEDDING_DIM", 64),
            remote_timeout_sec=_env_float("RETRIEVAL_REMOTE_TIMEOUT_SEC", 8.0),
            result_ceiling=_env_int("SEARCH_RESULT_CEILING", 100),
            default_limit=_env_int("SEARCH_DEFAULT_LIMIT", 5),
        )
