from .config import EngineSettings
from .engine import MemoryEngine, close_memory_engine, get_memory_engine
from .errors import (
    EmbeddingError,
    MemoryEngineError,
    MemoryNotFoundError,
    SearchIndexError,
    StorageError,
    ValidationError,
)
from .models import MemoryRecord

__all__ = [
    "EngineSettings",
    "MemoryEngine",
    "get_memory_engine",
    "close_memory_engine",
    "MemoryRecord",
    "MemoryEngineError",
    "ValidationError",
    "EmbeddingError",
    "StorageError",
    "SearchIndexError",
    "MemoryNotFoundError",
]
