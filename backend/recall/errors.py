"""
Error taxonomy for the memory engine.

Every failure surfaced by the engine is a MemoryEngineError subclass carrying
a stable ``code`` that the MCP and REST layers echo back to callers.
"""


class MemoryEngineError(Exception):
    """Base class for engine failures."""

    code = "memory_error"


class ValidationError(MemoryEngineError, ValueError):
    """A required argument is missing or malformed."""

    code = "validation_error"


class EmbeddingError(MemoryEngineError):
    """The embedding provider failed or returned an unexpected shape."""

    code = "embedding_error"


class StorageError(MemoryEngineError):
    """Durable record store I/O failed."""

    code = "storage_error"


class SearchIndexError(MemoryEngineError):
    """Index I/O or query construction failed."""

    code = "index_error"


class MemoryNotFoundError(MemoryEngineError, LookupError):
    """No memory exists under the requested id."""

    code = "not_found"

    def __init__(self, memory_id: str):
        super().__init__(f"Memory '{memory_id}' not found")
        self.memory_id = memory_id
