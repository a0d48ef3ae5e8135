"""
Memory engine facade.

Coordinates the record store (source of truth) with the derived search index:
- add: validate -> embed (semantic) -> store.put -> index.upsert
- search: plan -> embed query (semantic) -> index.query -> store.get_many
- delete: store.delete -> index.remove

Store and index writes are not atomic together. Failures between the two
steps are surfaced to the caller and repaired by rebuild_index().
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from recall.config import EngineSettings
from recall.embedding import EmbeddingProvider, create_embedding_provider
from recall.errors import (
    EmbeddingError,
    MemoryNotFoundError,
    SearchIndexError,
    ValidationError,
)
from recall.index import IndexArtifactMismatch, IndexEntry, create_index
from recall.models import DEFAULT_KIND, MemoryRecord, new_memory_id, utc_now_naive
from recall.query_planner import QueryPlanner, normalize_tags
from recall.sqlite_store import SQLiteRecordStore

logger = logging.getLogger(__name__)

MAX_KIND_LENGTH = 64
_PREVIEW_CHARS = 40


def _preview(content: str) -> str:
    text = " ".join((content or "").split())
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[:_PREVIEW_CHARS] + "..."


class MemoryEngine:
    """
    Single entry point for storing and retrieving memories.

    Public operations initialise the engine lazily, so callers never need to
    call init() themselves.
    """

    def __init__(
        self,
        settings: EngineSettings,
        embedding_provider: Optional[EmbeddingProvider] = None,
    ):
        self.settings = settings
        self.store = SQLiteRecordStore(settings.database_url)
        self._embedding_provider = embedding_provider
        dimension = settings.embedding_dim if settings.embedding_backend == "hash" else None
        model_name = None
        if settings.index_strategy == "semantic":
            model_name = self.embedding_provider.model_name
        self.index = create_index(
            settings.index_strategy,
            settings.index_path,
            dimension=dimension,
            model_name=model_name,
        )
        self.planner = QueryPlanner(
            result_ceiling=settings.result_ceiling,
            default_limit=settings.default_limit,
        )
        self._init_lock = asyncio.Lock()
        self._index_lock = asyncio.Lock()
        self._initialized = False
        self._startup_check: Optional[Dict[str, Any]] = None
        self._last_rebuild: Optional[Dict[str, Any]] = None

    @property
    def strategy(self) -> str:
        return self.index.strategy

    @property
    def embedding_provider(self) -> EmbeddingProvider:
        if self._embedding_provider is None:
            self._embedding_provider = create_embedding_provider(self.settings)
        return self._embedding_provider

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def init(self) -> Dict[str, Any]:
        """Create the schema and reconcile the index artifact with the store."""
        async with self._init_lock:
            if self._initialized and self._startup_check is not None:
                return self._startup_check
            await self.store.init()
            async with self._index_lock:
                self._startup_check = await self._reconcile_on_open()
            self._initialized = True
            logger.info(
                "Memory engine ready (strategy=%s, store=%s, startup=%s)",
                self.strategy,
                self.store.location or ":memory:",
                self._startup_check["reason"],
            )
            return self._startup_check

    async def _reconcile_on_open(self) -> Dict[str, Any]:
        store_ids = set(await self.store.ids())

        if not self.index.artifact_exists():
            if store_ids:
                return await self._startup_rebuild("index_missing")
            self.index.replace_all([])
            return {"reason": "fresh", "rebuilt": False, "store_count": 0, "index_count": 0}

        if not self.store.existed_before_open:
            logger.warning(
                "Index artifact %s exists but its store was missing; rebuilding",
                self.index.path,
            )
            return await self._startup_rebuild("store_missing")

        try:
            self.index.load()
        except IndexArtifactMismatch as exc:
            logger.info("Index artifact does not match configuration: %s", exc)
            return await self._startup_rebuild("strategy_changed")
        except SearchIndexError as exc:
            logger.warning("Index artifact unreadable, rebuilding: %s", exc)
            return await self._startup_rebuild("index_unreadable")

        index_ids = set(self.index.ids())
        if index_ids != store_ids:
            logger.warning(
                "Index out of sync with store (%d missing, %d dangling); rebuilding",
                len(store_ids - index_ids),
                len(index_ids - store_ids),
            )
            return await self._startup_rebuild("index_out_of_sync")

        return {
            "reason": "consistent",
            "rebuilt": False,
            "store_count": len(store_ids),
            "index_count": len(index_ids),
        }

    async def _startup_rebuild(self, reason: str) -> Dict[str, Any]:
        summary = await self._rebuild_locked(reason)
        return {
            "reason": reason,
            "rebuilt": True,
            "store_count": summary["requested_memories"],
            "index_count": summary["indexed"],
            "failure_count": summary["failure_count"],
        }

    async def close(self) -> None:
        await self.store.close()
        self._initialized = False

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_content(content: Any) -> str:
        if not isinstance(content, str):
            raise ValidationError("content must be a string.")
        if not content.strip():
            raise ValidationError("content must not be empty.")
        return content

    @staticmethod
    def _validate_kind(kind: Any) -> str:
        if kind is None:
            return DEFAULT_KIND
        if not isinstance(kind, str):
            raise ValidationError("type must be a string.")
        value = kind.strip()
        if not value:
            raise ValidationError("type must not be empty.")
        if len(value) > MAX_KIND_LENGTH:
            raise ValidationError(f"type must be at most {MAX_KIND_LENGTH} characters.")
        return value

    @staticmethod
    def _validate_id(memory_id: Any) -> str:
        if not isinstance(memory_id, str) or not memory_id.strip():
            raise ValidationError("id must be a non-empty string.")
        return memory_id.strip()

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    async def _embed_one(self, text: str) -> List[float]:
        vectors = await self.embedding_provider.embed([text])
        if not vectors or not vectors[0]:
            raise EmbeddingError("embedding provider returned no vector")
        return [float(v) for v in vectors[0]]

    def _expected_dimension(self) -> Optional[int]:
        return getattr(self.index, "dimension", None)

    async def _provider_dimension(self, fallback: Optional[int]) -> Optional[int]:
        """Length of the vectors the provider produces now."""
        try:
            return len(await self._embed_one("dimension check"))
        except EmbeddingError as exc:
            logger.warning(
                "Could not determine embedding dimension, keeping %s: %s", fallback, exc
            )
            return fallback

    @staticmethod
    def _entry_for(record: MemoryRecord) -> IndexEntry:
        return IndexEntry(
            id=record.id,
            content=record.content,
            tags=list(record.tags),
            embedding=record.embedding,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def add(
        self,
        content: str,
        kind: str = DEFAULT_KIND,
        tags: Optional[List[str]] = None,
    ) -> str:
        """
        Store a memory and make it searchable.

        Returns:
            The new memory id.

        Raises:
            ValidationError: bad arguments (nothing is written)
            EmbeddingError: semantic strategy could not embed (nothing is written)
            StorageError: the durable write failed (nothing is written)
            SearchIndexError: stored but not indexed; run rebuild_index()
        """
        content = self._validate_content(content)
        kind = self._validate_kind(kind)
        tags = normalize_tags(tags)
        await self.init()

        now = utc_now_naive()
        record = MemoryRecord(
            id=new_memory_id(),
            content=content,
            kind=kind,
            tags=tags,
            created_at=now,
            updated_at=now,
        )
        if self.index.requires_embeddings:
            record.embedding = await self._embed_one(content)
            expected = self._expected_dimension()
            if expected is not None and len(record.embedding) != expected:
                raise EmbeddingError(
                    f"embedding has {len(record.embedding)} dimensions, index expects {expected}"
                )

        await self.store.put(record)

        async with self._index_lock:
            try:
                self.index.upsert(self._entry_for(record))
            except SearchIndexError as exc:
                logger.error("Memory %s stored but not indexed: %s", record.id, exc)
                raise SearchIndexError(
                    f"Memory '{record.id}' was stored but could not be indexed ({exc}). "
                    "Run rebuild_index to make it searchable."
                ) from exc

        logger.debug("Added memory %s (%s): %s", record.id, kind, _preview(content))
        return record.id

    async def search(
        self,
        query_text: Any = "",
        tags: Optional[List[str]] = None,
        limit: Any = None,
    ) -> List[MemoryRecord]:
        """Ranked records for a text query and conjunctive tag filters."""
        plan = self.planner.plan(query_text, tags, limit)
        await self.init()

        if self.index.requires_embeddings and plan.text:
            plan = self.planner.with_vector(plan, await self._embed_one(plan.text))

        ranked = self.index.query(plan)
        if not ranked:
            return []

        records = await self.store.get_many(memory_id for memory_id, _ in ranked)
        results: List[MemoryRecord] = []
        for memory_id, score in ranked:
            record = records.get(memory_id)
            if record is None:
                logger.warning("Skipping dangling index entry %s (no stored record)", memory_id)
                continue
            record.score = score
            results.append(record)
        return results

    async def get(self, memory_id: str) -> MemoryRecord:
        memory_id = self._validate_id(memory_id)
        await self.init()
        return await self.store.get(memory_id)

    async def delete(self, memory_id: str) -> None:
        """
        Remove a memory from the store, then from the index.

        A missing index entry is not an error: the target state is reached.
        """
        memory_id = self._validate_id(memory_id)
        await self.init()
        await self.store.delete(memory_id)

        async with self._index_lock:
            try:
                self.index.remove(memory_id)
            except MemoryNotFoundError:
                logger.warning("Deleted memory %s had no index entry", memory_id)
        logger.debug("Deleted memory %s", memory_id)

    async def rebuild_index(self, reason: str = "manual") -> Dict[str, Any]:
        """Rebuild the whole index from the store."""
        await self.init()
        async with self._index_lock:
            return await self._rebuild_locked(reason)

    async def _rebuild_locked(self, reason: str) -> Dict[str, Any]:
        reason = reason or "manual"
        entries: List[IndexEntry] = []
        failure_items: List[Dict[str, Any]] = []
        requested = 0
        previous_dimension = self._expected_dimension()
        expected = previous_dimension
        if self.index.requires_embeddings and await self.store.count():
            expected = await self._provider_dimension(expected)
            self.index.dimension = expected

        async for record in self.store.iterate():
            requested += 1
            try:
                if self.index.requires_embeddings:
                    vector = record.embedding
                    if not vector or (expected is not None and len(vector) != expected):
                        vector = await self._embed_one(record.content)
                    if expected is None:
                        expected = len(vector)
                    elif len(vector) != expected:
                        raise SearchIndexError(
                            f"embedding has {len(vector)} dimensions, index expects {expected}"
                        )
                    record.embedding = vector
                entries.append(self._entry_for(record))
            except (EmbeddingError, SearchIndexError) as exc:
                failure_items.append({"memory_id": record.id, "error": str(exc)})

        try:
            indexed = self.index.replace_all(entries)
        except SearchIndexError:
            if self.index.requires_embeddings:
                self.index.dimension = previous_dimension
            raise
        finished_at = utc_now_naive().isoformat()
        summary = {
            "requested_memories": requested,
            "indexed": indexed,
            "failure_count": len(failure_items),
            "failures": failure_items,
            "strategy": self.strategy,
            "reason": reason,
            "finished_at": finished_at,
        }
        self._last_rebuild = summary
        logger.info(
            "Index rebuilt (reason=%s, memories=%d, indexed=%d, failures=%d)",
            reason,
            requested,
            indexed,
            len(failure_items),
        )
        return summary

    async def index_status(self) -> Dict[str, Any]:
        await self.init()
        store_ids = set(await self.store.ids())
        index_ids = set(self.index.ids())
        status: Dict[str, Any] = {
            "strategy": self.strategy,
            "store_count": len(store_ids),
            "index_count": len(index_ids),
            "consistent": store_ids == index_ids,
            "missing_from_index": len(store_ids - index_ids),
            "dangling_in_index": len(index_ids - store_ids),
            "store_path": self.store.location,
            "index_path": str(self.index.path) if self.index.path is not None else None,
            "startup_check": self._startup_check,
            "last_rebuild": self._last_rebuild,
        }
        if self.index.requires_embeddings:
            status["dimension"] = self._expected_dimension()
            status["embedding_model"] = self.embedding_provider.model_name
        else:
            status["vocabulary_size"] = self.index.vocabulary_size
        return status


_memory_engine: Optional[MemoryEngine] = None


def get_memory_engine() -> MemoryEngine:
    """Get the global MemoryEngine instance."""
    global _memory_engine
    if _memory_engine is None:
        _memory_engine = MemoryEngine(EngineSettings.from_env())
    return _memory_engine


async def close_memory_engine():
    """Close the global MemoryEngine."""
    global _memory_engine
    if _memory_engine:
        await _memory_engine.close()
        _memory_engine = None
