"""
Search index maintained alongside the record store.

Two interchangeable strategies share one shape (upsert / query / remove):
- LexicalIndex: inverted index over content tokens, BM25 relevance, exact tag terms
- SemanticIndex: cosine similarity over embedding vectors, exact tag filter

The index is derived data. It is persisted as a JSON artifact next to the
store file and can always be rebuilt from the store.
"""

import json
import logging
import math
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from filelock import FileLock, Timeout

from recall.errors import MemoryNotFoundError, SearchIndexError
from recall.models import utc_now_naive
from recall.query_planner import IndexQuery

logger = logging.getLogger(__name__)

ARTIFACT_FORMAT = "recall-index"
ARTIFACT_VERSION = 1
_LOCK_TIMEOUT_SEC = 10.0


class IndexArtifactMismatch(SearchIndexError):
    """The artifact on disk was written for another strategy or embedding model."""


@dataclass
class IndexEntry:
    """Everything an index may derive its entry from."""

    id: str
    content: str = ""
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None


class Tokenizer:
    """
    Lower-cases and splits on word characters.

    Stop words are indexed like any other term and only dropped from
    queries that also carry content words. Text without any word
    characters becomes a single term of its own.
    """

    STOP_WORDS = {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if",
        "in", "into", "is", "it", "no", "not", "of", "on", "or", "such",
        "that", "the", "their", "then", "there", "these", "they", "this",
        "to", "was", "will", "with",
    }

    def tokenize(self, text: str) -> List[str]:
        lowered = (text or "").lower()
        words = re.findall(r"\w+", lowered)
        if words:
            return words
        stripped = " ".join(lowered.split())
        return [stripped] if stripped else []

    def query_terms(self, text: str) -> List[str]:
        terms = self.tokenize(text)
        content = [term for term in terms if term not in self.STOP_WORDS]
        return content or terms


@dataclass
class _LexicalDoc:
    term_counts: Counter
    length: int
    tags: Tuple[str, ...]


@dataclass
class _VectorDoc:
    vector: Tuple[float, ...]
    tags: Tuple[str, ...]


class SearchIndex(ABC):
    """
    Shared machinery: insertion-ordered entries, tag postings, persistence.

    Thread-safe: all reads and writes of the in-memory structures hold an RLock.
    A mutation that cannot be persisted is reverted before the error surfaces.
    """

    strategy = ""
    requires_embeddings = False

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._entries: Dict[str, Any] = {}
        self._tag_postings: Dict[str, Set[str]] = {}

    # ---- strategy hooks ----------------------------------------------
    @abstractmethod
    def _build(self, entry: IndexEntry) -> Any:
        """Derive the internal document for an entry."""

    @abstractmethod
    def _on_attach(self, memory_id: str, doc: Any) -> None:
        ...

    @abstractmethod
    def _on_detach(self, memory_id: str, doc: Any) -> None:
        ...

    @abstractmethod
    def _on_clear(self) -> None:
        ...

    @abstractmethod
    def _doc_to_json(self, doc: Any) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _doc_from_json(self, item: Dict[str, Any]) -> Any:
        ...

    @abstractmethod
    def query(self, query: IndexQuery) -> List[Tuple[str, float]]:
        """Ranked (id, score) pairs, at most query.limit, best first."""

    def _artifact_extra(self) -> Dict[str, Any]:
        return {}

    def _check_artifact(self, payload: Dict[str, Any]) -> None:
        return None

    # ---- structure helpers -------------------------------------------
    def _attach(self, memory_id: str, doc: Any) -> None:
        self._entries[memory_id] = doc
        for tag in doc.tags:
            self._tag_postings.setdefault(tag, set()).add(memory_id)
        self._on_attach(memory_id, doc)

    def _detach(self, memory_id: str) -> Any:
        doc = self._entries.pop(memory_id)
        for tag in doc.tags:
            holders = self._tag_postings.get(tag)
            if holders is None:
                continue
            holders.discard(memory_id)
            if not holders:
                del self._tag_postings[tag]
        self._on_detach(memory_id, doc)
        return doc

    def _restore_order(self, order: List[str]) -> None:
        self._entries = {memory_id: self._entries[memory_id] for memory_id in order}

    def _clear(self) -> None:
        self._entries.clear()
        self._tag_postings.clear()
        self._on_clear()

    def _filtered_ids(self, tags: Iterable[str]) -> List[str]:
        """Ids satisfying every tag filter, in internal order."""
        tags = list(tags)
        if not tags:
            return list(self._entries)
        candidates: Optional[Set[str]] = None
        for tag in tags:
            holders = self._tag_postings.get(tag, set())
            candidates = set(holders) if candidates is None else candidates & holders
            if not candidates:
                return []
        return [memory_id for memory_id in self._entries if memory_id in candidates]

    @staticmethod
    def _rank(scored: List[Tuple[str, float]], limit: int) -> List[Tuple[str, float]]:
        # sorted() is stable: equal scores keep internal order
        return sorted(scored, key=lambda item: item[1], reverse=True)[:limit]

    # ---- operations --------------------------------------------------
    def upsert(self, entry: IndexEntry) -> None:
        doc = self._build(entry)
        with self._lock:
            order = list(self._entries)
            previous = self._detach(entry.id) if entry.id in self._entries else None
            self._attach(entry.id, doc)
            try:
                self.save()
            except SearchIndexError:
                self._detach(entry.id)
                if previous is not None:
                    self._attach(entry.id, previous)
                    self._restore_order(order)
                raise

    def remove(self, memory_id: str) -> None:
        with self._lock:
            if memory_id not in self._entries:
                raise MemoryNotFoundError(memory_id)
            order = list(self._entries)
            previous = self._detach(memory_id)
            try:
                self.save()
            except SearchIndexError:
                self._attach(memory_id, previous)
                self._restore_order(order)
                raise

    def replace_all(self, entries: Iterable[IndexEntry]) -> int:
        """Swap the whole index for the given entries and persist once."""
        docs = [(entry.id, self._build(entry)) for entry in entries]
        with self._lock:
            snapshot = list(self._entries.items())
            self._clear()
            for memory_id, doc in docs:
                if memory_id in self._entries:
                    self._detach(memory_id)
                self._attach(memory_id, doc)
            try:
                self.save()
            except SearchIndexError:
                self._clear()
                for memory_id, doc in snapshot:
                    self._attach(memory_id, doc)
                raise
            return len(self._entries)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, memory_id: object) -> bool:
        with self._lock:
            return memory_id in self._entries

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    # ---- persistence -------------------------------------------------
    @property
    def lock_path(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path.with_name(self.path.name + ".lock")

    def artifact_exists(self) -> bool:
        return self.path is not None and self.path.exists()

    def save(self) -> None:
        if self.path is None:
            return
        with self._lock:
            payload = {
                "format": ARTIFACT_FORMAT,
                "version": ARTIFACT_VERSION,
                "strategy": self.strategy,
                "updated_at": utc_now_naive().isoformat(),
                **self._artifact_extra(),
                "entries": [
                    {"id": memory_id, **self._doc_to_json(doc)}
                    for memory_id, doc in self._entries.items()
                ],
            }
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with FileLock(str(self.lock_path), timeout=_LOCK_TIMEOUT_SEC):
                    fd, tmp_name = tempfile.mkstemp(
                        prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent)
                    )
                    try:
                        with os.fdopen(fd, "w", encoding="utf-8") as handle:
                            json.dump(payload, handle, ensure_ascii=False, separators=(",", ":"))
                            handle.flush()
                            os.fsync(handle.fileno())
                        os.replace(tmp_name, self.path)
                    except BaseException:
                        if os.path.exists(tmp_name):
                            os.unlink(tmp_name)
                        raise
            except Timeout as exc:
                raise SearchIndexError(f"timed out waiting for index lock {self.lock_path}") from exc
            except (OSError, TypeError, ValueError) as exc:
                raise SearchIndexError(f"failed to write index {self.path}: {exc}") from exc

    def load(self) -> int:
        """
        Replace in-memory state with the artifact on disk.

        Raises:
            SearchIndexError: artifact missing, unreadable or malformed
            IndexArtifactMismatch: artifact belongs to another strategy or embedding model
        """
        if self.path is None or not self.path.exists():
            raise SearchIndexError("index artifact does not exist")
        try:
            with FileLock(str(self.lock_path), timeout=_LOCK_TIMEOUT_SEC):
                with open(self.path, "r", encoding="utf-8") as handle:
                    payload = json.load(handle)
        except Timeout as exc:
            raise SearchIndexError(f"timed out waiting for index lock {self.lock_path}") from exc
        except (OSError, ValueError) as exc:
            raise SearchIndexError(f"index artifact {self.path} is unreadable: {exc}") from exc

        if not isinstance(payload, dict) or payload.get("format") != ARTIFACT_FORMAT:
            raise SearchIndexError(f"index artifact {self.path} has an unknown format")
        if payload.get("version") != ARTIFACT_VERSION:
            raise SearchIndexError(
                f"index artifact {self.path} has unsupported version {payload.get('version')!r}"
            )
        if payload.get("strategy") != self.strategy:
            raise IndexArtifactMismatch(
                f"index artifact was built for strategy {payload.get('strategy')!r}, "
                f"configured strategy is {self.strategy!r}"
            )
        self._check_artifact(payload)

        entries = payload.get("entries")
        if not isinstance(entries, list):
            raise SearchIndexError(f"index artifact {self.path} has no entry list")
        try:
            docs = [(str(item["id"]), self._doc_from_json(item)) for item in entries]
        except (KeyError, TypeError, ValueError) as exc:
            raise SearchIndexError(f"index artifact {self.path} has a malformed entry: {exc}") from exc

        with self._lock:
            self._clear()
            for memory_id, doc in docs:
                self._attach(memory_id, doc)
            return len(self._entries)


class LexicalIndex(SearchIndex):
    """
    Inverted index with BM25 ranking.

    Text matches any query term (OR). Tags are exact terms on a separate
    field and are ANDed with each other and with the text match.
    """

    strategy = "lexical"

    def __init__(
        self,
        path: Optional[Path] = None,
        k1: float = 1.5,
        b: float = 0.75,
        tokenizer: Optional[Tokenizer] = None,
    ):
        """
        Args:
            path: Artifact file (None keeps the index in memory only)
            k1: Term frequency saturation parameter
            b: Document length normalization (0=none, 1=full)
            tokenizer: Custom tokenizer (uses default if None)
        """
        super().__init__(path)
        self.k1 = k1
        self.b = b
        self.tokenizer = tokenizer or Tokenizer()
        self._postings: Dict[str, Set[str]] = {}  # term -> ids
        self._total_tokens = 0

    def _build(self, entry: IndexEntry) -> _LexicalDoc:
        tokens = self.tokenizer.tokenize(entry.content)
        return _LexicalDoc(
            term_counts=Counter(tokens),
            length=len(tokens),
            tags=tuple(entry.tags),
        )

    def _on_attach(self, memory_id: str, doc: _LexicalDoc) -> None:
        for term in doc.term_counts:
            self._postings.setdefault(term, set()).add(memory_id)
        self._total_tokens += doc.length

    def _on_detach(self, memory_id: str, doc: _LexicalDoc) -> None:
        for term in doc.term_counts:
            holders = self._postings.get(term)
            if holders is None:
                continue
            holders.discard(memory_id)
            if not holders:
                del self._postings[term]
        self._total_tokens -= doc.length

    def _on_clear(self) -> None:
        self._postings.clear()
        self._total_tokens = 0

    def _doc_to_json(self, doc: _LexicalDoc) -> Dict[str, Any]:
        return {"terms": dict(doc.term_counts), "length": doc.length, "tags": list(doc.tags)}

    def _doc_from_json(self, item: Dict[str, Any]) -> _LexicalDoc:
        terms = item["terms"]
        if not isinstance(terms, dict):
            raise ValueError("terms must be an object")
        return _LexicalDoc(
            term_counts=Counter({str(term): int(count) for term, count in terms.items()}),
            length=int(item["length"]),
            tags=tuple(str(tag) for tag in item.get("tags", [])),
        )

    def _bm25_scores(self, terms: List[str], candidates: List[str]) -> Dict[str, float]:
        total_docs = len(self._entries)
        avg_doc_length = (self._total_tokens / total_docs) if total_docs else 0.0
        allowed = set(candidates)
        scores: Dict[str, float] = {}

        for term in terms:
            holders = self._postings.get(term)
            if not holders:
                continue
            df = len(holders)
            idf = math.log((total_docs - df + 0.5) / (df + 0.5) + 1)
            for memory_id in holders:
                if memory_id not in allowed:
                    continue
                doc = self._entries[memory_id]
                tf = doc.term_counts[term]
                length_ratio = doc.length / avg_doc_length if avg_doc_length else 0.0
                numerator = tf * (self.k1 + 1)
                denominator = tf + self.k1 * (1 - self.b + self.b * length_ratio)
                scores[memory_id] = scores.get(memory_id, 0.0) + idf * numerator / denominator
        return scores

    def query(self, query: IndexQuery) -> List[Tuple[str, float]]:
        with self._lock:
            candidates = self._filtered_ids(query.tags)
            if not query.text:
                return [(memory_id, 1.0) for memory_id in candidates[: query.limit]]

            terms = self.tokenizer.query_terms(query.text)
            if not terms or not candidates:
                return []
            scores = self._bm25_scores(terms, candidates)
            scored = [
                (memory_id, scores[memory_id])
                for memory_id in candidates
                if memory_id in scores
            ]
        return self._rank(scored, query.limit)

    @property
    def vocabulary_size(self) -> int:
        with self._lock:
            return len(self._postings)


class SemanticIndex(SearchIndex):
    """
    Exhaustive cosine-similarity index over unit-normalized vectors.

    Scores lie in [-1, 1], higher is more similar. No similarity floor is
    applied; callers filter by score if they need one.
    """

    strategy = "semantic"
    requires_embeddings = True

    def __init__(
        self,
        path: Optional[Path] = None,
        dimension: Optional[int] = None,
        model_name: Optional[str] = None,
    ):
        super().__init__(path)
        self.dimension = dimension
        self.model_name = model_name

    @staticmethod
    def _unit(vector: Iterable[float]) -> Tuple[float, ...]:
        values = [float(v) for v in vector]
        norm = math.sqrt(sum(v * v for v in values))
        if norm <= 0:
            return tuple(0.0 for _ in values)
        return tuple(v / norm for v in values)

    def _check_dimension(self, size: int, what: str) -> None:
        if self.dimension is None:
            self.dimension = size
        elif size != self.dimension:
            raise SearchIndexError(
                f"{what} dimension {size} does not match index dimension {self.dimension}"
            )

    def _build(self, entry: IndexEntry) -> _VectorDoc:
        if not entry.embedding:
            raise SearchIndexError(f"memory '{entry.id}' has no embedding to index")
        with self._lock:
            self._check_dimension(len(entry.embedding), "embedding")
        return _VectorDoc(vector=self._unit(entry.embedding), tags=tuple(entry.tags))

    def _on_attach(self, memory_id: str, doc: _VectorDoc) -> None:
        return None

    def _on_detach(self, memory_id: str, doc: _VectorDoc) -> None:
        return None

    def _on_clear(self) -> None:
        return None

    def _doc_to_json(self, doc: _VectorDoc) -> Dict[str, Any]:
        return {"vector": list(doc.vector), "tags": list(doc.tags)}

    def _doc_from_json(self, item: Dict[str, Any]) -> _VectorDoc:
        vector = tuple(float(v) for v in item["vector"])
        if self.dimension is not None and len(vector) != self.dimension:
            raise ValueError(f"vector of length {len(vector)} in a {self.dimension}-d index")
        return _VectorDoc(vector=vector, tags=tuple(str(tag) for tag in item.get("tags", [])))

    def _artifact_extra(self) -> Dict[str, Any]:
        return {"dimension": self.dimension, "embedding_model": self.model_name}

    def _check_artifact(self, payload: Dict[str, Any]) -> None:
        stored_model = payload.get("embedding_model")
        if self.model_name and stored_model and stored_model != self.model_name:
            raise IndexArtifactMismatch(
                f"index artifact was built with embedding model '{stored_model}', "
                f"configured model is '{self.model_name}'"
            )
        stored = payload.get("dimension")
        if stored is None:
            return
        if self.dimension is not None and int(stored) != self.dimension:
            raise IndexArtifactMismatch(
                f"index artifact dimension {stored} does not match configured {self.dimension}"
            )
        self.dimension = int(stored)

    def query(self, query: IndexQuery) -> List[Tuple[str, float]]:
        with self._lock:
            candidates = self._filtered_ids(query.tags)
            if query.vector is None:
                if query.text:
                    raise SearchIndexError("semantic query text must be embedded before querying")
                return [(memory_id, 1.0) for memory_id in candidates[: query.limit]]
            if not candidates:
                return []
            if self.dimension is not None and len(query.vector) != self.dimension:
                raise SearchIndexError(
                    f"query dimension {len(query.vector)} does not match index dimension {self.dimension}"
                )
            unit_query = self._unit(query.vector)
            scored = []
            for memory_id in candidates:
                vector = self._entries[memory_id].vector
                similarity = sum(q * v for q, v in zip(unit_query, vector))
                scored.append((memory_id, max(-1.0, min(1.0, similarity))))
        return self._rank(scored, query.limit)


def create_index(
    strategy: str,
    path: Optional[Path] = None,
    dimension: Optional[int] = None,
    model_name: Optional[str] = None,
) -> SearchIndex:
    """
    Factory for the configured index strategy.

    dimension and model_name only apply to the semantic strategy.

    Raises:
        ValueError: If strategy is unknown
    """
    if strategy == "lexical":
        return LexicalIndex(path)
    elif strategy == "semantic":
        return SemanticIndex(path, dimension=dimension, model_name=model_name)
    else:
        raise ValueError(f"Unknown index strategy: {strategy}. Choose 'lexical' or 'semantic'.")
