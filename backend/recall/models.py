"""Memory record data structures and id generation."""

import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DEFAULT_KIND = "fact"


def utc_now_naive() -> datetime:
    """Naive UTC datetime, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MemoryIdGenerator:
    """
    Process-wide id source: a strictly increasing nanosecond counter plus a
    random suffix. Two calls in the same clock tick still get distinct
    counters, and the suffix keeps ids apart across processes.
    """

    def __init__(self, prefix: str = "mem") -> None:
        self._prefix = prefix
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            self._last = max(time.time_ns(), self._last + 1)
            counter = self._last
        return f"{self._prefix}_{counter}_{secrets.token_hex(4)}"


_id_generator = MemoryIdGenerator()


def new_memory_id() -> str:
    return _id_generator.next_id()


@dataclass
class MemoryRecord:
    """A stored memory."""

    id: str
    content: str
    kind: str = DEFAULT_KIND  # fact, conversation, reference
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None  # Present only under the semantic strategy
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None  # Reserved for a future update operation
    score: Optional[float] = None  # Populated during search

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "type": self.kind,
            "tags": list(self.tags),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if self.score is not None:
            payload["score"] = self.score
        if include_embedding:
            payload["embedding"] = self.embedding
        return payload
