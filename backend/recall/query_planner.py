"""
Query planning for memory search.

Turns the loosely typed (text, tags, limit) triple coming from callers into a
single IndexQuery that either index strategy can execute.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from recall.errors import ValidationError

DEFAULT_RESULT_CEILING = 100
DEFAULT_LIMIT = 5


def normalize_tags(tags: Any, *, field_name: str = "tags") -> List[str]:
    """
    Validate and normalize a tag list.

    Tags are stripped, empty ones dropped and duplicates removed keeping the
    first occurrence. Matching stays case-sensitive.
    """
    if tags is None:
        return []
    if isinstance(tags, (str, bytes)) or not isinstance(tags, (list, tuple)):
        raise ValidationError(f"{field_name} must be an array of strings.")
    normalized: List[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError(f"{field_name} must be an array of strings.")
        value = tag.strip()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


@dataclass(frozen=True)
class IndexQuery:
    """A composite query: relevance text AND every tag filter."""

    text: str
    tags: Tuple[str, ...]
    limit: int
    vector: Optional[Tuple[float, ...]] = None


class QueryPlanner:
    """
    Normalizes search requests.

    - empty text and no tags -> match-all, up to the bound
    - tag filters are always conjunctive
    - the bound is clamped to a fixed ceiling; smaller limits are honored exactly
    """

    def __init__(
        self,
        result_ceiling: int = DEFAULT_RESULT_CEILING,
        default_limit: int = DEFAULT_LIMIT,
    ):
        self.result_ceiling = max(1, int(result_ceiling))
        self.default_limit = min(self.result_ceiling, max(1, int(default_limit)))

    def _resolve_limit(self, limit: Any) -> int:
        if limit is None:
            return self.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("limit must be an integer.")
        if limit < 1:
            raise ValidationError("limit must be >= 1.")
        return min(limit, self.result_ceiling)

    def plan(
        self,
        query_text: Any = "",
        tags: Optional[Sequence[str]] = None,
        limit: Any = None,
    ) -> IndexQuery:
        if query_text is None:
            query_text = ""
        if not isinstance(query_text, str):
            raise ValidationError("query must be a string.")
        return IndexQuery(
            text=query_text.strip(),
            tags=tuple(normalize_tags(tags)),
            limit=self._resolve_limit(limit),
        )

    @staticmethod
    def with_vector(query: IndexQuery, vector: Sequence[float]) -> IndexQuery:
        return IndexQuery(
            text=query.text,
            tags=query.tags,
            limit=query.limit,
            vector=tuple(float(v) for v in vector),
        )
