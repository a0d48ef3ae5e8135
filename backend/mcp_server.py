"""
MCP Server for the memory recall engine.

Exposes the engine to agents as MCP tools:
- add_memory / delete_memory / get_memory: single-record operations
- search_memory: ranked retrieval by text and conjunctive tags
- rebuild_index / index_status: maintenance of the derived search index

Every tool returns a JSON string: {"ok": bool, "message": str, ...}.
"""

import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv, find_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from recall import get_memory_engine
from recall.errors import MemoryEngineError

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

ALLOWED_MEMORY_TYPES = ("fact", "conversation", "reference")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


SEARCH_TOOL_MAX_LIMIT = _env_int("SEARCH_TOOL_MAX_LIMIT", 20, minimum=1)
SEARCH_TOOL_DEFAULT_LIMIT = 5


@asynccontextmanager
async def _lifespan(_server: FastMCP) -> AsyncIterator[None]:
    # Runs the startup consistency check before the first tool call.
    # SSE runs this per session, so the engine is not closed here.
    await get_memory_engine().init()
    yield


mcp = FastMCP("Memory Recall Interface", lifespan=_lifespan)


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _error_response(exc: MemoryEngineError) -> str:
    return _tool_response(ok=False, message=f"Error: {exc}", error=exc.code)


def _validation_error(message: str) -> str:
    return _tool_response(ok=False, message=f"Error: {message}", error="validation_error")


def _tags_are_valid(tags: Any) -> bool:
    if tags is None:
        return True
    return isinstance(tags, list) and all(isinstance(tag, str) for tag in tags)


def _clamp_limit(limit: Any) -> Optional[int]:
    if limit is None:
        return SEARCH_TOOL_DEFAULT_LIMIT
    if isinstance(limit, bool):
        return None
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return None
    return max(1, min(SEARCH_TOOL_MAX_LIMIT, value))


def _format_hit(rank: int, item: Dict[str, Any]) -> str:
    tags = ", ".join(item.get("tags") or []) or "-"
    score = item.get("score")
    score_text = f"{score:.3f}" if isinstance(score, (int, float)) else "n/a"
    return (
        f"{rank}. [{item['id']}] (score: {score_text}) {item['content']}"
        f" | {item['type']} | {tags}"
    )


@mcp.tool()
async def add_memory(
    content: str,
    type: str = "fact",
    tags: Optional[List[str]] = None,
) -> str:
    """
    Store a new memory.

    Args:
        content: The text to remember.
        type: One of "fact", "conversation" or "reference".
        tags: Optional labels; searches can require every one of them.

    Examples:
        add_memory("The capital of France is Paris", tags=["geography"])
        add_memory("User prefers dark mode", type="conversation")
    """
    if not isinstance(content, str):
        return _validation_error("content must be a string.")
    memory_type = type if type is not None else "fact"
    if memory_type not in ALLOWED_MEMORY_TYPES:
        return _validation_error(
            f"type must be one of: {', '.join(ALLOWED_MEMORY_TYPES)}."
        )
    if not _tags_are_valid(tags):
        return _validation_error("tags must be an array of strings.")

    try:
        memory_id = await get_memory_engine().add(content, kind=memory_type, tags=tags)
    except MemoryEngineError as exc:
        return _error_response(exc)

    return _tool_response(ok=True, message=f"Memory stored with ID: {memory_id}", id=memory_id)


@mcp.tool()
async def search_memory(
    query: str = "",
    tags: Optional[List[str]] = None,
    limit: int = SEARCH_TOOL_DEFAULT_LIMIT,
) -> str:
    """
    Search memories by free text and tags.

    Text is ranked by relevance. Every tag given must be present on a hit.
    An empty query with no tags lists memories in storage order.

    Args:
        query: Free-text query (may be empty).
        tags: Tags that every result must carry.
        limit: Maximum number of results (1-20).
    """
    if query is None:
        query = ""
    if not isinstance(query, str):
        return _validation_error("query must be a string.")
    if not _tags_are_valid(tags):
        return _validation_error("tags must be an array of strings.")
    bound = _clamp_limit(limit)
    if bound is None:
        return _validation_error("limit must be an integer.")

    try:
        records = await get_memory_engine().search(query, tags=tags, limit=bound)
    except MemoryEngineError as exc:
        return _error_response(exc)

    results = [
        {
            "id": record.id,
            "content": record.content,
            "type": record.kind,
            "tags": list(record.tags),
            "score": record.score,
            "created_at": record.created_at.isoformat() if record.created_at else None,
        }
        for record in records
    ]
    if not results:
        return _tool_response(
            ok=True, message="No matching memories found.", results=[], count=0
        )

    lines = [f"Found {len(results)} memories:"]
    lines.extend(_format_hit(rank, item) for rank, item in enumerate(results, start=1))
    return _tool_response(
        ok=True, message="\n".join(lines), results=results, count=len(results)
    )


@mcp.tool()
async def delete_memory(id: str) -> str:
    """
    Permanently delete a memory by id.

    Args:
        id: The id returned by add_memory or search_memory.
    """
    if not isinstance(id, str) or not id.strip():
        return _validation_error("id must be a non-empty string.")
    try:
        await get_memory_engine().delete(id)
    except MemoryEngineError as exc:
        return _error_response(exc)
    return _tool_response(ok=True, message=f"Memory {id.strip()} deleted.", id=id.strip())


@mcp.tool()
async def get_memory(id: str) -> str:
    """
    Read one memory by id.

    Args:
        id: The memory id.
    """
    if not isinstance(id, str) or not id.strip():
        return _validation_error("id must be a non-empty string.")
    try:
        record = await get_memory_engine().get(id)
    except MemoryEngineError as exc:
        return _error_response(exc)
    return _tool_response(ok=True, message=record.content, memory=record.to_dict())


@mcp.tool()
async def rebuild_index(reason: str = "manual") -> str:
    """
    Rebuild the search index from the stored memories.

    Use this when add_memory reported a stored-but-not-indexed memory, or when
    index_status shows the index is inconsistent.
    """
    try:
        result = await get_memory_engine().rebuild_index(reason=reason or "manual")
    except MemoryEngineError as exc:
        return _error_response(exc)
    return _tool_response(
        ok=True,
        message=(
            f"Index rebuilt: {result['indexed']} of {result['requested_memories']} "
            f"memories indexed, {result['failure_count']} failures."
        ),
        result=result,
    )


@mcp.tool()
async def index_status() -> str:
    """Report the index strategy, record counts and consistency."""
    try:
        status = await get_memory_engine().index_status()
    except MemoryEngineError as exc:
        return _error_response(exc)
    state = "consistent" if status.get("consistent") else "inconsistent"
    return _tool_response(
        ok=True,
        message=(
            f"{status['strategy']} index is {state}: "
            f"{status['index_count']} indexed, {status['store_count']} stored."
        ),
        status=status,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    mcp.run()
