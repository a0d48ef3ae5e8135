"""
Memories API - store, look up, search and delete memories over HTTP.

Reads are open; writes need the MCP API key.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from recall import get_memory_engine
from recall.errors import (
    EmbeddingError,
    MemoryEngineError,
    MemoryNotFoundError,
    ValidationError,
)
from .auth import require_memories_api_key

router = APIRouter(prefix="/memories", tags=["memories"])


class MemoryCreate(BaseModel):
    content: str = Field(min_length=1)
    type: str = Field(default="fact", max_length=64)
    tags: List[str] = Field(default_factory=list)


def engine_http_exception(exc: MemoryEngineError) -> HTTPException:
    """Map an engine failure onto an HTTP status."""
    if isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, MemoryNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, EmbeddingError):
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.code, "message": str(exc)},
    )


@router.get("/search")
async def search_memories(
    query: str = Query("", description="Free text; empty returns the most recent memories"),
    tags: Optional[List[str]] = Query(None, description="Every tag must match"),
    limit: int = Query(5, ge=1, le=100),
):
    engine = get_memory_engine()
    try:
        records = await engine.search(query, tags=tags, limit=limit)
    except MemoryEngineError as exc:
        raise engine_http_exception(exc) from exc

    return {
        "query": query,
        "tags": tags or [],
        "count": len(records),
        "results": [record.to_dict() for record in records],
    }


@router.get("/{memory_id}")
async def get_memory(memory_id: str):
    engine = get_memory_engine()
    try:
        record = await engine.get(memory_id)
    except MemoryEngineError as exc:
        raise engine_http_exception(exc) from exc
    return record.to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_memory(
    body: MemoryCreate,
    _auth: None = Depends(require_memories_api_key),
):
    engine = get_memory_engine()
    try:
        memory_id = await engine.add(body.content, kind=body.type, tags=body.tags)
    except MemoryEngineError as exc:
        raise engine_http_exception(exc) from exc

    return {"success": True, "id": memory_id}


@router.delete("/{memory_id}")
async def delete_memory(
    memory_id: str,
    _auth: None = Depends(require_memories_api_key),
):
    engine = get_memory_engine()
    try:
        await engine.delete(memory_id)
    except MemoryEngineError as exc:
        raise engine_http_exception(exc) from exc

    return {"success": True, "id": memory_id}
