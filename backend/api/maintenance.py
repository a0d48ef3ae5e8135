from fastapi import APIRouter, Depends

from recall import get_memory_engine
from recall.errors import MemoryEngineError
from .auth import require_maintenance_api_key
from .memories import engine_http_exception

router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


@router.get("/index/status")
async def index_status():
    engine = get_memory_engine()
    try:
        return await engine.index_status()
    except MemoryEngineError as exc:
        raise engine_http_exception(exc) from exc


@router.post("/index/rebuild")
async def rebuild_index(reason: str = "api"):
    engine = get_memory_engine()
    try:
        result = await engine.rebuild_index(reason=reason or "api")
    except MemoryEngineError as exc:
        raise engine_http_exception(exc) from exc
    return {
        "ok": True,
        "reason": reason or "api",
        "result": result,
    }
