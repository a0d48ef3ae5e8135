import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import maintenance_router, memories_router
from recall import close_memory_engine, get_memory_engine

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise the memory engine on startup, close it on shutdown."""
    logger.info("Memory Recall API starting...")
    try:
        engine = get_memory_engine()
        startup = await engine.init()
        logger.info("Memory engine initialized (startup check: %s)", startup.get("reason"))
    except Exception as exc:
        logger.error("Failed to initialize memory engine: %s", exc)
        raise RuntimeError("Failed to initialize memory engine during startup") from exc

    yield

    logger.info("Closing memory engine...")
    await close_memory_engine()


app = FastAPI(
    title="Memory Recall API",
    description="Persistent memory store with lexical and semantic retrieval",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memories_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Memory Recall API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    try:
        index_payload = await get_memory_engine().index_status()
        payload["index"] = {
            "strategy": index_payload.get("strategy"),
            "store_count": index_payload.get("store_count"),
            "index_count": index_payload.get("index_count"),
            "consistent": bool(index_payload.get("consistent")),
        }
        if not payload["index"]["consistent"]:
            payload["status"] = "degraded"
    except Exception as exc:
        payload["status"] = "degraded"
        payload["index"] = {
            "consistent": False,
            "reason": str(exc),
        }
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", 8000)))
