import logging
import os
import sys
from typing import Awaitable, Callable

import uvicorn
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

# Ensure we can import from backend dir
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from api.auth import MCP_API_KEY_HEADER, auth_failure_reason
from mcp_server import mcp

logger = logging.getLogger(__name__)


def apply_mcp_api_key_middleware(app: ASGIApp) -> ASGIApp:
    async def _auth_middleware(request: Request, call_next: Callable[[Request], Awaitable]):
        reason = auth_failure_reason(
            request,
            request.headers.get(MCP_API_KEY_HEADER),
            request.headers.get("Authorization"),
        )
        if reason is not None:
            return JSONResponse(
                status_code=401,
                content={"error": "mcp_sse_auth_failed", "reason": reason},
                headers={"WWW-Authenticate": "Bearer"},
            )
        return await call_next(request)

    app.add_middleware(BaseHTTPMiddleware, dispatch=_auth_middleware)
    return app


def create_sse_app() -> ASGIApp:
    app = mcp.sse_app()
    return apply_mcp_api_key_middleware(app)


def main():
    """Serve the memory tools over SSE for clients that cannot spawn stdio servers."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_sse_app()

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info("Starting SSE server on http://%s:%s (endpoint /sse)", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
