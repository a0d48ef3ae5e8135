"""
API-key guard shared by the REST routers and the SSE transport.

A request passes when it carries ``MCP_API_KEY`` either in the
``X-MCP-API-Key`` header or as a bearer token. Without a configured key every
request is rejected, unless ``MCP_API_KEY_ALLOW_INSECURE_LOCAL`` is truthy and
the client is on loopback.
"""

import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, Request, status

MCP_API_KEY_ENV = "MCP_API_KEY"
MCP_API_KEY_HEADER = "X-MCP-API-Key"
MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def get_configured_api_key() -> str:
    return str(os.getenv(MCP_API_KEY_ENV) or "").strip()


def allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def auth_failure_reason(
    request: Request,
    x_mcp_api_key: Optional[str],
    authorization: Optional[str],
) -> Optional[str]:
    """None when the request may proceed, otherwise the rejection reason."""
    configured = get_configured_api_key()
    if not configured:
        if allow_insecure_local_without_api_key():
            if is_loopback_request(request):
                return None
            return "insecure_local_override_requires_loopback"
        return "api_key_not_configured"

    provided = str(x_mcp_api_key or "").strip() or extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        return "invalid_or_missing_api_key"
    return None


def api_key_dependency(error_name: str):
    """Build a FastAPI dependency that raises 401 with ``error_name``."""

    async def _require_api_key(
        request: Request,
        x_mcp_api_key: Optional[str] = Header(default=None, alias=MCP_API_KEY_HEADER),
        authorization: Optional[str] = Header(default=None, alias="Authorization"),
    ) -> None:
        reason = auth_failure_reason(request, x_mcp_api_key, authorization)
        if reason is None:
            return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": error_name, "reason": reason},
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _require_api_key


require_maintenance_api_key = api_key_dependency("maintenance_auth_failed")
require_memories_api_key = api_key_dependency("memories_auth_failed")
