from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import maintenance as maintenance_api
from run_sse import apply_mcp_api_key_middleware


class _StatusEngine:
    async def index_status(self):
        return {"strategy": "lexical", "consistent": True}

    async def rebuild_index(self, reason="manual"):
        return {"indexed": 0, "reason": reason}


def _build_sse_client(*, client=("testclient", 50000)) -> TestClient:
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    apply_mcp_api_key_middleware(app)
    return TestClient(app, client=client)


def _build_maintenance_client(monkeypatch, *, client=("testclient", 50000)) -> TestClient:
    monkeypatch.setattr(maintenance_api, "get_memory_engine", lambda: _StatusEngine())
    app = FastAPI()
    app.include_router(maintenance_api.router)
    return TestClient(app, client=client)


def test_sse_auth_rejects_when_api_key_not_configured_by_default(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.delenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_sse_client() as client:
        response = client.get("/ping")
    assert response.status_code == 401
    payload = response.json()
    assert payload.get("error") == "mcp_sse_auth_failed"
    assert payload.get("reason") == "api_key_not_configured"
    assert response.headers.get("WWW-Authenticate") == "Bearer"


def test_sse_auth_allows_loopback_with_insecure_local_override(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_sse_client(client=("127.0.0.1", 50000)) as client:
        response = client.get("/ping")
    assert response.status_code == 200
    assert response.json().get("ok") is True


def test_sse_auth_rejects_insecure_local_override_for_remote_client(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "yes")
    with _build_sse_client(client=("203.0.113.10", 50000)) as client:
        response = client.get("/ping")
    assert response.status_code == 401
    assert response.json().get("reason") == "insecure_local_override_requires_loopback"


def test_sse_auth_rejects_wrong_key(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "recall-sse-secret")
    with _build_sse_client() as client:
        response = client.get("/ping", headers={"X-MCP-API-Key": "guess"})
    assert response.status_code == 401
    assert response.json().get("reason") == "invalid_or_missing_api_key"


def test_sse_auth_accepts_header_and_bearer_token(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "recall-sse-secret")
    with _build_sse_client() as client:
        by_header = client.get("/ping", headers={"X-MCP-API-Key": "recall-sse-secret"})
        by_bearer = client.get("/ping", headers={"Authorization": "Bearer recall-sse-secret"})
    assert by_header.status_code == 200
    assert by_bearer.status_code == 200


def test_maintenance_auth_rejects_when_api_key_not_configured(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.delenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_maintenance_client(monkeypatch) as client:
        response = client.get("/maintenance/index/status")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("error") == "maintenance_auth_failed"
    assert detail.get("reason") == "api_key_not_configured"


def test_maintenance_auth_rejects_missing_key_on_rebuild(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "recall-secret")
    with _build_maintenance_client(monkeypatch) as client:
        response = client.post("/maintenance/index/rebuild")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("reason") == "invalid_or_missing_api_key"


def test_maintenance_routes_accept_valid_key(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "recall-secret")
    headers = {"Authorization": "Bearer recall-secret"}
    with _build_maintenance_client(monkeypatch) as client:
        status_response = client.get("/maintenance/index/status", headers=headers)
        rebuild_response = client.post(
            "/maintenance/index/rebuild", params={"reason": "nightly"}, headers=headers
        )
    assert status_response.status_code == 200
    assert status_response.json()["consistent"] is True
    assert rebuild_response.status_code == 200
    assert rebuild_response.json() == {
        "ok": True,
        "reason": "nightly",
        "result": {"indexed": 0, "reason": "nightly"},
    }


def test_maintenance_auth_allows_loopback_override(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "1")
    with _build_maintenance_client(monkeypatch, client=("127.0.0.1", 50000)) as client:
        response = client.get("/maintenance/index/status")
    assert response.status_code == 200
