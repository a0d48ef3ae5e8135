import json
from datetime import datetime
from pathlib import Path

import pytest

import mcp_server
from recall.config import EngineSettings
from recall.engine import MemoryEngine
from recall.errors import MemoryNotFoundError, SearchIndexError
from recall.models import MemoryRecord


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _RecordingEngine:
    def __init__(self, records=None) -> None:
        self.records = list(records or [])
        self.search_calls = []
        self.add_calls = []

    async def add(self, content, kind="fact", tags=None):
        self.add_calls.append((content, kind, tags))
        return "mem_1_abcd"

    async def search(self, query_text="", tags=None, limit=None):
        self.search_calls.append((query_text, tags, limit))
        return list(self.records)

    async def delete(self, memory_id):
        raise MemoryNotFoundError(memory_id)

    async def get(self, memory_id):
        raise MemoryNotFoundError(memory_id)

    async def rebuild_index(self, reason="manual"):
        raise SearchIndexError("index file is read-only")


def _tool_payload(raw: str) -> dict:
    payload = json.loads(raw)
    assert isinstance(payload["message"], str)
    return payload


@pytest.mark.asyncio
async def test_search_memory_rejects_non_string_query() -> None:
    payload = _tool_payload(await mcp_server.search_memory(123))  # type: ignore[arg-type]

    assert payload["ok"] is False
    assert payload["error"] == "validation_error"
    assert "query must be a string." in payload["message"]


@pytest.mark.asyncio
async def test_search_memory_rejects_non_string_tags() -> None:
    payload = _tool_payload(await mcp_server.search_memory("x", tags=["ok", 5]))  # type: ignore[list-item]

    assert payload["ok"] is False
    assert "tags must be an array of strings." in payload["message"]


@pytest.mark.asyncio
async def test_search_memory_clamps_limit(monkeypatch) -> None:
    engine = _RecordingEngine()
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: engine)

    await mcp_server.search_memory("x", limit=500)
    await mcp_server.search_memory("x", limit=0)
    await mcp_server.search_memory("x")

    limits = [call[2] for call in engine.search_calls]
    assert limits == [mcp_server.SEARCH_TOOL_MAX_LIMIT, 1, 5]


@pytest.mark.asyncio
async def test_search_memory_without_hits_is_success(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _RecordingEngine())

    payload = _tool_payload(await mcp_server.search_memory("nothing here"))

    assert payload["ok"] is True
    assert payload["message"] == "No matching memories found."
    assert payload["results"] == []
    assert payload["count"] == 0


@pytest.mark.asyncio
async def test_search_memory_formats_ranked_results(monkeypatch) -> None:
    record = MemoryRecord(
        id="mem_7_beef",
        content="The capital of France is Paris",
        kind="reference",
        tags=["geo"],
        created_at=datetime(2024, 5, 1, 8, 30),
        score=0.75,
    )
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _RecordingEngine([record]))

    payload = _tool_payload(await mcp_server.search_memory("capital", tags=["geo"]))

    assert payload["ok"] is True
    assert payload["count"] == 1
    assert payload["results"][0] == {
        "id": "mem_7_beef",
        "content": "The capital of France is Paris",
        "type": "reference",
        "tags": ["geo"],
        "score": 0.75,
        "created_at": "2024-05-01T08:30:00",
    }
    assert payload["message"].splitlines() == [
        "Found 1 memories:",
        "1. [mem_7_beef] (score: 0.750) The capital of France is Paris | reference | geo",
    ]


@pytest.mark.asyncio
async def test_add_memory_validates_type_and_content(monkeypatch) -> None:
    engine = _RecordingEngine()
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: engine)

    bad_type = _tool_payload(await mcp_server.add_memory("x", type="opinion"))
    bad_content = _tool_payload(await mcp_server.add_memory(None))  # type: ignore[arg-type]

    assert bad_type["ok"] is False
    assert "type must be one of: fact, conversation, reference." in bad_type["message"]
    assert bad_content["ok"] is False
    assert "content must be a string." in bad_content["message"]
    assert engine.add_calls == []


@pytest.mark.asyncio
async def test_add_memory_reports_new_id(monkeypatch) -> None:
    engine = _RecordingEngine()
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: engine)

    payload = _tool_payload(await mcp_server.add_memory("note", type="conversation", tags=["t"]))

    assert payload == {"ok": True, "message": "Memory stored with ID: mem_1_abcd", "id": "mem_1_abcd"}
    assert engine.add_calls == [("note", "conversation", ["t"])]


@pytest.mark.asyncio
async def test_delete_and_get_unknown_id_return_not_found(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _RecordingEngine())

    deleted = _tool_payload(await mcp_server.delete_memory("mem_missing"))
    fetched = _tool_payload(await mcp_server.get_memory("mem_missing"))

    for payload in (deleted, fetched):
        assert payload["ok"] is False
        assert payload["error"] == "not_found"
        assert "mem_missing" in payload["message"]


@pytest.mark.asyncio
async def test_rebuild_index_failure_is_reported(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _RecordingEngine())

    payload = _tool_payload(await mcp_server.rebuild_index())

    assert payload["ok"] is False
    assert payload["error"] == "index_error"
    assert "read-only" in payload["message"]


@pytest.mark.asyncio
async def test_tools_end_to_end_with_real_engine(tmp_path: Path, monkeypatch) -> None:
    engine = MemoryEngine(EngineSettings(database_url=_sqlite_url(tmp_path / "memory.db")))
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: engine)
    try:
        added = _tool_payload(
            await mcp_server.add_memory("The capital of France is Paris", tags=["geo"])
        )
        await mcp_server.add_memory("Water boils at 100 degrees Celsius", type="reference")
        memory_id = added["id"]

        found = _tool_payload(await mcp_server.search_memory("capital of France", limit=1))
        fetched = _tool_payload(await mcp_server.get_memory(memory_id))
        status = _tool_payload(await mcp_server.index_status())
        rebuilt = _tool_payload(await mcp_server.rebuild_index(reason="test"))
        deleted = _tool_payload(await mcp_server.delete_memory(memory_id))
        deleted_again = _tool_payload(await mcp_server.delete_memory(memory_id))
    finally:
        await engine.close()

    assert added["message"] == f"Memory stored with ID: {memory_id}"
    assert [item["id"] for item in found["results"]] == [memory_id]
    assert fetched["memory"]["tags"] == ["geo"]
    assert status["status"]["consistent"] is True
    assert rebuilt["result"]["indexed"] == 2
    assert rebuilt["result"]["reason"] == "test"
    assert deleted["message"] == f"Memory {memory_id} deleted."
    assert deleted_again["error"] == "not_found"
