"""Tests for the FastAPI server."""

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

import aichat_session.server as srv
from aichat_session.core import Message, SavedSession
from aichat_session.engine import SessionEngine
from aichat_session.server import app

from conftest import WORKSPACE, FakeGateway


@pytest.fixture(autouse=True)
def fake_engine():
    """Install an engine backed by the in-memory gateway."""
    gateway = FakeGateway()
    engine = SessionEngine(gateway)
    engine.listen()
    srv._engine = engine
    yield engine
    srv._engine = None


@pytest.fixture
def client():
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


def _saved(session_id, title="Refactor auth"):
    return SavedSession(
        session_id=session_id,
        title=title,
        workspace_path=WORKSPACE,
        last_used=datetime(2025, 1, 20, 12, 0, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_health(client, tmp_claude_projects, monkeypatch):
    monkeypatch.setenv("AICHAT_CLAUDE_PATH", str(tmp_claude_projects))
    async with client:
        resp = await client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["available"] is True
    assert data["claude_projects"] == str(tmp_claude_projects)


@pytest.mark.asyncio
async def test_workspace_switch_and_remove(client, fake_engine):
    fake_engine.gateway.saved = {"s1": _saved("s1")}
    async with client:
        resp = await client.put("/api/workspace", json={"path": WORKSPACE})
        assert resp.json() == {"workspace": WORKSPACE, "restored": False}
        assert [s.session_id for s in fake_engine.saved_sessions] == ["s1"]

        await client.post("/api/conversations", json={})
        resp = await client.get("/api/conversations")
        data = resp.json()
        assert data["workspace"] == WORKSPACE
        assert len(data["conversations"]) == 1
        assert data["conversations"][0]["workspace_path"] == WORKSPACE

        resp = await client.delete("/api/workspace", params={"path": WORKSPACE})
        assert resp.json() == {"removed": WORKSPACE}
        resp = await client.get("/api/conversations")
        assert resp.json()["conversations"] == []


@pytest.mark.asyncio
async def test_conversation_lifecycle(client, fake_engine):
    gateway = fake_engine.gateway
    async with client:
        resp = await client.post("/api/conversations", json={"workspace_path": WORKSPACE})
        assert resp.status_code == 200
        conv = resp.json()
        cid = conv["id"]
        assert conv["state"] == "idle"
        assert conv["messages"] == []

        resp = await client.post(f"/api/conversations/{cid}/messages", json={"prompt": "Hello", "model": "opus"})
        assert resp.json() == {"accepted": True}
        assert gateway.sent == [(cid, "Hello", WORKSPACE, "opus", None)]

        fake_engine.handle_event(cid, {"type": "stream_event", "event": {
            "type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"},
        }})
        resp = await client.get(f"/api/conversations/{cid}")
        data = resp.json()
        assert data["state"] == "streaming"
        assert data["streaming_content"] == "Hi"
        assert data["messages"][0]["content"] == "Hello"

        resp = await client.post(f"/api/conversations/{cid}/abort")
        assert resp.json()["state"] == "idle"
        assert resp.json()["message_count"] == 2
        assert gateway.aborted == [cid]

        resp = await client.delete(f"/api/conversations/{cid}")
        assert resp.json() == {"closed": cid}
        resp = await client.get(f"/api/conversations/{cid}")
        assert resp.status_code == 404


@pytest.mark.asyncio
async def test_respond(client, fake_engine):
    async with client:
        cid = (await client.post("/api/conversations", json={"workspace_path": WORKSPACE})).json()["id"]
        resp = await client.post(f"/api/conversations/{cid}/respond", json={"response": "y"})
        assert resp.status_code == 409

        await client.post(f"/api/conversations/{cid}/messages", json={"prompt": "run ls"})
        fake_engine.handle_event(cid, {
            "type": "prompt",
            "promptType": "permission",
            "message": "Allow Bash(ls)?",
            "options": [{"label": "Yes", "value": "y"}, {"label": "No", "value": "n"}],
        })
        data = (await client.get(f"/api/conversations/{cid}")).json()
        assert data["state"] == "awaiting_response"
        assert data["pending_prompt"]["prompt_type"] == "permission"
        assert [o["value"] for o in data["pending_prompt"]["options"]] == ["y", "n"]

        resp = await client.post(f"/api/conversations/{cid}/respond", json={"response": "y"})
        assert resp.json() == {"ok": True}
        assert fake_engine.gateway.responses == [(cid, "y")]


@pytest.mark.asyncio
async def test_unknown_conversation(client):
    async with client:
        assert (await client.get("/api/conversations/claude-99")).status_code == 404
        assert (await client.post("/api/conversations/claude-99/messages", json={"prompt": "x"})).status_code == 404
        assert (await client.post("/api/conversations/claude-99/abort")).status_code == 404
        assert (await client.delete("/api/conversations/claude-99")).status_code == 404


@pytest.mark.asyncio
async def test_saved_sessions_and_resume(client, fake_engine):
    gateway = fake_engine.gateway
    gateway.saved = {"s1": _saved("s1"), "s2": _saved("s2", "Add tests")}
    gateway.transcripts["s1"] = [
        Message(id="m1", role="user", content="Help me", timestamp=datetime(2025, 1, 20, tzinfo=timezone.utc)),
    ]
    async with client:
        resp = await client.get("/api/saved", params={"workspace": WORKSPACE})
        assert resp.status_code == 200
        assert [s["session_id"] for s in resp.json()] == ["s1", "s2"]
        assert resp.json()[0]["last_used"] == "2025-01-20T12:00:00+00:00"

        resp = await client.post("/api/saved/s1/resume")
        data = resp.json()
        assert data["resume_token"] == "s1"
        assert data["title"] == "Refactor auth"
        assert data["messages"][0]["content"] == "Help me"

        assert (await client.post("/api/saved/s1/resume")).status_code == 404

        resp = await client.delete("/api/saved/s2")
        assert resp.json() == {"deleted": "s2"}
        assert gateway.deleted == ["s2"]


@pytest.mark.asyncio
async def test_saved_sessions_failure(client, fake_engine):
    async def broken(workspace_path):
        raise OSError("disk gone")

    fake_engine.gateway.list_saved = broken
    async with client:
        resp = await client.get("/api/saved", params={"workspace": WORKSPACE})
    assert resp.status_code == 500


@pytest.mark.asyncio
async def test_transcript(client, fake_engine):
    fake_engine.gateway.transcripts["s1"] = [
        Message(id="m1", role="user", content="Help me", timestamp=datetime(2025, 1, 20, tzinfo=timezone.utc)),
    ]
    async with client:
        resp = await client.get("/api/transcript/s1", params={"workspace": WORKSPACE})
        assert resp.status_code == 200
        assert resp.json()["messages"][0]["role"] == "user"

        assert (await client.get("/api/transcript/missing")).status_code == 404


@pytest.mark.asyncio
async def test_engine_uses_configured_store_cap(tmp_path, monkeypatch):
    monkeypatch.setenv("AICHAT_MAX_SAVED_PER_WORKSPACE", "7")
    monkeypatch.setenv("AICHAT_STORE_PATH", str(tmp_path / "sessions.json"))
    srv._engine = None

    engine = srv._get_engine()
    assert engine.config.max_saved_per_workspace == 7
    assert engine.gateway.store.max_per_workspace == 7
    assert engine.gateway.store.path == tmp_path / "sessions.json"
    engine.unlisten()
