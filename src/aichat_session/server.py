"""FastAPI control surface for aichat-session."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from .config import EngineConfig, get_claude_code_path
from .engine import SessionEngine
from .gateway import ClaudeCliGateway
from .history import SessionStore
from .watcher import SubagentWatcher

logger = logging.getLogger(__name__)

# Engine (created on first request, inside the server's event loop)
_engine: SessionEngine | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    global _engine
    if _engine is not None:
        _engine.unlisten()
        shutdown = getattr(_engine.gateway, "shutdown", None)
        if shutdown is not None:
            await shutdown()
        _engine = None


app = FastAPI(title="aichat-session", version="0.1.0", lifespan=lifespan)


def _get_engine() -> SessionEngine:
    """Lazily create the engine, its CLI gateway and the subagent watcher."""
    global _engine
    if _engine is None:
        loop = asyncio.get_running_loop()
        config = EngineConfig.from_env()
        store = SessionStore(max_per_workspace=config.max_saved_per_workspace)
        engine = SessionEngine(ClaudeCliGateway(store=store), config=config)
        engine.watcher = SubagentWatcher(
            sink=lambda batch: loop.call_soon_threadsafe(engine.handle_subagent_activity, batch),
            config=config,
        )
        engine.listen()
        _engine = engine
        logger.info("Session engine ready (model %s)", engine.model)
    return _engine


def _get_conversation(conversation_id: str):
    conv = _get_engine().get(conversation_id)
    if conv is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


# ── Request bodies ───────────────────────────────────────────────


class CreateConversation(BaseModel):
    workspace_path: str | None = None


class SendMessage(BaseModel):
    prompt: str
    display_content: str | None = None
    model: str | None = None


class RespondBody(BaseModel):
    response: str


class WorkspaceBody(BaseModel):
    path: str


# ── Serialization ────────────────────────────────────────────────


def _block_to_dict(block) -> dict:
    data = {"type": block.type}
    if block.type == "text":
        data["text"] = block.text
    elif block.type == "tool_use":
        data.update(name=block.name, input=block.input, id=block.id)
    elif block.type == "tool_result":
        data["content"] = block.content
    elif block.type == "thinking":
        data["thinking"] = block.thinking
    return data


def _message_to_dict(msg) -> dict:
    """Convert a Message dataclass to a JSON-serializable dict."""
    return {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "display_content": msg.display_content,
        "timestamp": msg.timestamp.isoformat() if msg.timestamp else None,
        "blocks": [_block_to_dict(b) for b in msg.blocks] if msg.blocks else None,
    }


def _subagent_to_dict(agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "color": agent.color,
        "description": agent.description,
        "nested_status": agent.nested_status,
        "nested_tool_name": agent.nested_tool_name,
        "tools_used": list(agent.tools_used),
        "task_id": agent.task_id,
        "started_at": agent.started_at.isoformat(),
        "finished": agent.finished,
    }


def _prompt_to_dict(prompt) -> dict | None:
    if prompt is None:
        return None
    return {
        "id": prompt.id,
        "prompt_type": prompt.prompt_type,
        "message": prompt.message,
        "options": [{"label": o.label, "value": o.value, "key": o.key} for o in prompt.options],
        "tool_name": prompt.tool_name,
        "tool_input": prompt.tool_input,
    }


def _usage_to_dict(usage) -> dict | None:
    if usage is None:
        return None
    return {
        "input_tokens": usage.input_tokens,
        "output_tokens": usage.output_tokens,
        "cache_read_tokens": usage.cache_read_tokens,
        "cache_create_tokens": usage.cache_create_tokens,
        "total_cost_usd": usage.total_cost_usd,
    }


def _conversation_to_dict(conv, include_messages: bool = False) -> dict:
    """Convert a Conversation to a JSON-serializable dict."""
    data = {
        "id": conv.id,
        "title": conv.title,
        "workspace_path": conv.workspace_path,
        "resume_token": conv.resume_token,
        "state": conv.state,
        "is_streaming": conv.is_streaming,
        "streaming_status": conv.streaming_status,
        "message_count": len(conv.messages),
    }
    if include_messages:
        data.update(
            messages=[_message_to_dict(m) for m in conv.messages],
            streaming_content=conv.streaming_content,
            streaming_blocks=[_block_to_dict(b) for b in conv.streaming_blocks],
            pending_prompt=_prompt_to_dict(conv.pending_prompt),
            subagents=[_subagent_to_dict(a) for a in conv.active_subagents],
            quick_replies=[{"label": q.label, "value": q.value} for q in conv.quick_replies],
            token_usage=_usage_to_dict(conv.token_usage),
        )
    return data


def _saved_to_dict(saved) -> dict:
    return {
        "session_id": saved.session_id,
        "title": saved.title,
        "workspace_path": saved.workspace_path,
        "last_used": saved.last_used.isoformat(),
    }


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/health")
async def health():
    """Report whether Claude Code's projects directory is available."""
    path = get_claude_code_path()
    return {"status": "ok", "claude_projects": str(path), "available": path.is_dir()}


@app.put("/api/workspace")
async def set_workspace(body: WorkspaceBody):
    """Switch the current workspace and load its saved sessions."""
    engine = _get_engine()
    restored = engine.switch_workspace(body.path)
    try:
        await engine.load_saved(body.path)
    except Exception as e:
        logger.error("Failed to load saved sessions for %s: %s", body.path, e)
    return {"workspace": body.path, "restored": restored}


@app.delete("/api/workspace")
async def remove_workspace(path: str = Query(..., description="Workspace path")):
    """Abort and discard all conversations of a workspace."""
    await _get_engine().remove_workspace(path)
    return {"removed": path}


@app.get("/api/conversations")
async def list_conversations():
    """Return the conversations of the current workspace."""
    engine = _get_engine()
    return {
        "workspace": engine.current_workspace,
        "active_id": engine.active_id,
        "conversations": [_conversation_to_dict(c) for c in engine.conversations],
    }


@app.post("/api/conversations")
async def create_conversation(body: CreateConversation):
    engine = _get_engine()
    conversation_id = engine.create(body.workspace_path)
    return _conversation_to_dict(engine.get(conversation_id), include_messages=True)


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str):
    """Return the full state of one conversation."""
    return _conversation_to_dict(_get_conversation(conversation_id), include_messages=True)


@app.delete("/api/conversations/{conversation_id}")
async def close_conversation(conversation_id: str):
    _get_conversation(conversation_id)
    await _get_engine().close(conversation_id)
    return {"closed": conversation_id}


@app.post("/api/conversations/{conversation_id}/messages")
async def send_message(conversation_id: str, body: SendMessage):
    """Send a user message; the reply streams into the conversation state."""
    _get_conversation(conversation_id)
    accepted = await _get_engine().send(
        conversation_id, body.prompt, display_content=body.display_content, model=body.model
    )
    return {"accepted": accepted}


@app.post("/api/conversations/{conversation_id}/abort")
async def abort_conversation(conversation_id: str):
    _get_conversation(conversation_id)
    await _get_engine().abort(conversation_id)
    return _conversation_to_dict(_get_conversation(conversation_id))


@app.post("/api/conversations/{conversation_id}/respond")
async def respond_to_prompt(conversation_id: str, body: RespondBody):
    """Answer the conversation's pending prompt."""
    conv = _get_conversation(conversation_id)
    if conv.pending_prompt is None:
        raise HTTPException(status_code=409, detail="No pending prompt")
    ok = await _get_engine().respond(conversation_id, body.response)
    return {"ok": ok}


@app.get("/api/saved")
async def list_saved(workspace: str = Query(..., description="Workspace path")):
    """Return resumable sessions of a workspace, newest first."""
    try:
        sessions = await _get_engine().load_saved(workspace)
    except Exception as e:
        logger.error("Failed to list saved sessions for %s: %s", workspace, e)
        raise HTTPException(status_code=500, detail="Failed to list saved sessions")
    return [_saved_to_dict(s) for s in sessions]


@app.post("/api/saved/{session_id}/resume")
async def resume_saved(session_id: str):
    engine = _get_engine()
    saved = next((s for s in engine.saved_sessions if s.session_id == session_id), None)
    if saved is None:
        raise HTTPException(status_code=404, detail="Saved session not found")
    conversation_id = await engine.resume(saved)
    return _conversation_to_dict(engine.get(conversation_id), include_messages=True)


@app.delete("/api/saved/{session_id}")
async def delete_saved(session_id: str):
    await _get_engine().delete_saved(session_id)
    return {"deleted": session_id}


@app.get("/api/transcript/{session_id}")
async def get_transcript(
    session_id: str,
    workspace: str | None = Query(None, description="Workspace path of the session"),
):
    """Return the messages of a Claude Code transcript."""
    try:
        messages = await _get_engine().gateway.read_transcript(session_id, workspace)
    except Exception as e:
        logger.error("Failed to read transcript %s: %s", session_id, e)
        raise HTTPException(status_code=500, detail="Failed to read transcript")

    if not messages:
        raise HTTPException(status_code=404, detail="Transcript not found")
    return {
        "session_id": session_id,
        "messages": [_message_to_dict(m) for m in messages],
    }
