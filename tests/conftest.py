"""Shared test fixtures for aichat-session."""

import json
from datetime import datetime, timezone

import pytest

from aichat_session.config import EngineConfig
from aichat_session.core import Message, SavedSession
from aichat_session.engine import SessionEngine
from aichat_session.gateway import SessionGateway

WORKSPACE = "/Users/testuser/dev/myapp"


class FakeGateway(SessionGateway):
    """In-memory gateway that records every control call."""

    def __init__(self):
        super().__init__()
        self.sent = []
        self.aborted = []
        self.closed = []
        self.responses = []
        self.saved = {}
        self.deleted = []
        self.transcripts: dict[str, list[Message]] = {}
        self.respond_ok = True
        self.accept = True
        self.fail_abort = False

    async def send(self, conversation_id, prompt, cwd, model, resume_token=None):
        self.sent.append((conversation_id, prompt, cwd, model, resume_token))
        return self.accept

    async def abort(self, conversation_id):
        self.aborted.append(conversation_id)
        if self.fail_abort:
            raise RuntimeError("process already gone")
        return True

    async def respond(self, conversation_id, response):
        self.responses.append((conversation_id, response))
        return self.respond_ok

    async def close(self, conversation_id):
        self.closed.append(conversation_id)

    async def list_saved(self, workspace_path):
        return [s for s in self.saved.values() if s.workspace_path == workspace_path]

    async def save_session(self, session_id, title, workspace_path):
        self.saved[session_id] = SavedSession(
            session_id=session_id,
            title=title,
            workspace_path=workspace_path,
            last_used=datetime.now(timezone.utc),
        )

    async def read_transcript(self, session_id, workspace_path):
        return self.transcripts.get(session_id, [])

    async def delete_saved(self, session_id):
        self.deleted.append(session_id)
        self.saved.pop(session_id, None)


class FakeWatcher:
    """Records watcher control calls."""

    def __init__(self, start_ok=True):
        self.start_ok = start_ok
        self.starts = []
        self.updates = []
        self.stops = 0

    def start(self, conversation_id, parent_session_id, workspace_path, targets):
        self.starts.append((conversation_id, parent_session_id, workspace_path, list(targets)))
        return self.start_ok

    def update(self, targets):
        self.updates.append(list(targets))

    def stop(self):
        self.stops += 1


@pytest.fixture
def workspace():
    return WORKSPACE


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def watcher():
    return FakeWatcher()


@pytest.fixture
def engine(gateway, watcher):
    engine = SessionEngine(gateway, watcher=watcher, config=EngineConfig())
    engine.listen()
    return engine


def _line(entry: dict) -> str:
    return json.dumps(entry)


@pytest.fixture
def tmp_claude_projects(tmp_path):
    """Create a synthetic Claude Code projects directory with realistic JSONL.

    Includes:
    - User text messages (one with IDE-injected context)
    - Assistant text + tool_use, thinking, consecutive assistant records
    - User tool_result entries (skipped)
    - file-history-snapshot / summary entries (skipped)
    """
    projects = tmp_path / "projects"
    project_dir = projects / "-Users-testuser-dev-myapp"
    project_dir.mkdir(parents=True)

    lines = [
        _line({
            "type": "user",
            "message": {"role": "user", "content": [
                {"type": "text", "text": "<ide_opened_file>src/auth.ts</ide_opened_file>"},
                {"type": "text", "text": "Help me refactor the auth module"},
            ]},
            "timestamp": "2025-01-20T10:00:00Z",
            "uuid": "uuid-001",
            "sessionId": "session-001",
        }),
        _line({
            "type": "assistant",
            "message": {"role": "assistant", "content": [
                {"type": "text", "text": "Let me read the current code."},
                {"type": "tool_use", "id": "toolu_001", "name": "Read", "input": {"file_path": "/src/auth.ts"}},
            ]},
            "timestamp": "2025-01-20T10:00:30Z",
            "uuid": "uuid-002",
        }),
        _line({
            "type": "user",
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_001", "content": "export function authenticate() {}"},
            ]},
            "timestamp": "2025-01-20T10:00:31Z",
            "uuid": "uuid-003",
        }),
        _line({
            "type": "assistant",
            "message": {"role": "assistant", "content": [
                {"type": "thinking", "thinking": "Split validation from refresh."},
                {"type": "text", "text": "I'll split it into separate concerns."},
            ]},
            "timestamp": "2025-01-20T10:01:00Z",
            "uuid": "uuid-004",
        }),
        _line({"type": "file-history-snapshot", "files": [{"path": "/src/auth.ts"}]}),
        _line({
            "type": "human",
            "message": {"role": "user", "content": "Looks good, now add tests"},
            "timestamp": "2025-01-20T10:05:00Z",
            "uuid": "uuid-005",
        }),
        _line({
            "type": "assistant",
            "message": {"role": "assistant", "content": [
                {"type": "text", "text": "Tests added."},
            ]},
            "timestamp": "2025-01-20T10:06:00Z",
            "uuid": "uuid-006",
        }),
        _line({"type": "summary", "summary": "Refactored auth module"}),
    ]
    (project_dir / "session-001.jsonl").write_text("\n".join(lines) + "\n", encoding="utf-8")

    return projects


def _write_jsonl(path, entries):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(e) + "\n" for e in entries), encoding="utf-8")


@pytest.fixture
def write_jsonl():
    return _write_jsonl


@pytest.fixture
def child_transcript():
    """Build the entries of a subagent transcript."""

    def build(prompt: str, tool: str = "Grep", tool_input: dict | None = None):
        return [
            {"type": "user", "message": {"role": "user", "content": prompt}},
            {"type": "assistant", "message": {"role": "assistant", "content": [
                {"type": "text", "text": "Looking into it."},
                {"type": "tool_use", "id": "toolu_c1", "name": tool, "input": tool_input or {"pattern": "TODO"}},
            ]}},
        ]

    return build
