"""Saved-session records and Claude Code transcript reading.

Claude Code keeps one append-only JSONL transcript per session under
~/.claude/projects/<encoded-workspace>/<session-uuid>.jsonl. The workspace
path is encoded by replacing path separators (and other punctuation) with
dashes: /Users/alice/dev/app -> -Users-alice-dev-app.

Transcript entry types:
- "user" / "human": user prompts, or tool_result blocks returned to the agent.
  Tool-result-only entries and IDE-injected context are skipped.
- "assistant": content in the same shape as the live stream events.
- everything else (file-history-snapshot, progress, summary, system, ...)
  is metadata and skipped.
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path

from .blocks import extract_content
from .config import get_claude_code_path, get_store_path
from .core import Message, SavedSession

logger = logging.getLogger(__name__)

MAX_SAVED_PER_WORKSPACE = 50


def encode_workspace_path(workspace_path: str) -> list[str]:
    """Candidate project directory names for a workspace path."""
    candidates = [
        re.sub(r"[^A-Za-z0-9]", "-", workspace_path),
        workspace_path.replace("/", "-"),
    ]
    return list(dict.fromkeys(candidates))


def find_project_dir(base: Path, session_id: str, workspace_path: str | None) -> Path | None:
    """Locate the project directory holding ``<session_id>.jsonl``.

    Checks the encoded workspace directory first, then scans every project.
    """
    if not base.is_dir():
        return None

    filename = f"{session_id}.jsonl"
    if workspace_path:
        for name in encode_workspace_path(workspace_path):
            candidate = base / name
            if (candidate / filename).is_file():
                return candidate

    try:
        for candidate in base.iterdir():
            if candidate.is_dir() and (candidate / filename).is_file():
                return candidate
    except OSError as e:
        logger.warning("Failed to scan %s: %s", base, e)
    return None


class TranscriptReader:
    """Reads Claude Code's own session transcripts."""

    def get_base_path(self) -> Path:
        return get_claude_code_path()

    def is_available(self) -> bool:
        return self.get_base_path().is_dir()

    def find_transcript(self, session_id: str, workspace_path: str | None) -> Path | None:
        project_dir = find_project_dir(self.get_base_path(), session_id, workspace_path)
        if project_dir is None:
            return None
        return project_dir / f"{session_id}.jsonl"

    def read_transcript(self, session_id: str, workspace_path: str | None = None) -> list[Message]:
        """Return the conversation history stored in a session transcript.

        Returns an empty list when the transcript is missing or unreadable.
        """
        path = self.find_transcript(session_id, workspace_path)
        if path is None:
            return []
        return self._parse_jsonl(path)

    # ── Private helpers ──────────────────────────────────────────────

    def _parse_jsonl(self, path: Path) -> list[Message]:
        messages: list[Message] = []

        try:
            with path.open(encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.debug("Bad JSON at %s:%d: %s", path, line_num, e)
                        continue
                    if not isinstance(entry, dict):
                        continue

                    msg = self._entry_to_message(entry, line_num)
                    if msg is not None:
                        messages.append(msg)
        except OSError as e:
            logger.warning("Failed to read transcript %s: %s", path, e)
            return []

        return _merge_assistant_runs(messages)

    def _entry_to_message(self, entry: dict, line_num: int) -> Message | None:
        entry_type = entry.get("type", "")
        msg_data = entry.get("message")
        if not isinstance(msg_data, dict):
            return None

        timestamp = _parse_iso(entry.get("timestamp")) or datetime.now(timezone.utc)
        msg_id = entry.get("uuid") or f"msg-{line_num}-{entry_type}"

        if entry_type in ("user", "human") and msg_data.get("role") == "user":
            text = _extract_user_text(msg_data.get("content"))
            if not text.strip():
                return None
            return Message(id=msg_id, role="user", content=text.strip(), timestamp=timestamp)

        if entry_type == "assistant" and msg_data.get("role") == "assistant":
            text, blocks = extract_content(msg_data.get("content"))
            if not text.strip() and not blocks:
                return None
            return Message(
                id=msg_id,
                role="assistant",
                content=text,
                timestamp=timestamp,
                blocks=blocks or None,
            )

        return None


def _extract_user_text(content) -> str:
    """Plain text of a user turn, ignoring tool results and IDE context."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            text = part.get("text")
            if isinstance(text, str) and not text.startswith("<ide_"):
                parts.append(text)
    return "\n".join(parts)


def _merge_assistant_runs(messages: list[Message]) -> list[Message]:
    """Merge consecutive assistant records (one per streamed message)."""
    merged: list[Message] = []
    for msg in messages:
        prev = merged[-1] if merged else None
        if prev is not None and prev.role == "assistant" and msg.role == "assistant":
            if msg.content:
                prev.content = f"{prev.content}\n{msg.content}" if prev.content else msg.content
            if msg.blocks:
                prev.blocks = (prev.blocks or []) + msg.blocks
        else:
            merged.append(msg)
    return merged


class SessionStore:
    """JSON-file store of resumable sessions, grouped by workspace."""

    def __init__(self, path: Path | None = None, max_per_workspace: int = MAX_SAVED_PER_WORKSPACE):
        self.path = path or get_store_path()
        self.max_per_workspace = max_per_workspace

    def list_saved(self, workspace_path: str) -> list[SavedSession]:
        """Saved sessions of a workspace, most recently used first."""
        sessions = [s for s in self._load() if s.workspace_path == workspace_path]
        sessions.sort(key=lambda s: s.last_used, reverse=True)
        return sessions

    def get(self, session_id: str) -> SavedSession | None:
        return next((s for s in self._load() if s.session_id == session_id), None)

    def save(self, session_id: str, title: str, workspace_path: str) -> SavedSession:
        """Insert or refresh a record; keeps at most N records per workspace."""
        sessions = self._load()
        now = datetime.now(timezone.utc)

        record = next((s for s in sessions if s.session_id == session_id), None)
        if record is not None:
            record.title = title
            record.last_used = now
        else:
            record = SavedSession(
                session_id=session_id,
                title=title,
                workspace_path=workspace_path,
                last_used=now,
            )
            sessions.append(record)

        same_workspace = [s for s in sessions if s.workspace_path == workspace_path]
        if len(same_workspace) > self.max_per_workspace:
            same_workspace.sort(key=lambda s: s.last_used)
            dropped = {s.session_id for s in same_workspace[: len(same_workspace) - self.max_per_workspace]}
            sessions = [s for s in sessions if s.session_id not in dropped]

        self._write(sessions)
        return record

    def delete(self, session_id: str) -> bool:
        sessions = self._load()
        remaining = [s for s in sessions if s.session_id != session_id]
        if len(remaining) == len(sessions):
            return False
        self._write(remaining)
        return True

    # ── Private helpers ──────────────────────────────────────────────

    def _load(self) -> list[SavedSession]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to read session store %s: %s", self.path, e)
            return []

        sessions = []
        for entry in data.get("saved_sessions", []) if isinstance(data, dict) else []:
            if not isinstance(entry, dict) or not entry.get("session_id"):
                continue
            sessions.append(SavedSession(
                session_id=entry["session_id"],
                title=entry.get("title") or "Untitled",
                workspace_path=entry.get("workspace_path", ""),
                last_used=_parse_iso(entry.get("last_used")) or datetime.fromtimestamp(0, timezone.utc),
            ))
        return sessions

    def _write(self, sessions: list[SavedSession]) -> None:
        data = {
            "saved_sessions": [
                {
                    "session_id": s.session_id,
                    "title": s.title,
                    "workspace_path": s.workspace_path,
                    "last_used": s.last_used.isoformat(),
                }
                for s in sessions
            ]
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.path)


def _parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string."""
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
