"""Out-of-band subagent activity from child session transcripts.

The parent stream only shows a delegation starting and, much later, its
result. What a subagent does in between is written by Claude Code to its
own JSONL transcript in the same project directory (or, in newer versions,
under ``<project>/<session-id>/subagents/``). The watcher polls those files
on a background thread and hands one ActivityBatch per cycle to a sink.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from .blocks import extract_content
from .config import EngineConfig, get_claude_code_path
from .core import ActivityBatch, SubagentActivity, WatchTarget
from .history import find_project_dir
from .status import THINKING, WRITING, format_tool_status

logger = logging.getLogger(__name__)

MAX_PROMPT = 600
DESCRIPTION_SNIPPET = 120
PROMPT_SNIPPET = 200
PROMPT_PREFIX = 80


# ── Transcript reading ───────────────────────────────────────────────


def read_tail(path: Path, size: int) -> str:
    """Return the complete lines within the last ``size`` bytes of a file.

    A line cut by the window start, or still being written at the end,
    is dropped.
    """
    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        end = f.tell()
        start = max(0, end - size)
        f.seek(start)
        data = f.read(end - start)

    if start > 0:
        newline = data.find(b"\n")
        data = data[newline + 1:] if newline != -1 else b""
    if data and not data.endswith(b"\n"):
        newline = data.rfind(b"\n")
        data = data[: newline + 1] if newline != -1 else b""
    return data.decode("utf-8", errors="replace")


def extract_latest_activity(content: str) -> tuple[Optional[str], str] | None:
    """Find the most recent (tool name, status) in JSONL text, scanning backwards."""
    for line in reversed(content.splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            continue
        message = entry.get("message")
        if not isinstance(message, dict) or not message.get("content"):
            continue

        _, blocks = extract_content(message["content"])
        for block in reversed(blocks):
            if block.type == "tool_use" and block.name:
                return block.name, format_tool_status(block.name, block.input)
            if block.type == "thinking":
                return None, THINKING
            if block.type == "text" and block.text:
                return None, WRITING
    return None


def extract_first_prompt(path: Path, size: int) -> str | None:
    """The first user prompt within the head of a transcript (max 600 chars)."""
    try:
        with path.open("rb") as f:
            head = f.read(size).decode("utf-8", errors="replace")
    except OSError as e:
        logger.debug("Failed to read head of %s: %s", path, e)
        return None

    for line in head.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") not in ("user", "human"):
            continue
        message = entry.get("message")
        if not isinstance(message, dict) or message.get("role") != "user":
            continue

        content = message.get("content")
        if isinstance(content, str):
            return content[:MAX_PROMPT]
        if isinstance(content, list):
            for part in content:
                if isinstance(part, str):
                    return part[:MAX_PROMPT]
                if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
                    return part["text"][:MAX_PROMPT]
    return None


# ── Matching ─────────────────────────────────────────────────────────


def overlap_score(prompt: str, description: str) -> int:
    """How strongly a child's first prompt overlaps a subagent description.

    Containment of one snippet in the other scores the shorter length;
    otherwise the score is the length of the common prefix.
    """
    prompt_snippet = prompt.lower()[:PROMPT_SNIPPET]
    desc_snippet = description.lower().rstrip("…").strip()[:DESCRIPTION_SNIPPET]
    if not prompt_snippet or not desc_snippet:
        return 0

    if desc_snippet in prompt_snippet or prompt_snippet[:PROMPT_PREFIX] in desc_snippet:
        return min(len(desc_snippet), len(prompt_snippet))
    return len(os.path.commonprefix([prompt_snippet, desc_snippet]))


def match_target(prompt: str, targets: Iterable[WatchTarget], min_overlap: int) -> WatchTarget | None:
    """Best-scoring target whose overlap reaches ``min_overlap``."""
    best = None
    best_score = 0
    for target in targets:
        if not target.description:
            continue
        score = overlap_score(prompt, target.description)
        if score > best_score:
            best, best_score = target, score
    return best if best_score >= min_overlap else None


# ── Watcher ──────────────────────────────────────────────────────────


@dataclass
class _WatchState:
    conversation_id: str
    parent_session_id: str
    project_dir: Path
    targets: list[WatchTarget]
    stop_event: threading.Event = field(default_factory=threading.Event)
    sizes: dict[str, int] = field(default_factory=dict)
    matches: dict[str, WatchTarget] = field(default_factory=dict)
    prompts: dict[str, str] = field(default_factory=dict)
    stale: set[str] = field(default_factory=set)


class SubagentWatcher:
    """Polls child transcripts of one parent session at a time."""

    def __init__(
        self,
        sink: Callable[[ActivityBatch], None],
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
        base_path: Path | None = None,
    ):
        self.sink = sink
        self.config = config or EngineConfig()
        self.clock = clock
        self.base_path = base_path
        self._lock = threading.Lock()
        self._state: _WatchState | None = None

    @property
    def active(self) -> bool:
        return self._state is not None

    def start(
        self,
        conversation_id: str,
        parent_session_id: str,
        workspace_path: str,
        targets: list[WatchTarget],
    ) -> bool:
        """Start polling; returns False if the project directory is not found."""
        self.stop()

        base = self.base_path or get_claude_code_path()
        project_dir = find_project_dir(base, parent_session_id, workspace_path)
        if project_dir is None:
            logger.warning("Subagent watcher: project dir not found for %s", workspace_path)
            return False

        state = _WatchState(
            conversation_id=conversation_id,
            parent_session_id=parent_session_id,
            project_dir=project_dir,
            targets=list(targets),
        )
        with self._lock:
            self._state = state

        thread = threading.Thread(
            target=self._run, args=(state,), name="subagent-watcher", daemon=True
        )
        thread.start()
        logger.info(
            "Subagent watcher started for %s in %s, targets: %s",
            conversation_id, project_dir, ", ".join(t.name for t in state.targets),
        )
        return True

    def update(self, targets: list[WatchTarget]) -> None:
        with self._lock:
            if self._state is not None:
                self._state.targets = list(targets)

    def stop(self) -> None:
        with self._lock:
            state, self._state = self._state, None
        if state is not None:
            state.stop_event.set()
            logger.info("Subagent watcher stopped for %s", state.conversation_id)

    def poll(self) -> ActivityBatch | None:
        """Run one poll cycle now on the calling thread."""
        state = self._state
        if state is None:
            return None
        return self._poll_state(state)

    # ── Private helpers ──────────────────────────────────────────────

    def _run(self, state: _WatchState) -> None:
        if state.stop_event.wait(self.config.watch_initial_delay):
            return
        while True:
            try:
                self._poll_state(state)
            except Exception:
                logger.exception("Subagent watcher poll failed")
            if state.stop_event.wait(self.config.watch_interval):
                return

    def _candidate_files(self, state: _WatchState) -> list[Path]:
        files = []
        for directory in (state.project_dir, state.project_dir / state.parent_session_id / "subagents"):
            if not directory.is_dir():
                continue
            try:
                files.extend(sorted(directory.glob("*.jsonl")))
            except OSError as e:
                logger.warning("Failed to list %s: %s", directory, e)
        parent_file = state.project_dir / f"{state.parent_session_id}.jsonl"
        return [f for f in files if f != parent_file]

    def _poll_state(self, state: _WatchState) -> ActivityBatch | None:
        activities = []
        for path in self._candidate_files(state):
            key = str(path)
            if key in state.stale:
                continue
            try:
                activity = self._check_file(state, path, key)
            except OSError as e:
                logger.debug("Skipping %s: %s", path, e)
                continue
            if activity is not None:
                activities.append(activity)

        if not activities or state.stop_event.is_set():
            return None

        batch = ActivityBatch(conversation_id=state.conversation_id, activities=tuple(activities))
        try:
            self.sink(batch)
        except Exception:
            logger.exception("Subagent activity sink failed")
        return batch

    def _check_file(self, state: _WatchState, path: Path, key: str) -> SubagentActivity | None:
        stat = path.stat()
        if self.clock() - stat.st_mtime > self.config.stale_after:
            state.stale.add(key)
            return None
        if stat.st_size <= state.sizes.get(key, 0):
            return None
        state.sizes[key] = stat.st_size

        latest = extract_latest_activity(read_tail(path, self.config.tail_bytes))
        if latest is None:
            return None
        tool, status = latest

        matched = state.matches.get(key)
        if matched is None:
            prompt = state.prompts.get(key)
            if prompt is None:
                prompt = extract_first_prompt(path, self.config.head_bytes)
                if prompt:
                    state.prompts[key] = prompt
            if prompt:
                with self._lock:
                    targets = list(state.targets)
                matched = match_target(prompt, targets, self.config.min_overlap)
                if matched is not None:
                    state.matches[key] = matched

        return SubagentActivity(
            source_id=path.stem,
            latest_status=status,
            latest_tool=tool,
            matched_name=matched.name if matched else None,
            matched_task_id=matched.task_id if matched else None,
        )
