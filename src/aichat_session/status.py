"""Short human-readable status lines for tool calls and running subagents."""

import re

from .core import ContentBlock, SubagentInfo

TOOL_LABELS = {
    "read": "Reading file",
    "write": "Writing file",
    "edit": "Editing file",
    "multiedit": "Editing file",
    "bash": "Running command",
    "glob": "Finding files",
    "grep": "Searching",
    "ls": "Listing directory",
    "browser": "Browsing",
    "webfetch": "Fetching web",
    "websearch": "Searching web",
    "notebookedit": "Editing notebook",
    "todoread": "Reading tasks",
    "todowrite": "Updating tasks",
    "task": "Running subagent",
    "agent": "Running subagent",
    "delegate_task": "Running subagent",
    "taskoutput": "Waiting for subagent",
    "background_output": "Waiting for subagent",
    "taskcancel": "Cancelling subagent",
    "background_cancel": "Cancelling subagent",
}

# Input fields shown after the label, first match wins
DETAIL_FIELDS = ("command", "file_path", "pattern", "query", "path")
MAX_DETAIL = 60

THINKING = "Thinking…"
WRITING = "Writing…"
WORKING = "Working…"

# Placeholders that say nothing about what an agent is actually doing
UNINFORMATIVE_STATUSES = frozenset({
    "",
    "Starting…",
    "Executing…",
    WORKING,
    "Processing…",
    "Preparing…",
})

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")


def format_tool_status(name: str, tool_input: dict | None) -> str:
    """Format a tool call as e.g. ``Running command: npm test``."""
    label = TOOL_LABELS.get(name.lower(), name)
    tool_input = tool_input if isinstance(tool_input, dict) else {}

    detail = ""
    for key in DETAIL_FIELDS:
        value = tool_input.get(key)
        if value:
            detail = str(value)[:MAX_DETAIL]
            break

    return f"{label}: {detail}" if detail else label


def is_informative(status: str) -> bool:
    return status not in UNINFORMATIVE_STATUSES


def summarize_subagents(agents: list[SubagentInfo]) -> str:
    """Pick one status line describing all unfinished subagents."""
    running = [a for a in agents if not a.finished]
    if not running:
        return ""

    first = running[0]
    if is_informative(first.nested_status):
        return f"{first.name}: {first.nested_status}"
    if len(running) == 1:
        return f"{first.name} working…"
    return f"{len(running)} agents working…"


def subagent_aux_label(name: str, tool_input: dict | None, agents: list[SubagentInfo]) -> str:
    """Status for a status/cancel probe aimed at a running subagent."""
    tool_input = tool_input if isinstance(tool_input, dict) else {}
    task_id = tool_input.get("task_id")

    target = None
    if isinstance(task_id, str) and task_id:
        target = next((a for a in agents if a.task_id == task_id), None)
    if target is None:
        running = [a for a in agents if not a.finished]
        if len(running) == 1:
            target = running[0]
    who = target.name if target else "subagent"

    if name.lower() in ("taskcancel", "background_cancel"):
        return f"Cancelling {who}"
    if tool_input.get("block") is False:
        return f"Checking {who}"
    return f"Waiting for {who}"


def status_from_blocks(blocks: list[ContentBlock], text: str) -> str | None:
    """Derive a status from the latest block of a snapshot.

    Returns None when nothing in the snapshot says what is happening.
    """
    last = blocks[-1] if blocks else None
    if last is not None and last.type == "tool_use" and last.name:
        return format_tool_status(last.name, last.input)
    if last is not None and last.type == "thinking":
        return THINKING
    if text:
        return WRITING
    return None


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def sanitize_error(text: str, limit: int = 80) -> str:
    """ANSI-stripped, trimmed and length-capped text for the status line."""
    return strip_ansi(text).strip()[:limit]
