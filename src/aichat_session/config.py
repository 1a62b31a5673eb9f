"""Platform-aware paths and tunable engine settings."""

import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path


def get_claude_code_path() -> Path:
    """Return the path to Claude Code's projects directory."""
    env = os.environ.get("AICHAT_CLAUDE_PATH")
    if env:
        return Path(env)

    return Path.home() / ".claude" / "projects"


def get_store_path() -> Path:
    """Return the path of the saved-session store file."""
    env = os.environ.get("AICHAT_STORE_PATH")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "aichat-session" / "sessions.json"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "aichat-session" / "sessions.json"
    else:  # Linux
        return Path.home() / ".config" / "aichat-session" / "sessions.json"


def get_claude_cli_path() -> str:
    """Return the Claude Code CLI executable, falling back to a bare "claude"."""
    env = os.environ.get("AICHAT_CLAUDE_BIN")
    if env:
        return env

    return shutil.which("claude") or "claude"


@dataclass
class EngineConfig:
    """Limits and timings for the session engine and the subagent watcher."""

    max_messages: int = 200
    max_streaming_content: int = 100_000
    frame_interval: float = 1 / 60  # observer notifications are coalesced per frame
    default_model: str = "sonnet"
    max_saved_per_workspace: int = 50

    watch_interval: float = 2.0
    watch_initial_delay: float = 0.5
    stale_after: float = 10 * 60  # seconds without modification
    tail_bytes: int = 8192
    head_bytes: int = 8192
    min_overlap: int = 12

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config, overriding defaults from AICHAT_* variables."""
        config = cls()
        for name, caster in (
            ("max_messages", int),
            ("max_streaming_content", int),
            ("frame_interval", float),
            ("default_model", str),
            ("max_saved_per_workspace", int),
            ("watch_interval", float),
            ("watch_initial_delay", float),
            ("stale_after", float),
            ("tail_bytes", int),
            ("head_bytes", int),
            ("min_overlap", int),
        ):
            raw = os.environ.get(f"AICHAT_{name.upper()}")
            if raw:
                setattr(config, name, caster(raw))
        return config
