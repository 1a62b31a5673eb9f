"""Tests for the command-line interface."""

from unittest.mock import patch

from click.testing import CliRunner

from aichat_session.cli import main
from aichat_session.history import SessionStore

WORKSPACE = "/Users/testuser/dev/myapp"


def test_sessions_lists_saved(tmp_path, monkeypatch):
    store_path = tmp_path / "sessions.json"
    monkeypatch.setenv("AICHAT_STORE_PATH", str(store_path))
    SessionStore(store_path).save("sess-1", "Refactor auth", WORKSPACE)

    result = CliRunner().invoke(main, ["sessions", "--workspace", WORKSPACE])
    assert result.exit_code == 0
    assert "sess-1  Refactor auth" in result.output


def test_sessions_empty(tmp_path, monkeypatch):
    monkeypatch.setenv("AICHAT_STORE_PATH", str(tmp_path / "sessions.json"))
    result = CliRunner().invoke(main, ["sessions", "--workspace", "/nowhere"])
    assert result.exit_code == 0
    assert "No saved sessions for /nowhere" in result.output


def test_transcript(tmp_claude_projects, monkeypatch):
    monkeypatch.setenv("AICHAT_CLAUDE_PATH", str(tmp_claude_projects))
    result = CliRunner().invoke(main, ["transcript", "session-001", "--workspace", WORKSPACE])
    assert result.exit_code == 0
    assert "## user\nHelp me refactor the auth module" in result.output
    assert "[tool: Read]" in result.output
    assert "Tests added." in result.output


def test_transcript_not_found(tmp_claude_projects, monkeypatch):
    monkeypatch.setenv("AICHAT_CLAUDE_PATH", str(tmp_claude_projects))
    result = CliRunner().invoke(main, ["transcript", "missing"])
    assert result.exit_code == 1
    assert "Transcript not found: missing" in result.output


def test_serve_runs_uvicorn():
    with patch("aichat_session.cli.uvicorn.run") as run:
        result = CliRunner().invoke(main, ["serve", "--port", "9000", "--log-level", "debug"])
    assert result.exit_code == 0
    run.assert_called_once_with(
        "aichat_session.server:app", host="127.0.0.1", port=9000, reload=False, log_level="debug"
    )
