"""Session gateway: the boundary between the engine and the agent process."""

import asyncio
import codecs
import json
import logging
import os
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .config import get_claude_cli_path
from .core import Message, SavedSession
from .history import SessionStore, TranscriptReader
from .prompts import detect_prompt
from .status import strip_ansi

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict], None]
DoneCallback = Callable[[str, int, Optional[str]], None]

NON_JSON_DELAY = 0.3  # seconds of quiet before buffered plain text is relayed
ABORT_TIMEOUT = 5.0
READ_CHUNK = 65536


class SessionGateway(ABC):
    """Spawns and controls agent processes; relays their events.

    Listeners registered with ``subscribe`` receive
    ``on_event(conversation_id, event)`` for every stream event and
    ``on_done(conversation_id, exit_code, session_id)`` when a process exits.
    """

    def __init__(self):
        self._listeners: list[tuple[EventCallback, DoneCallback]] = []

    def subscribe(self, on_event: EventCallback, on_done: DoneCallback) -> Callable[[], None]:
        pair = (on_event, on_done)
        self._listeners.append(pair)

        def unsubscribe():
            if pair in self._listeners:
                self._listeners.remove(pair)

        return unsubscribe

    def emit_event(self, conversation_id: str, event: dict) -> None:
        for on_event, _ in list(self._listeners):
            on_event(conversation_id, event)

    def emit_done(self, conversation_id: str, exit_code: int, session_id: str | None) -> None:
        for _, on_done in list(self._listeners):
            on_done(conversation_id, exit_code, session_id)

    @abstractmethod
    async def send(
        self,
        conversation_id: str,
        prompt: str,
        cwd: str,
        model: str,
        resume_token: str | None = None,
    ) -> bool:
        """Start a request. Returns False if it could not be started."""
        ...

    @abstractmethod
    async def abort(self, conversation_id: str) -> bool:
        ...

    @abstractmethod
    async def respond(self, conversation_id: str, response: str) -> bool:
        """Deliver a prompt response to the running process."""
        ...

    @abstractmethod
    async def close(self, conversation_id: str) -> None:
        ...

    @abstractmethod
    async def list_saved(self, workspace_path: str) -> list[SavedSession]:
        ...

    @abstractmethod
    async def save_session(self, session_id: str, title: str, workspace_path: str) -> None:
        ...

    @abstractmethod
    async def read_transcript(self, session_id: str, workspace_path: str | None) -> list[Message]:
        ...

    @abstractmethod
    async def delete_saved(self, session_id: str) -> None:
        ...


def build_cli_args(prompt: str, model: str | None, resume_token: str | None) -> list[str]:
    """Arguments for a non-interactive stream-json run of the Claude CLI."""
    # A leading "-" would be parsed as an option
    safe_prompt = "\n" + prompt if prompt.startswith("-") else prompt
    args = [
        "-p", safe_prompt,
        "--output-format", "stream-json",
        "--verbose",
        "--include-partial-messages",
    ]
    if model:
        args += ["--model", model]
    if resume_token:
        args += ["--resume", resume_token]
    return args


@dataclass
class _CliSession:
    cwd: str
    session_id: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = None
    task: Optional[asyncio.Task] = None


class ClaudeCliGateway(SessionGateway):
    """Runs one Claude Code CLI process per conversation turn."""

    def __init__(
        self,
        store: SessionStore | None = None,
        reader: TranscriptReader | None = None,
        cli_path: str | None = None,
    ):
        super().__init__()
        self.store = store or SessionStore()
        self.reader = reader or TranscriptReader()
        self.cli_path = cli_path or get_claude_cli_path()
        self._sessions: dict[str, _CliSession] = {}

    async def send(self, conversation_id, prompt, cwd, model, resume_token=None) -> bool:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = self._sessions[conversation_id] = _CliSession(cwd=cwd)
        if resume_token and not session.session_id:
            session.session_id = resume_token

        # A replaced process must not report done for the new turn
        old = session.process
        session.process = None
        if old is not None and old.returncode is None:
            _kill(old)

        args = build_cli_args(prompt, model, session.session_id)
        effective_cwd = cwd if cwd and os.path.isdir(cwd) else str(Path.home())
        logger.info("Spawning Claude Code for %s in %s", conversation_id, effective_cwd)

        try:
            process = await asyncio.create_subprocess_exec(
                self.cli_path,
                *args,
                cwd=effective_cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to spawn Claude Code for %s: %s", conversation_id, e)
            self.emit_event(conversation_id, {"type": "error", "text": str(e)})
            self.emit_done(conversation_id, 1, session.session_id)
            return False

        session.process = process
        session.task = asyncio.create_task(self._pump(conversation_id, session, process))
        return True

    async def abort(self, conversation_id) -> bool:
        session = self._sessions.get(conversation_id)
        process = session.process if session else None
        if process is None or process.returncode is not None:
            return False

        try:
            process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False

        try:
            await asyncio.wait_for(asyncio.shield(session.task), timeout=ABORT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Claude Code for %s ignored SIGINT, killing", conversation_id)
            _kill(process)
            await session.task
        return True

    async def respond(self, conversation_id, response) -> bool:
        session = self._sessions.get(conversation_id)
        process = session.process if session else None
        if process is None or process.returncode is not None or process.stdin is None:
            logger.warning("No running Claude Code process for %s", conversation_id)
            return False

        try:
            process.stdin.write((response + "\n").encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("Failed to write response for %s: %s", conversation_id, e)
            return False
        return True

    async def close(self, conversation_id) -> None:
        session = self._sessions.pop(conversation_id, None)
        if session is None:
            return
        process, session.process = session.process, None
        if process is not None and process.returncode is None:
            _kill(process)

    async def shutdown(self) -> None:
        """Kill every running process."""
        for conversation_id in list(self._sessions):
            await self.close(conversation_id)

    async def list_saved(self, workspace_path) -> list[SavedSession]:
        return await asyncio.to_thread(self.store.list_saved, workspace_path)

    async def save_session(self, session_id, title, workspace_path) -> None:
        await asyncio.to_thread(self.store.save, session_id, title, workspace_path)

    async def read_transcript(self, session_id, workspace_path) -> list[Message]:
        return await asyncio.to_thread(self.reader.read_transcript, session_id, workspace_path)

    async def delete_saved(self, session_id) -> None:
        await asyncio.to_thread(self.store.delete, session_id)

    # ── Private helpers ──────────────────────────────────────────────

    async def _pump(self, conversation_id: str, session: _CliSession, process) -> None:
        try:
            await asyncio.gather(
                self._read_stdout(conversation_id, session, process),
                self._read_stderr(conversation_id, session, process),
            )
        except Exception:
            logger.exception("Reading Claude Code output for %s failed", conversation_id)
            _kill(process)
        exit_code = await process.wait()
        logger.info("Claude Code for %s exited with %s", conversation_id, exit_code)

        if session.process is process:
            session.process = None
            self.emit_done(conversation_id, exit_code, session.session_id)

    async def _read_stdout(self, conversation_id: str, session: _CliSession, process) -> None:
        """Split stdout into lines: JSON lines are events, the rest plain text."""
        loop = asyncio.get_running_loop()
        pending: list[str] = []
        timer: asyncio.TimerHandle | None = None

        def flush_text():
            nonlocal timer
            if timer is not None:
                timer.cancel()
                timer = None
            if pending and session.process is process:
                self._relay_text(conversation_id, "\n".join(pending))
            pending.clear()

        def handle_line(line: str):
            nonlocal timer
            line = line.rstrip("\r")
            if not line.strip():
                return
            event = _parse_event(line)
            if event is None:
                pending.append(line)
                if timer is not None:
                    timer.cancel()
                timer = loop.call_later(NON_JSON_DELAY, flush_text)
                return
            flush_text()
            session_id = event.get("sessionId") or event.get("session_id")
            if isinstance(session_id, str) and session_id:
                session.session_id = session_id
            if session.process is process:
                self.emit_event(conversation_id, event)

        async for line in _iter_lines(process.stdout):
            handle_line(line)
        flush_text()

    async def _read_stderr(self, conversation_id: str, session: _CliSession, process) -> None:
        async for line in _iter_lines(process.stderr):
            text = line.rstrip("\r")
            if text.strip() and session.process is process:
                self.emit_event(conversation_id, {"type": "stderr", "text": text})

    def _relay_text(self, conversation_id: str, text: str) -> None:
        prompt = detect_prompt(text)
        if prompt is not None:
            logger.info("Prompt detected for %s: %s", conversation_id, prompt.prompt_type)
            self.emit_event(conversation_id, prompt.to_event(strip_ansi(text).strip()))
        elif strip_ansi(text).strip():
            self.emit_event(conversation_id, {"type": "stderr", "text": text})


async def _iter_lines(stream):
    """Yield decoded lines from a byte stream, whatever their length.

    ``StreamReader.readline`` fails on lines over its 64 KiB limit, so the
    stream is read in chunks and split here instead.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer


def _parse_event(line: str) -> dict | None:
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def _kill(process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
