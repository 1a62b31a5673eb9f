"""Conversation state machine for streaming Claude Code sessions.

The engine owns every Conversation. Stream events from the gateway are
applied synchronously, one at a time, in arrival order; observers are
notified at most once per frame interval. Control operations (send, abort,
respond, close, history) are coroutines that talk to the gateway.
"""

import asyncio
import functools
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .agents import is_delegation_aux_tool, is_delegation_tool, resolve_agent_color
from .blocks import extract_content
from .config import EngineConfig
from .core import (
    ActivityBatch,
    Conversation,
    Message,
    PendingPrompt,
    PromptOption,
    SavedSession,
    TokenUsage,
)
from .correlator import SubagentCorrelator
from .gateway import SessionGateway
from .prompts import detect_quick_replies
from .status import (
    THINKING,
    WORKING,
    WRITING,
    format_tool_status,
    is_informative,
    sanitize_error,
    status_from_blocks,
    subagent_aux_label,
    summarize_subagents,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Claude Code"
MAX_TITLE = 30


@dataclass
class _WorkspaceSnapshot:
    conversations: list[Conversation] = field(default_factory=list)
    active_id: Optional[str] = None
    saved_sessions: list[SavedSession] = field(default_factory=list)


class SessionEngine:
    """Owns conversations and applies gateway events to them."""

    def __init__(
        self,
        gateway: SessionGateway,
        watcher=None,
        config: EngineConfig | None = None,
        agent_colors: dict[str, str] | None = None,
    ):
        self.gateway = gateway
        self.watcher = watcher
        self.config = config or EngineConfig()
        self.model = self.config.default_model

        self.conversations: list[Conversation] = []
        self.active_id: str | None = None
        self.saved_sessions: list[SavedSession] = []
        self.current_workspace: str | None = None

        self._color = functools.partial(resolve_agent_color, agent_colors=agent_colors or {})
        self._snapshots: dict[str, _WorkspaceSnapshot] = {}
        self._last_meaningful_status: dict[str, str] = {}
        self._watch_owner: str | None = None
        self._conv_seq = itertools.count(1)
        self._msg_seq = itertools.count(1)
        self._subscribers: list[Callable[[], None]] = []
        self._notify_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None

        self._handlers = {
            "assistant": self._on_assistant,
            "content_block_start": self._on_block_start,
            "content_block_delta": self._on_block_delta,
            "content_block_stop": self._on_block_stop,
            "result": self._on_result,
            "system": self._on_system,
            "user": self._on_user,
            "raw": self._on_raw,
            "prompt": self._on_prompt,
            "error": self._on_error,
            "stderr": self._on_error,
        }

    # ── Lifecycle ────────────────────────────────────────────────────

    def listen(self) -> None:
        """Start receiving events and exit notifications from the gateway."""
        if self._unsubscribe is None:
            self._unsubscribe = self.gateway.subscribe(self.handle_event, self.handle_done)

    def unlisten(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stop_watch()

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register an observer called after state changes. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def flush(self) -> None:
        """Deliver a pending change notification now."""
        if self._notify_handle is not None:
            self._notify_handle.cancel()
            self._notify_handle = None
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception:
                logger.exception("State observer failed")

    async def drain(self) -> None:
        """Wait for background persistence to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, conversation_id: str) -> Conversation | None:
        """Find a conversation in the current workspace, then in the others."""
        for conv in self.conversations:
            if conv.id == conversation_id:
                return conv
        for snapshot in self._snapshots.values():
            for conv in snapshot.conversations:
                if conv.id == conversation_id:
                    return conv
        return None

    @property
    def active_conversation(self) -> Conversation | None:
        return self.get(self.active_id) if self.active_id else None

    # ── Conversations ────────────────────────────────────────────────

    def create(self, workspace_path: str | None = None) -> str:
        """Create an empty conversation and make it active."""
        conv = self._new_conversation(workspace_path=workspace_path or self.current_workspace)
        self.conversations.append(conv)
        self.active_id = conv.id
        self._notify()
        return conv.id

    def switch_to(self, conversation_id: str) -> bool:
        if self.get(conversation_id) is None:
            return False
        self.active_id = conversation_id
        self._notify()
        return True

    async def resume(self, saved: SavedSession) -> str:
        """Reopen a saved session with its transcript as message history."""
        for conv in self.conversations:
            if conv.resume_token == saved.session_id:
                self.active_id = conv.id
                self._notify()
                return conv.id

        try:
            messages = await self.gateway.read_transcript(saved.session_id, saved.workspace_path)
        except Exception as e:
            logger.warning("Failed to read transcript %s: %s", saved.session_id, e)
            messages = []

        if not messages:
            messages = [Message(
                id=self._message_id("resume"),
                role="assistant",
                content=f"Resumed session: **{saved.title}**\n\nSend a message to continue.",
                timestamp=saved.last_used,
            )]

        conv = self._new_conversation(
            workspace_path=saved.workspace_path,
            title=saved.title,
            resume_token=saved.session_id,
        )
        conv.messages = messages[-self.config.max_messages:]
        self.conversations.append(conv)
        self.active_id = conv.id
        self.saved_sessions = [s for s in self.saved_sessions if s.session_id != saved.session_id]
        self._notify()
        return conv.id

    async def send(
        self,
        conversation_id: str,
        prompt: str,
        display_content: str | None = None,
        model: str | None = None,
    ) -> bool:
        """Send a user message and start streaming the reply.

        A reply still streaming is committed as a partial message and its
        process aborted first; the new request resumes the same session.
        """
        conv = self.get(conversation_id)
        if conv is None:
            return False

        if conv.is_streaming:
            self._commit_partial(conv)
            self._reset_turn(conv)
            self._stop_watch(conv.id)
            await self._gateway_abort(conv.id)

        conv.quick_replies = []
        self._append_message(conv, Message(
            id=self._message_id("user"),
            role="user",
            content=prompt,
            timestamp=_now(),
            display_content=display_content or None,
        ))
        conv.is_streaming = True
        conv.streaming_content = ""
        conv.streaming_blocks = []
        conv.streaming_status = "Sending…"
        conv.token_usage = None
        self._notify()

        try:
            accepted = await self.gateway.send(
                conv.id,
                prompt,
                conv.workspace_path or "",
                model or self.model,
                conv.resume_token,
            )
        except Exception as e:
            logger.error("Failed to send message for %s: %s", conv.id, e)
            accepted = False

        if not accepted and conv.is_streaming:
            self.handle_done(conv.id, 1)
        return accepted

    async def abort(self, conversation_id: str) -> None:
        """Stop the streaming reply. Calling it again is a no-op."""
        conv = self.get(conversation_id)
        if conv is None or not (conv.is_streaming or conv.pending_prompt):
            return

        self._commit_partial(conv)
        self._reset_turn(conv)
        self._stop_watch(conv.id)
        self._notify()
        await self._gateway_abort(conv.id)

    async def respond(self, conversation_id: str, response: str) -> bool:
        """Answer the pending prompt. Returns False if delivery failed."""
        conv = self.get(conversation_id)
        if conv is None or conv.pending_prompt is None:
            return False

        prompt = conv.pending_prompt
        conv.pending_prompt = None
        conv.streaming_status = "Responding…"
        self._notify()

        try:
            ok = await self.gateway.respond(conv.id, response)
        except Exception as e:
            logger.warning("Failed to respond for %s: %s", conv.id, e)
            ok = False

        if not ok:
            conv.streaming_status = ""
            conv.is_streaming = False
            self._append_message(conv, Message(
                id=self._message_id("error"),
                role="assistant",
                content=f"⚠️ Failed to respond to prompt: {prompt.message}",
                timestamp=_now(),
            ))
            self._notify()
        return ok

    async def close(self, conversation_id: str) -> None:
        """Close a conversation and release everything it holds."""
        conv = self.get(conversation_id)
        if conv is not None:
            if conv.is_streaming:
                await self._gateway_abort(conv.id)
            self._stop_watch(conv.id)
            self._reset_turn(conv)
            conv.messages = []
            conv.quick_replies = []

        try:
            await self.gateway.close(conversation_id)
        except Exception as e:
            logger.warning("Failed to close session %s: %s", conversation_id, e)

        index = next((i for i, c in enumerate(self.conversations) if c.id == conversation_id), -1)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        for snapshot in self._snapshots.values():
            snapshot.conversations = [c for c in snapshot.conversations if c.id != conversation_id]

        if self.active_id == conversation_id:
            if self.conversations:
                self.active_id = self.conversations[min(index, len(self.conversations) - 1)].id
            else:
                self.active_id = None
        self._notify()

    # ── Saved sessions and workspaces ────────────────────────────────

    async def load_saved(self, workspace_path: str) -> list[SavedSession]:
        self.saved_sessions = await self.gateway.list_saved(workspace_path)
        self._notify()
        return self.saved_sessions

    async def delete_saved(self, session_id: str) -> None:
        await self.gateway.delete_saved(session_id)
        self.saved_sessions = [s for s in self.saved_sessions if s.session_id != session_id]
        self._notify()

    def switch_workspace(self, workspace_path: str) -> bool:
        """Park the current workspace's state and restore (or start) another.

        Returns True if the workspace had conversations to restore.
        """
        if self.current_workspace is not None:
            self._snapshots[self.current_workspace] = _WorkspaceSnapshot(
                conversations=self.conversations,
                active_id=self.active_id,
                saved_sessions=self.saved_sessions,
            )

        self.current_workspace = workspace_path
        snapshot = self._snapshots.pop(workspace_path, None) or _WorkspaceSnapshot()
        self.conversations = snapshot.conversations
        self.active_id = snapshot.active_id
        self.saved_sessions = snapshot.saved_sessions
        self._notify()
        return bool(self.conversations)

    async def remove_workspace(self, workspace_path: str) -> None:
        """Abort and close every conversation of a removed workspace."""
        if workspace_path == self.current_workspace:
            doomed = self.conversations
        else:
            snapshot = self._snapshots.get(workspace_path)
            doomed = snapshot.conversations if snapshot else []

        for conv in list(doomed):
            if conv.is_streaming:
                await self.abort(conv.id)
            await self.close(conv.id)

        self._snapshots.pop(workspace_path, None)
        if workspace_path == self.current_workspace:
            self.conversations = []
            self.active_id = None
            self.saved_sessions = []
            self.current_workspace = None
        self._notify()

    # ── Gateway callbacks ────────────────────────────────────────────

    def handle_event(self, conversation_id: str, event: dict) -> None:
        """Apply one stream event. Malformed events are skipped."""
        conv = self.get(conversation_id)
        if conv is None or not isinstance(event, dict):
            return
        # Late output of an aborted or finished turn
        if not conv.is_streaming:
            logger.debug("Dropping %s event for idle %s", event.get("type"), conv.id)
            return

        wrapper = event
        if event.get("type") == "stream_event" and isinstance(event.get("event"), dict):
            event = event["event"]

        for source in (event, wrapper):
            session_id = source.get("sessionId") or source.get("session_id")
            if isinstance(session_id, str) and session_id:
                conv.resume_token = session_id
                break

        handler = self._handlers.get(event.get("type"))
        if handler is not None:
            try:
                handler(conv, event)
            except Exception:
                logger.exception("Failed to apply %s event to %s", event.get("type"), conv.id)
        self._notify()

    def handle_done(self, conversation_id: str, exit_code: int, session_id: str | None = None) -> None:
        """Finish the turn when the agent process exits."""
        conv = self.get(conversation_id)
        if conv is None:
            return

        self._stop_watch(conv.id)
        if session_id:
            conv.resume_token = session_id

        # Aborted turns were already committed
        if conv.is_streaming:
            if conv.streaming_content.strip():
                self._append_message(conv, Message(
                    id=self._message_id("assistant"),
                    role="assistant",
                    content=conv.streaming_content,
                    timestamp=_now(),
                    blocks=list(conv.streaming_blocks) or None,
                ))
            elif exit_code != 0:
                self._append_message(conv, Message(
                    id=self._message_id("error"),
                    role="assistant",
                    content=f"⚠️ Claude Code exited with code {exit_code}",
                    timestamp=_now(),
                ))

        self._reset_turn(conv)
        conv.quick_replies = detect_quick_replies(conv.messages)

        if conv.title == DEFAULT_TITLE:
            first_user = next((m for m in conv.messages if m.role == "user"), None)
            if first_user is not None:
                display = first_user.display_content or first_user.content
                conv.title = display[:MAX_TITLE] + "…" if len(display) > MAX_TITLE else display

        if conv.resume_token and conv.workspace_path:
            self._schedule(self._persist(conv.resume_token, conv.title, conv.workspace_path))

        self._notify()

    def handle_subagent_activity(self, batch: ActivityBatch) -> None:
        """Apply one batch of out-of-band subagent activity."""
        conv = self.get(batch.conversation_id)
        if conv is None or conv.subagents is None or not conv.subagents.has_running():
            return

        updated = False
        for activity in batch.activities:
            if conv.subagents.apply_activity(activity):
                updated = True

        if updated:
            summary = summarize_subagents(conv.active_subagents)
            if summary:
                self._set_status(conv, summary)
            self._notify()

    # ── Event handlers ───────────────────────────────────────────────

    def _on_assistant(self, conv: Conversation, event: dict) -> None:
        message = event.get("message")
        if not isinstance(message, dict) or not message.get("content"):
            return

        text, blocks = extract_content(message["content"])
        conv.streaming_content = text[-self.config.max_streaming_content:]
        conv.streaming_blocks = blocks
        status = status_from_blocks(blocks, text)
        if status:
            self._set_status(conv, status)

        usage = message.get("usage")
        if isinstance(usage, dict):
            previous_cost = conv.token_usage.total_cost_usd if conv.token_usage else 0.0
            conv.token_usage = _usage_from(usage, TokenUsage(total_cost_usd=previous_cost))

        if conv.subagents.observe_snapshot(blocks):
            self._stop_watch(conv.id)

    def _on_block_start(self, conv: Conversation, event: dict) -> None:
        block = event.get("content_block")
        if not isinstance(block, dict):
            return
        index = _block_index(event)
        block_type = block.get("type")
        subagents = conv.subagents

        if block_type == "tool_use" and isinstance(block.get("name"), str):
            name = block["name"]
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
            block_id = block.get("id") if isinstance(block.get("id"), str) else f"sa-{index}"

            if is_delegation_tool(name):
                subagents.start_delegation(block_id, index, name, tool_input)
                self._set_status(conv, format_tool_status(name, tool_input))
            elif is_delegation_aux_tool(name):
                subagents.track_aux(index, name)
                self._set_status(conv, subagent_aux_label(name, tool_input, subagents.agents))
            else:
                subagents.attribute_tool(name, tool_input)
                self._set_status(conv, format_tool_status(name, tool_input))
        elif block_type == "thinking":
            subagents.attribute_status(THINKING)
            self._set_status(conv, THINKING)
        elif block_type == "text":
            subagents.attribute_status(WRITING)
            self._set_status(conv, WRITING)

    def _on_block_delta(self, conv: Conversation, event: dict) -> None:
        delta = event.get("delta")
        if not isinstance(delta, dict):
            return
        delta_type = delta.get("type")

        if delta_type == "text_delta" and isinstance(delta.get("text"), str):
            self._append_content(conv, delta["text"])
            self._set_status(conv, WRITING)
        elif delta_type == "thinking_delta":
            self._set_status(conv, THINKING)
        elif delta_type == "input_json_delta" and isinstance(delta.get("partial_json"), str):
            label = conv.subagents.feed_input(_block_index(event), delta["partial_json"])
            if label:
                self._set_status(conv, label)
            if not conv.streaming_status:
                conv.streaming_status = self._best_status(conv)

    def _on_block_stop(self, conv: Conversation, event: dict) -> None:
        index = _block_index(event)
        if conv.subagents.finish_input(index):
            self._maybe_start_watch(conv)
        conv.subagents.clear_aux(index)
        conv.streaming_status = self._best_status(conv)

    def _on_result(self, conv: Conversation, event: dict) -> None:
        result = event.get("result")
        if isinstance(result, str) and result:
            conv.streaming_content = result[-self.config.max_streaming_content:]

        usage = event.get("usage")
        cost = event.get("total_cost_usd")
        cost = cost if isinstance(cost, (int, float)) else 0
        if isinstance(usage, dict) or cost:
            merged = _usage_from(usage if isinstance(usage, dict) else {}, conv.token_usage or TokenUsage())
            merged.total_cost_usd = cost or merged.total_cost_usd
            conv.token_usage = merged

        conv.streaming_status = ""
        conv.subagents.finish_all()
        conv.subagents.reset()
        self._stop_watch(conv.id)

    def _on_system(self, conv: Conversation, event: dict) -> None:
        conv.streaming_status = "Initializing…"

    def _on_user(self, conv: Conversation, event: dict) -> None:
        conv.streaming_status = "Processing tool results…"

    def _on_raw(self, conv: Conversation, event: dict) -> None:
        text = event.get("text")
        if isinstance(text, str):
            self._append_content(conv, text)

    def _on_prompt(self, conv: Conversation, event: dict) -> None:
        options = []
        for option in event.get("options") or []:
            if isinstance(option, dict) and "label" in option and "value" in option:
                options.append(PromptOption(
                    label=str(option["label"]),
                    value=str(option["value"]),
                    key=option.get("key"),
                ))

        conv.pending_prompt = PendingPrompt(
            id=f"prompt-{next(self._msg_seq)}",
            prompt_type=event.get("promptType") or "yesno",
            message=event.get("message") or event.get("rawText") or "Claude Code needs your input",
            options=options,
            tool_name=event.get("toolName"),
            tool_input=event.get("toolInput"),
            raw_text=event.get("rawText"),
        )
        conv.streaming_status = "Waiting for your response…"

    def _on_error(self, conv: Conversation, event: dict) -> None:
        text = event.get("text")
        clean = sanitize_error(text) if isinstance(text, str) else ""
        if clean:
            conv.streaming_status = clean

    # ── Internals ────────────────────────────────────────────────────

    def _new_conversation(self, **kwargs) -> Conversation:
        conv = Conversation(id=f"claude-{next(self._conv_seq)}", **kwargs)
        conv.subagents = SubagentCorrelator(color_resolver=self._color)
        return conv

    def _message_id(self, suffix: str) -> str:
        return f"msg-{next(self._msg_seq)}-{suffix}"

    def _append_message(self, conv: Conversation, message: Message) -> None:
        conv.messages.append(message)
        if len(conv.messages) > self.config.max_messages:
            conv.messages = conv.messages[-self.config.max_messages:]

    def _append_content(self, conv: Conversation, text: str) -> None:
        conv.streaming_content += text
        if len(conv.streaming_content) > self.config.max_streaming_content:
            conv.streaming_content = conv.streaming_content[-self.config.max_streaming_content:]

    def _commit_partial(self, conv: Conversation) -> None:
        if conv.streaming_content.strip():
            self._append_message(conv, Message(
                id=self._message_id("assistant-partial"),
                role="assistant",
                content=conv.streaming_content,
                timestamp=_now(),
                blocks=list(conv.streaming_blocks) or None,
            ))

    def _reset_turn(self, conv: Conversation) -> None:
        """Clear every transient per-turn field."""
        conv.is_streaming = False
        conv.streaming_content = ""
        conv.streaming_blocks = []
        conv.streaming_status = ""
        conv.pending_prompt = None
        if conv.subagents is not None:
            conv.subagents.reset()
        self._last_meaningful_status.pop(conv.id, None)

    def _set_status(self, conv: Conversation, status: str) -> None:
        conv.streaming_status = status
        if is_informative(status):
            self._last_meaningful_status[conv.id] = status

    def _best_status(self, conv: Conversation) -> str:
        """Subagent summary, else the last meaningful status, else a generic one."""
        summary = summarize_subagents(conv.active_subagents)
        if summary:
            return summary
        return self._last_meaningful_status.get(conv.id) or WORKING

    async def _gateway_abort(self, conversation_id: str) -> None:
        try:
            await self.gateway.abort(conversation_id)
        except Exception as e:
            logger.warning("Failed to abort session %s: %s", conversation_id, e)

    async def _persist(self, session_id: str, title: str, workspace_path: str) -> None:
        try:
            await self.gateway.save_session(session_id, title, workspace_path)
            if workspace_path == self.current_workspace:
                await self.load_saved(workspace_path)
        except Exception as e:
            logger.warning("Failed to save session %s: %s", session_id, e)

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, skipping background save")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _notify(self) -> None:
        """Coalesce change notifications into one per frame interval."""
        if self._notify_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._notify_handle = loop.call_later(self.config.frame_interval, self.flush)

    # ── Subagent watcher ─────────────────────────────────────────────

    def _maybe_start_watch(self, conv: Conversation) -> None:
        if self.watcher is None:
            return
        targets = conv.subagents.watch_targets()
        if not targets or not conv.resume_token or not conv.workspace_path:
            return

        if self._watch_owner is not None:
            if self._watch_owner == conv.id:
                self.watcher.update(targets)
            return

        if self.watcher.start(conv.id, conv.resume_token, conv.workspace_path, targets):
            self._watch_owner = conv.id

    def _stop_watch(self, conversation_id: str | None = None) -> None:
        """Stop the watcher; with an id, only if that conversation owns it."""
        if self._watch_owner is None or self.watcher is None:
            return
        if conversation_id is not None and conversation_id != self._watch_owner:
            return
        self._watch_owner = None
        self.watcher.stop()


def _block_index(event: dict) -> int:
    index = event.get("index")
    return index if isinstance(index, int) else -1


def _usage_from(usage: dict, previous: TokenUsage) -> TokenUsage:
    """Token counts from a usage payload; missing figures keep previous values."""

    def pick(key: str, fallback: int) -> int:
        value = usage.get(key)
        return value if isinstance(value, int) else fallback

    return TokenUsage(
        input_tokens=pick("input_tokens", previous.input_tokens),
        output_tokens=pick("output_tokens", previous.output_tokens),
        cache_read_tokens=pick("cache_read_input_tokens", previous.cache_read_tokens),
        cache_create_tokens=pick("cache_creation_input_tokens", previous.cache_create_tokens),
        total_cost_usd=previous.total_cost_usd,
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)
