"""Core data models for aichat-session."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .correlator import SubagentCorrelator


@dataclass
class ContentBlock:
    """One typed piece of message content."""

    type: str  # "text" | "tool_use" | "tool_result" | "thinking"
    text: str = ""
    name: str = ""  # tool name for tool_use
    input: dict = field(default_factory=dict)
    content: str = ""  # for tool_result
    thinking: str = ""
    id: Optional[str] = None  # stream block id for tool_use, when known


@dataclass
class Message:
    """A finalized message in a conversation."""

    id: str
    role: str  # "user" | "assistant"
    content: str
    timestamp: datetime
    blocks: Optional[list[ContentBlock]] = None
    display_content: Optional[str] = None  # short label shown instead of the full prompt


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0
    total_cost_usd: float = 0.0


@dataclass
class PromptOption:
    label: str
    value: str
    key: Optional[str] = None


@dataclass
class PendingPrompt:
    """A blocking question from the agent waiting for the user."""

    id: str
    prompt_type: str  # "permission" | "yesno" | "choice" | "input"
    message: str
    options: list[PromptOption] = field(default_factory=list)
    tool_name: Optional[str] = None
    tool_input: Optional[str] = None
    raw_text: Optional[str] = None


@dataclass
class QuickReply:
    label: str
    value: str


@dataclass
class SubagentInfo:
    """A delegated sub-task observed in the agent stream."""

    id: str  # stream block id, or "sa-<index>" when only the index is known
    block_index: int
    order: int  # monotonic start order within the conversation
    name: str
    color: str
    description: str
    nested_status: str
    started_at: datetime
    tools_used: list[str] = field(default_factory=list)
    nested_tool_name: Optional[str] = None
    task_id: Optional[str] = None
    finished: bool = False
    # Priority of the input field the name/description came from (lower wins)
    name_rank: int = field(default=99, repr=False)
    description_rank: int = field(default=99, repr=False)


@dataclass
class SavedSession:
    """A resumable session record, keyed by the agent's session id."""

    session_id: str
    title: str
    workspace_path: str
    last_used: datetime


@dataclass(frozen=True)
class WatchTarget:
    """A sub-task the watcher tries to match transcript files against."""

    name: str
    description: str
    task_id: Optional[str] = None


@dataclass(frozen=True)
class SubagentActivity:
    source_id: str  # transcript file stem
    latest_status: str
    latest_tool: Optional[str] = None
    matched_name: Optional[str] = None
    matched_task_id: Optional[str] = None


@dataclass(frozen=True)
class ActivityBatch:
    """All activity found in one watcher poll cycle."""

    conversation_id: str
    activities: tuple[SubagentActivity, ...]


@dataclass
class Conversation:
    """Per-conversation state owned by the session engine."""

    id: str
    title: str = "Claude Code"
    workspace_path: Optional[str] = None
    resume_token: Optional[str] = None  # agent session id used for --resume
    messages: list[Message] = field(default_factory=list)
    is_streaming: bool = False
    streaming_content: str = ""
    streaming_blocks: list[ContentBlock] = field(default_factory=list)
    streaming_status: str = ""
    pending_prompt: Optional[PendingPrompt] = None
    quick_replies: list[QuickReply] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None
    subagents: Optional["SubagentCorrelator"] = field(default=None, repr=False)

    @property
    def active_subagents(self) -> list[SubagentInfo]:
        if self.subagents is None:
            return []
        return self.subagents.agents

    @property
    def state(self) -> str:
        """One of "idle", "streaming" or "awaiting_response"."""
        if self.pending_prompt is not None:
            return "awaiting_response"
        if self.is_streaming:
            return "streaming"
        return "idle"
