"""Detect interactive prompts and numbered quick-reply choices in agent text."""

import re
from dataclasses import dataclass, field
from typing import Optional

from .core import Message, PromptOption, QuickReply
from .status import strip_ansi

_PERMISSION_PATTERNS = (
    # "Allow Bash(npm test)? (y/n/a)"
    re.compile(r"(?:Allow|Approve)\s+(\w+)\(([^)]+)\)\s*\?\s*\(([yYnNaA/\s]+)\)"),
    re.compile(r"(?:Allow|Do you want to allow|Approve)\s+(.+?)\s*\?\s*\(([yYnNaA][^)]*)\)"),
    re.compile(r"(.+?)\s*\(([yYnNaA][/|][yYnNaA](?:[/|][yYnNaA])?)\)\s*$"),
)
_TOOL_CALL_RE = re.compile(r"(\w+)\((.+)\)")
_NUMBERED_LINE_RE = re.compile(r"^\s*(\d+)[.)]\s+(.+)$")
_YES_NO_RE = re.compile(r"(.+?)\s*[\[(]([yYnN][/|][yYnN])[\])]\s*$")
_INPUT_RE = re.compile(r"^\?\s+(.+?):\s*$")


@dataclass
class DetectedPrompt:
    """A prompt found in non-JSON agent output."""

    prompt_type: str
    message: str
    options: list[PromptOption] = field(default_factory=list)
    tool_name: Optional[str] = None
    tool_input: Optional[str] = None

    def to_event(self, raw_text: str) -> dict:
        """Render as a ``prompt`` stream event."""
        return {
            "type": "prompt",
            "promptType": self.prompt_type,
            "message": self.message,
            "options": [
                {"label": o.label, "value": o.value, "key": o.key} for o in self.options
            ],
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "rawText": raw_text,
        }


def detect_prompt(text: str) -> DetectedPrompt | None:
    """Recognize permission, numbered-choice, yes/no and free-input prompts."""
    clean = strip_ansi(text).strip()
    if len(clean) < 5:
        return None

    for pattern in _PERMISSION_PATTERNS:
        m = pattern.search(clean)
        if not m:
            continue
        groups = m.groups()
        allowed = (groups[2] if len(groups) > 2 else groups[1]).lower()
        options = []
        if "y" in allowed:
            options.append(PromptOption(label="Yes", value="y", key="y"))
        if "n" in allowed:
            options.append(PromptOption(label="No", value="n", key="n"))
        if "a" in allowed:
            options.append(PromptOption(label="Always allow", value="a", key="a"))
        if not options:
            continue

        tool_name = tool_input = None
        if len(groups) > 2:
            tool_name, tool_input = groups[0], groups[1]
        else:
            tool_match = _TOOL_CALL_RE.search(groups[0] or "")
            if tool_match:
                tool_name, tool_input = tool_match.group(1), tool_match.group(2)
        return DetectedPrompt("permission", clean, options, tool_name, tool_input)

    choice = _detect_numbered_prompt(clean)
    if choice is not None:
        return choice

    m = _YES_NO_RE.search(clean)
    if m:
        return DetectedPrompt(
            "yesno",
            m.group(1).strip(),
            [PromptOption("Yes", "y", "y"), PromptOption("No", "n", "n")],
        )

    m = _INPUT_RE.match(clean)
    if m:
        return DetectedPrompt("input", m.group(1).strip(), [])

    return None


def _detect_numbered_prompt(clean: str) -> DetectedPrompt | None:
    lines = clean.split("\n")
    numbered = [(i, _NUMBERED_LINE_RE.match(line)) for i, line in enumerate(lines)]
    numbered = [(i, m) for i, m in numbered if m]
    if len(numbered) < 2 or len(numbered) > 10:
        return None

    last_index = numbered[-1][0]
    trailing = "\n".join(lines[last_index + 1:]).strip()
    if len(trailing) >= 30:
        return None

    options = [PromptOption(m.group(2).strip(), m.group(1), m.group(1)) for _, m in numbered]
    first_index = numbered[0][0]
    message = "\n".join(lines[:first_index]).strip() or "Choose an option"
    return DetectedPrompt("choice", message, options)


def detect_quick_replies(messages: list[Message]) -> list[QuickReply]:
    """Numbered choices near the end of the last assistant message."""
    if not messages or messages[-1].role != "assistant":
        return []

    lines = messages[-1].content.split("\n")
    choices = []
    last_choice_line = -1
    for i, line in enumerate(lines):
        m = _NUMBERED_LINE_RE.match(line)
        if m:
            choices.append(QuickReply(label=m.group(2).strip(), value=m.group(1)))
            last_choice_line = i

    if len(choices) >= 2 and len(lines) - 1 - last_choice_line <= 5:
        return choices
    return []
