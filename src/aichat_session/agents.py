"""Delegation tool detection, subagent naming and display colors."""

# Tools that start a subagent (matched case-insensitively)
DELEGATION_TOOLS = frozenset({"task", "agent", "agents", "delegate_task"})
DELEGATION_PREFIX = "dispatch_agent"

# Tools that probe or cancel an already running subagent
DELEGATION_AUX_TOOLS = frozenset({
    "taskoutput",
    "background_output",
    "taskcancel",
    "background_cancel",
})

NAME_FIELDS = ("subagent_type", "agent_name", "name", "category")
DESCRIPTION_PLACEHOLDER = "Preparing…"
MAX_PROMPT_DESCRIPTION = 120

# Named color keywords as used in agent definitions
AGENT_COLOR_MAP = {
    "blue": "#61afef",
    "purple": "#c678dd",
    "green": "#98c379",
    "yellow": "#e5c07b",
    "cyan": "#56b6c2",
    "orange": "#d19a66",
    "red": "#e06c75",
    "pink": "#e06c95",
    "magenta": "#c678dd",
    "teal": "#56b6c2",
    "lime": "#a9dc76",
    "indigo": "#7c8cf5",
    "brown": "#be5046",
    "white": "#abb2bf",
    "gray": "#7f848e",
    "grey": "#7f848e",
}

_PALETTE = list(dict.fromkeys(AGENT_COLOR_MAP.values()))


def is_delegation_tool(name: str) -> bool:
    lowered = name.lower()
    return lowered in DELEGATION_TOOLS or lowered.startswith(DELEGATION_PREFIX)


def is_delegation_aux_tool(name: str) -> bool:
    return name.lower() in DELEGATION_AUX_TOOLS


def resolve_name(tool_input: dict) -> tuple[str, int] | None:
    """Return (name, rank) from the highest-priority name field present."""
    for rank, key in enumerate(NAME_FIELDS):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value.replace("_", "-"), rank
    return None


def resolve_description(tool_input: dict) -> tuple[str, int] | None:
    """Return (description, rank); prompts are cut to 120 chars."""
    description = tool_input.get("description")
    if isinstance(description, str) and description:
        return description, 0

    prompt = tool_input.get("prompt")
    if isinstance(prompt, str) and prompt:
        if len(prompt) > MAX_PROMPT_DESCRIPTION:
            prompt = prompt[:MAX_PROMPT_DESCRIPTION] + "…"
        return prompt, 1

    task_description = tool_input.get("task_description")
    if isinstance(task_description, str) and task_description:
        return task_description, 2

    return None


def color_for_name(name: str) -> str:
    """Deterministic palette color for a name (32-bit string hash)."""
    h = 0
    for ch in name:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _PALETTE[abs(h) % len(_PALETTE)]


def resolve_agent_color(name: str, agent_colors: dict[str, str] | None = None) -> str:
    """Resolve a subagent color: configured color first, then the name hash.

    ``agent_colors`` maps agent names to a color keyword or hex value.
    Names compare case-insensitively with ``-`` and ``_`` treated alike, and
    a configured name matches when either one ends with the other.
    """
    if agent_colors:
        normalized = name.lower().replace("-", "_")
        for agent_name, color in agent_colors.items():
            candidate = agent_name.lower().replace("-", "_")
            if candidate == normalized or candidate.endswith(normalized) or normalized.endswith(candidate):
                return AGENT_COLOR_MAP.get(color.lower(), color)
    return color_for_name(name)
