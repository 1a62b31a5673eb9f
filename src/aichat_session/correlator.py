"""Subagent correlation for one conversation.

Delegated sub-tasks reach us through two event shapes for the same logical
block: an incremental ``content_block_start`` carrying the stream block id,
and later full ``assistant`` snapshots where only the block position (and
usually the id) is known. Entries live in one table (``agents``) indexed by
both keys, so either shape resolves to the same SubagentInfo.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .agents import (
    DESCRIPTION_PLACEHOLDER,
    is_delegation_aux_tool,
    is_delegation_tool,
    resolve_agent_color,
    resolve_description,
    resolve_name,
)
from .core import ContentBlock, SubagentActivity, SubagentInfo, WatchTarget
from .status import format_tool_status, subagent_aux_label

logger = logging.getLogger(__name__)

STARTING = "Starting…"
EXECUTING = "Executing…"

_TASK_ID_RE = re.compile(r"task[_-]?id[\"\s:]+[\"']?([a-f0-9]{6,12})", re.IGNORECASE)
_CLOSED_TASK_ID_RE = re.compile(r"\"task_id\"\s*:\s*\"([a-f0-9]+)\"")


def parse_partial_json(text: str) -> dict | None:
    """Best-effort parse of a JSON object that is still streaming in.

    Tries closing the object, then closing an open string and the object.
    """
    for suffix in ("}", '"}'):
        try:
            value = json.loads(text + suffix)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


def _parse_streamed(text: str) -> dict | None:
    """Parse accumulated tool input, complete or still streaming.

    A task id is only taken from a partial parse once its string is closed,
    since the fallback suffix would hand back a truncated id.
    """
    try:
        value = json.loads(text)
    except ValueError:
        value = parse_partial_json(text)
        if value is not None and "task_id" in value:
            match = _CLOSED_TASK_ID_RE.search(text)
            value["task_id"] = match.group(1) if match else None
    return value if isinstance(value, dict) else None


def _is_synthetic(block_id: str | None) -> bool:
    return not block_id or block_id.startswith("sa-")


@dataclass
class _PendingInput:
    slot: int
    text: str = ""


@dataclass
class _PendingAux:
    tool_name: str
    text: str = ""


class SubagentCorrelator:
    """Tracks the subagents of one conversation."""

    def __init__(self, color_resolver: Callable[[str], str] = resolve_agent_color):
        self._color = color_resolver
        self.agents: list[SubagentInfo] = []
        self._by_block_id: dict[str, int] = {}
        self._by_index: dict[int, int] = {}
        self._next_order = 0
        self._pending_input: dict[int, _PendingInput] = {}
        self._pending_aux: dict[int, _PendingAux] = {}

    # ── Lookup ───────────────────────────────────────────────────────

    def find(self, block_id: str | None, block_index: int) -> SubagentInfo | None:
        """Find a known subagent by stream block id or by block index."""
        if block_id and block_id in self._by_block_id:
            return self.agents[self._by_block_id[block_id]]

        slot = self._by_index.get(block_index)
        if slot is None:
            return None
        agent = self.agents[slot]
        # Two different real ids at the same index are two different blocks
        if not _is_synthetic(block_id) and not _is_synthetic(agent.id):
            return None
        if block_id:
            self._by_block_id[block_id] = slot
        return agent

    def running(self) -> list[SubagentInfo]:
        return [a for a in self.agents if not a.finished]

    def has_running(self) -> bool:
        return any(not a.finished for a in self.agents)

    def last_running(self) -> SubagentInfo | None:
        """The most recently started unfinished subagent."""
        best = None
        for agent in self.agents:
            if not agent.finished and (best is None or agent.order > best.order):
                best = agent
        return best

    def watch_targets(self) -> list[WatchTarget]:
        return [
            WatchTarget(name=a.name, description=a.description, task_id=a.task_id)
            for a in self.running()
        ]

    # ── Incremental stream events ────────────────────────────────────

    def start_delegation(
        self, block_id: str, block_index: int, tool_name: str, tool_input: dict
    ) -> SubagentInfo | None:
        """Register a delegation block seen in ``content_block_start``.

        Returns the new entry, or None if the block was already known.
        Its input usually arrives later as ``input_json_delta`` fragments.
        """
        if self.find(block_id, block_index) is not None:
            return None
        agent = self._register(block_id, block_index, tool_name, tool_input, STARTING)
        self._pending_input[block_index] = _PendingInput(slot=self._slot_of(agent))
        return agent

    def track_aux(self, block_index: int, tool_name: str) -> None:
        self._pending_aux[block_index] = _PendingAux(tool_name=tool_name)

    def attribute_tool(self, tool_name: str, tool_input: dict) -> SubagentInfo | None:
        """Credit a plain tool call to the most recently started subagent."""
        target = self.last_running()
        if target is None:
            return None
        target.nested_status = format_tool_status(tool_name, tool_input)
        target.nested_tool_name = tool_name
        if tool_name not in target.tools_used:
            target.tools_used.append(tool_name)
        return target

    def attribute_status(self, status: str) -> SubagentInfo | None:
        target = self.last_running()
        if target is not None:
            target.nested_status = status
            target.nested_tool_name = None
        return target

    def feed_input(self, block_index: int, fragment: str) -> str | None:
        """Accumulate a tool-input fragment for the block at ``block_index``.

        Returns a status line when the fragment belongs to a status/cancel
        probe whose input could be parsed, otherwise None.
        """
        pending = self._pending_input.get(block_index)
        if pending is not None:
            pending.text += fragment
            parsed = _parse_streamed(pending.text)
            if parsed is not None:
                self._apply_input(self.agents[pending.slot], parsed)

        aux = self._pending_aux.get(block_index)
        if aux is None:
            return None
        aux.text += fragment
        parsed = _parse_streamed(aux.text)
        if parsed is None:
            return None
        self._link_task_id(parsed.get("task_id"))
        return subagent_aux_label(aux.tool_name, parsed, self.agents)

    def finish_input(self, block_index: int) -> bool:
        """Final parse of a delegation block's input when the block closes.

        Returns True if the block was a tracked delegation block.
        """
        pending = self._pending_input.pop(block_index, None)
        if pending is None:
            return False

        agent = self.agents[pending.slot]
        try:
            full_input = json.loads(pending.text)
        except ValueError:
            logger.debug("Incomplete subagent input at block %d", block_index)
        else:
            if isinstance(full_input, dict):
                self._apply_input(agent, full_input)
        if not agent.finished:
            agent.nested_status = EXECUTING
        return True

    def clear_aux(self, block_index: int) -> None:
        self._pending_aux.pop(block_index, None)

    # ── Full snapshots ───────────────────────────────────────────────

    def observe_snapshot(self, blocks: list[ContentBlock]) -> bool:
        """Detect delegation blocks in a snapshot and check for completion.

        Returns True when this snapshot finished every running subagent.
        """
        for i, block in enumerate(blocks):
            if block.type != "tool_use" or not is_delegation_tool(block.name):
                continue

            block_id = block.id or f"sa-{i}"
            agent = self.find(block_id, i)
            if agent is None:
                agent = self._register(block_id, i, block.name, block.input, EXECUTING)
            elif block.input:
                self._apply_input(agent, block.input)

            if not agent.task_id and i + 1 < len(blocks) and blocks[i + 1].type == "tool_result":
                match = _TASK_ID_RE.search(blocks[i + 1].content)
                if match:
                    agent.task_id = match.group(1)

        return self._detect_finished(blocks)

    def _detect_finished(self, blocks: list[ContentBlock]) -> bool:
        running = self.running()
        if not running:
            return False

        last_agent_block = -1
        for i, block in enumerate(blocks):
            if block.type == "tool_use" and (
                is_delegation_tool(block.name) or is_delegation_aux_tool(block.name)
            ):
                last_agent_block = i

        results = 0
        for block in blocks[last_agent_block + 1:]:
            if block.type == "tool_result":
                results += 1
            elif block.type == "text":
                # Text after the delegation blocks means the turn moved on
                results += len(running)

        if results < len(running):
            return False
        self.finish_all()
        return True

    def finish_all(self) -> None:
        for agent in self.agents:
            agent.finished = True
        self._pending_input.clear()
        self._pending_aux.clear()

    def reset(self) -> None:
        """Drop every subagent and all pending input (end of turn)."""
        self.agents = []
        self._by_block_id.clear()
        self._by_index.clear()
        self._pending_input.clear()
        self._pending_aux.clear()

    # ── Out-of-band activity ─────────────────────────────────────────

    def apply_activity(self, activity: SubagentActivity) -> bool:
        """Apply one watcher activity. Returns True if an agent changed."""
        running = self.running()
        target = None
        if activity.matched_name:
            target = next((a for a in running if a.name == activity.matched_name), None)
        if target is None and activity.matched_task_id:
            target = next((a for a in running if a.task_id == activity.matched_task_id), None)
        if target is None and len(running) == 1:
            target = running[0]

        if target is None or not activity.latest_status:
            return False
        if activity.latest_status == target.nested_status:
            return False

        target.nested_status = activity.latest_status
        target.nested_tool_name = activity.latest_tool
        if activity.latest_tool and activity.latest_tool not in target.tools_used:
            target.tools_used.append(activity.latest_tool)
        return True

    # ── Internals ────────────────────────────────────────────────────

    def _register(
        self, block_id: str, block_index: int, tool_name: str, tool_input: dict, status: str
    ) -> SubagentInfo:
        name = resolve_name(tool_input)
        description = resolve_description(tool_input)
        display_name = name[0] if name else tool_name

        agent = SubagentInfo(
            id=block_id,
            block_index=block_index,
            order=self._next_order,
            name=display_name,
            color=self._color(display_name),
            description=description[0] if description else DESCRIPTION_PLACEHOLDER,
            nested_status=status,
            started_at=datetime.now(timezone.utc),
        )
        if name:
            agent.name_rank = name[1]
        if description:
            agent.description_rank = description[1]
        task_id = tool_input.get("task_id")
        if isinstance(task_id, str) and task_id:
            agent.task_id = task_id

        self._next_order += 1
        self.agents.append(agent)
        slot = len(self.agents) - 1
        self._by_block_id[block_id] = slot
        self._by_index[block_index] = slot
        return agent

    def _slot_of(self, agent: SubagentInfo) -> int:
        return self._by_block_id[agent.id]

    def _apply_input(self, agent: SubagentInfo, data: dict) -> None:
        """Upgrade name/description from parsed input, never downgrading.

        A value replaces the current one only if it comes from a field of
        equal or higher priority and, for equal priority, is not shorter
        (streamed strings only grow).
        """
        name = resolve_name(data)
        if name and _is_upgrade(name, agent.name, agent.name_rank):
            agent.name, agent.name_rank = name
            agent.color = self._color(agent.name)

        description = resolve_description(data)
        if description and _is_upgrade(description, agent.description, agent.description_rank):
            agent.description, agent.description_rank = description

        task_id = data.get("task_id")
        if isinstance(task_id, str) and task_id and not agent.task_id:
            agent.task_id = task_id

    def _link_task_id(self, task_id) -> None:
        """Give a probed task id to the first running agent without one."""
        if not isinstance(task_id, str) or not task_id or not self.agents:
            return
        if any(a.task_id == task_id for a in self.agents):
            return
        unlinked = next((a for a in self.agents if not a.task_id and not a.finished), None)
        if unlinked is not None:
            unlinked.task_id = task_id


def _is_upgrade(candidate: tuple[str, int], current: str, current_rank: int) -> bool:
    value, rank = candidate
    if rank < current_rank:
        return True
    return rank == current_rank and value != current and len(value) >= len(current)
