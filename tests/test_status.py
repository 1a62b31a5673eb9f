"""Tests for status lines, delegation detection and agent colors."""

from datetime import datetime, timezone

from aichat_session.agents import (
    AGENT_COLOR_MAP,
    color_for_name,
    is_delegation_aux_tool,
    is_delegation_tool,
    resolve_agent_color,
    resolve_description,
    resolve_name,
)
from aichat_session.core import ContentBlock, SubagentInfo
from aichat_session.status import (
    format_tool_status,
    sanitize_error,
    status_from_blocks,
    subagent_aux_label,
    summarize_subagents,
)


def _agent(name, status="Executing…", finished=False, task_id=None, order=0):
    return SubagentInfo(
        id=f"toolu_{name}",
        block_index=order,
        order=order,
        name=name,
        color="#fff",
        description="",
        nested_status=status,
        started_at=datetime.now(timezone.utc),
        finished=finished,
        task_id=task_id,
    )


class TestFormatToolStatus:
    def test_label_and_detail(self):
        assert format_tool_status("Bash", {"command": "npm test"}) == "Running command: npm test"
        assert format_tool_status("Read", {"file_path": "/src/a.ts"}) == "Reading file: /src/a.ts"

    def test_case_insensitive_label(self):
        assert format_tool_status("GREP", {"pattern": "TODO"}) == "Searching: TODO"

    def test_detail_priority(self):
        status = format_tool_status("Grep", {"path": "/src", "pattern": "foo", "command": "ls"})
        assert status == "Searching: ls"

    def test_long_detail_truncated_to_60(self):
        status = format_tool_status("Bash", {"command": "x" * 100})
        assert status == "Running command: " + "x" * 60

    def test_unknown_tool_without_detail(self):
        assert format_tool_status("mcp__db__query", {}) == "mcp__db__query"
        assert format_tool_status("Read", None) == "Reading file"


class TestSummarizeSubagents:
    def test_empty_when_nothing_running(self):
        assert summarize_subagents([]) == ""
        assert summarize_subagents([_agent("explore", finished=True)]) == ""

    def test_informative_status_of_first_running(self):
        agents = [_agent("done", "Reading file: a", finished=True), _agent("explore", "Searching: TODO")]
        assert summarize_subagents(agents) == "explore: Searching: TODO"

    def test_single_agent_placeholder(self):
        assert summarize_subagents([_agent("explore", "Starting…")]) == "explore working…"

    def test_agent_count(self):
        agents = [_agent("a", "Executing…"), _agent("b", "Processing…"), _agent("c", "Preparing…")]
        assert summarize_subagents(agents) == "3 agents working…"


class TestAuxLabel:
    def test_waiting_by_task_id(self):
        agents = [_agent("a", task_id="abc123"), _agent("b", task_id="def456")]
        assert subagent_aux_label("TaskOutput", {"task_id": "def456"}, agents) == "Waiting for b"

    def test_checking_when_not_blocking(self):
        agents = [_agent("solo")]
        assert subagent_aux_label("TaskOutput", {"block": False}, agents) == "Checking solo"

    def test_cancel(self):
        assert subagent_aux_label("TaskCancel", {}, []) == "Cancelling subagent"


class TestStatusFromBlocks:
    def test_fallback_chain(self):
        tool = ContentBlock(type="tool_use", name="Bash", input={"command": "ls"})
        thinking = ContentBlock(type="thinking", thinking="hmm")
        text = ContentBlock(type="text", text="hi")
        assert status_from_blocks([text, tool], "hi") == "Running command: ls"
        assert status_from_blocks([thinking], "") == "Thinking…"
        assert status_from_blocks([text], "hi") == "Writing…"
        assert status_from_blocks([], "") is None

    def test_sanitize_error(self):
        assert sanitize_error("\x1b[31mError:\x1b[0m " + "e" * 200) == ("Error: " + "e" * 200)[:80]
        assert sanitize_error("   \n") == ""


class TestDelegationTools:
    def test_delegation_names(self):
        for name in ("Task", "agent", "Agents", "delegate_task", "dispatch_agent_research"):
            assert is_delegation_tool(name)
        assert not is_delegation_tool("Bash")
        assert not is_delegation_tool("TaskOutput")

    def test_aux_names(self):
        for name in ("TaskOutput", "background_output", "TaskCancel", "background_cancel"):
            assert is_delegation_aux_tool(name)
        assert not is_delegation_aux_tool("Task")

    def test_name_priority(self):
        assert resolve_name({"name": "n", "subagent_type": "code_reviewer"}) == ("code-reviewer", 0)
        assert resolve_name({"category": "deep_work", "agent_name": "scout"}) == ("scout", 1)
        assert resolve_name({"category": "deep_work"}) == ("deep-work", 3)
        assert resolve_name({"prompt": "x"}) is None

    def test_description_priority(self):
        assert resolve_description({"description": "Find bugs", "prompt": "p"}) == ("Find bugs", 0)
        long_prompt = "p" * 200
        assert resolve_description({"prompt": long_prompt}) == ("p" * 120 + "…", 1)
        assert resolve_description({"task_description": "t"}) == ("t", 2)
        assert resolve_description({}) is None


class TestAgentColors:
    def test_hash_color_is_stable(self):
        assert color_for_name("explore") == color_for_name("explore")
        assert color_for_name("explore") in AGENT_COLOR_MAP.values()

    def test_configured_keyword(self):
        assert resolve_agent_color("code-reviewer", {"code_reviewer": "green"}) == AGENT_COLOR_MAP["green"]

    def test_configured_hex_and_suffix_match(self):
        assert resolve_agent_color("reviewer", {"my-reviewer": "#123456"}) == "#123456"

    def test_unconfigured_falls_back_to_hash(self):
        assert resolve_agent_color("explore", {"other": "red"}) == color_for_name("explore")
