"""Decode Claude Code message content into display text and typed blocks.

The same content shape appears in the live stream-json events and in the
JSONL transcripts under ~/.claude/projects, so this decoder serves both.
It never raises: unknown or malformed parts are skipped.
"""

import json

from .core import ContentBlock


def extract_content(content) -> tuple[str, list[ContentBlock]]:
    """Return (display text, blocks) for a message content payload.

    ``content`` is either a plain string or a list of parts. Text parts are
    joined with newlines to form the display text.
    """
    if isinstance(content, str):
        return content, [ContentBlock(type="text", text=content)]

    blocks: list[ContentBlock] = []
    text_parts: list[str] = []

    if not isinstance(content, list):
        return "", blocks

    for part in content:
        if isinstance(part, str):
            text_parts.append(part)
            blocks.append(ContentBlock(type="text", text=part))
            continue
        if not isinstance(part, dict):
            continue

        block = decode_block(part)
        if block is None:
            continue
        if block.type == "text":
            text_parts.append(block.text)
        blocks.append(block)

    return "\n".join(text_parts), blocks


def decode_block(part: dict) -> ContentBlock | None:
    """Decode a single content part, or None for shapes we don't know."""
    part_type = part.get("type")

    if part_type == "text":
        text = part.get("text")
        if isinstance(text, str):
            return ContentBlock(type="text", text=text)

    elif part_type == "tool_use":
        name = part.get("name")
        tool_input = part.get("input")
        block_id = part.get("id")
        return ContentBlock(
            type="tool_use",
            name=name if isinstance(name, str) else "unknown",
            input=tool_input if isinstance(tool_input, dict) else {},
            id=block_id if isinstance(block_id, str) else None,
        )

    elif part_type == "tool_result":
        result = part.get("content")
        if not isinstance(result, str):
            try:
                result = json.dumps(result)
            except (TypeError, ValueError):
                result = str(result)
        return ContentBlock(type="tool_result", content=result)

    elif part_type == "thinking":
        thinking = part.get("thinking")
        if isinstance(thinking, str):
            return ContentBlock(type="thinking", thinking=thinking)

    return None
