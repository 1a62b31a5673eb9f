"""Tests for message content decoding."""

from aichat_session.blocks import extract_content


class TestExtractContent:
    def test_plain_string_is_one_text_block(self):
        text, blocks = extract_content("Hello there")
        assert text == "Hello there"
        assert len(blocks) == 1
        assert blocks[0].type == "text"
        assert blocks[0].text == "Hello there"

    def test_mixed_parts(self):
        text, blocks = extract_content([
            {"type": "thinking", "thinking": "Plan first"},
            {"type": "text", "text": "Reading the file."},
            {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "/a.py"}},
            {"type": "tool_result", "content": "print('a')"},
            {"type": "text", "text": "Done."},
        ])
        assert text == "Reading the file.\nDone."
        assert [b.type for b in blocks] == ["thinking", "text", "tool_use", "tool_result", "text"]
        assert blocks[0].thinking == "Plan first"
        assert blocks[2].name == "Read"
        assert blocks[2].input == {"file_path": "/a.py"}
        assert blocks[2].id == "toolu_1"
        assert blocks[3].content == "print('a')"

    def test_bare_strings_in_list(self):
        text, blocks = extract_content(["one", {"type": "text", "text": "two"}])
        assert text == "one\ntwo"
        assert len(blocks) == 2

    def test_non_string_tool_result_is_json_encoded(self):
        _, blocks = extract_content([
            {"type": "tool_result", "content": [{"type": "text", "text": "out"}]},
        ])
        assert blocks[0].content == '[{"type": "text", "text": "out"}]'

    def test_unknown_and_malformed_parts_are_skipped(self):
        text, blocks = extract_content([
            {"type": "image", "source": {}},
            {"type": "text", "text": 42},
            {"type": "thinking"},
            None,
            17,
            {"no_type": True},
            {"type": "text", "text": "kept"},
        ])
        assert text == "kept"
        assert len(blocks) == 1

    def test_tool_use_with_bad_fields(self):
        _, blocks = extract_content([{"type": "tool_use", "name": None, "input": "oops"}])
        assert blocks[0].name == "unknown"
        assert blocks[0].input == {}
        assert blocks[0].id is None

    def test_unsupported_payloads(self):
        assert extract_content(None) == ("", [])
        assert extract_content({"type": "text", "text": "x"}) == ("", [])
        assert extract_content(123) == ("", [])
