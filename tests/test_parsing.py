"""Tests for agent output parsing and tool result normalization."""

import pytest

from agentc2.workflows.parsing import (
    OutputParseError,
    parse_agent_json_output,
    schema_errors,
    unwrap_tool_result,
    validate_agent_output,
)


class TestParseAgentJsonOutput:
    def test_plain_object(self):
        assert parse_agent_json_output('{"a": 1}', "s1") == {"a": 1}

    def test_code_fence(self):
        text = '```json\n{"priority": "high", "tags": ["a"]}\n```'
        assert parse_agent_json_output(text, "s1") == {"priority": "high", "tags": ["a"]}

    def test_prose_around_json(self):
        text = 'Sure! Here is the result: {"ok": true, "note": "braces } in strings"} Thanks.'
        assert parse_agent_json_output(text, "s1") == {"ok": True, "note": "braces } in strings"}

    def test_array(self):
        assert parse_agent_json_output("Result: [1, 2, 3]", "s1") == [1, 2, 3]

    def test_empty_output(self):
        with pytest.raises(OutputParseError, match=r"\[Step: s1\] Agent output is empty"):
            parse_agent_json_output("", "s1")

    def test_no_json(self):
        with pytest.raises(OutputParseError, match="No JSON object or array found"):
            parse_agent_json_output("just words", "s1")

    def test_truncated(self):
        with pytest.raises(OutputParseError, match="Incomplete JSON"):
            parse_agent_json_output('{"a": [1, 2', "s1")

    def test_malformed(self):
        with pytest.raises(OutputParseError, match="Failed to parse JSON"):
            parse_agent_json_output("{a: 1}", "s1")


class TestSchemaValidation:
    schema = {
        "type": "object",
        "properties": {"priority": {"enum": ["low", "high"]}, "score": {"type": "number"}},
        "required": ["priority"],
    }

    def test_valid_output_passes_through(self):
        output = {"priority": "low", "score": 0.5}
        assert validate_agent_output(output, self.schema, "s1") is output

    def test_no_schema(self):
        assert validate_agent_output([1], None, "s1") == [1]

    def test_violations_listed(self):
        with pytest.raises(OutputParseError) as exc_info:
            validate_agent_output({"priority": "urgent", "score": "x"}, self.schema, "triage")
        message = str(exc_info.value)
        assert message.startswith("[Step: triage]")
        assert "priority:" in message
        assert "score:" in message

    def test_schema_errors_root(self):
        assert schema_errors("text", {"type": "object"}) == ["(root): 'text' is not of type 'object'"]

    def test_invalid_schema(self):
        problems = schema_errors({}, {"type": "not-a-type"})
        assert len(problems) == 1
        assert problems[0].startswith("(schema):")


class TestUnwrapToolResult:
    def test_mcp_json_text(self):
        result = {"content": [{"type": "text", "text": '{"rows": 3}'}]}
        assert unwrap_tool_result(result) == {"rows": 3}

    def test_mcp_plain_text(self):
        result = {"content": [{"type": "image"}, {"type": "text", "text": "done"}]}
        assert unwrap_tool_result(result) == "done"

    def test_passthrough(self):
        assert unwrap_tool_result({"rows": 3}) == {"rows": 3}
        assert unwrap_tool_result("x") == "x"
        empty = {"content": [{"type": "text", "text": ""}]}
        assert unwrap_tool_result(empty) is empty
