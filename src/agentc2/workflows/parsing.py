"""Normalizing what tools and agents hand back to the workflow runtime."""

from __future__ import annotations

import json
import re
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

_OPEN_FENCE_RE = re.compile(r"^```(?:json|javascript|js)?\s*", re.IGNORECASE)
_CLOSE_FENCE_RE = re.compile(r"\s*```\s*$")


class OutputParseError(Exception):
    """Raised when agent output is not the JSON the step asked for."""

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(f"[Step: {step_id}] {message}")
        self.step_id = step_id


def _preview(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def unwrap_tool_result(result: Any) -> Any:
    """Unwrap MCP-style ``{"content": [{"type": "text", "text": ...}]}`` results.

    The first text entry is JSON-decoded when possible, otherwise returned
    as text. Anything else passes through untouched.
    """
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        for entry in result["content"]:
            if (
                isinstance(entry, dict)
                and entry.get("type") == "text"
                and isinstance(entry.get("text"), str)
            ):
                text = entry["text"]
                if not text:
                    break
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    return text
    return result


def _find_json_end(text: str, start: int) -> int:
    """Index of the bracket closing the one at ``start``, or -1."""
    opening = text[start]
    closing = "}" if opening == "{" else "]"
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opening:
            depth += 1
        elif ch == closing:
            depth -= 1
            if depth == 0:
                return i
    return -1


def parse_agent_json_output(text: str, step_id: str) -> Any:
    """Extract the first JSON object or array from an LLM reply.

    Handles markdown code fences and prose around the JSON.

    Raises:
        OutputParseError: With a preview of the offending text
    """
    if not text or not isinstance(text, str):
        raise OutputParseError(step_id, "Agent output is empty or not a string. Cannot parse JSON.")

    cleaned = _CLOSE_FENCE_RE.sub("", _OPEN_FENCE_RE.sub("", text.strip())).strip()

    match = re.search(r"[{\[]", cleaned)
    if match is None:
        raise OutputParseError(
            step_id,
            "No JSON object or array found in agent output. "
            f"Received: {_preview(text, 200)}",
        )

    start = match.start()
    end = _find_json_end(cleaned, start)
    if end == -1:
        raise OutputParseError(
            step_id,
            f"Incomplete JSON in agent output. Found opening '{cleaned[start]}' "
            "but no matching close. The JSON is truncated or malformed.",
        )

    json_text = cleaned[start : end + 1]
    try:
        return json.loads(json_text)
    except json.JSONDecodeError as e:
        raise OutputParseError(
            step_id,
            f"Failed to parse JSON from agent output. Parse error: {e}. "
            f"Extracted text: {_preview(json_text, 300)}",
        ) from e


def schema_errors(data: Any, schema: dict[str, Any]) -> list[str]:
    """``path: message`` lines for every violation of ``schema``."""
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        return [f"(schema): {e.message}"]
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])
    return [
        f"{'.'.join(str(p) for p in error.path) or '(root)'}: {error.message}"
        for error in errors
    ]


def validate_agent_output(output: Any, schema: dict[str, Any] | None, step_id: str) -> Any:
    """Check parsed agent output against an optional JSON Schema.

    Raises:
        OutputParseError: Listing each violation
    """
    if not schema:
        return output

    problems = schema_errors(output, schema)
    if problems:
        issues = "\n".join(f"  - {p}" for p in problems)
        raise OutputParseError(
            step_id,
            "Agent output failed schema validation.\n"
            f"Validation errors:\n{issues}\n"
            f"Received output: {_preview(json.dumps(output, indent=2, default=str), 500)}",
        )
    return output
