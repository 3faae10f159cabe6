"""Tests for workflow templates and expressions."""

from datetime import datetime, timezone

import pytest

from agentc2.workflows.expressions import (
    ExpressionError,
    build_context,
    evaluate_condition,
    evaluate_expression,
    get_env_context,
    get_helpers,
    get_value_at_path,
    is_complex_expression,
    normalize_path,
    resolve_input_mapping,
    resolve_template,
    risk_below,
    to_python_expression,
)


@pytest.fixture
def context():
    return build_context(
        {"ticket": {"id": 42, "tags": ["billing", "urgent"]}, "name": "Ada"},
        {"fetch": {"count": 5, "items": [{"title": "first"}, {"title": "second"}]}},
        {"item": "x"},
    )


class TestPaths:
    def test_normalize_brackets(self):
        assert normalize_path('a.b[0]["c"]') == ["a", "b", "0", "c"]
        assert normalize_path("a['b'].c") == ["a", "b", "c"]

    def test_get_value_at_path(self, context):
        assert get_value_at_path(context, "input.ticket.id") == 42
        assert get_value_at_path(context, "steps.fetch.items[1].title") == "second"
        assert get_value_at_path(context, "input.ticket.tags.0") == "billing"

    def test_missing_path_is_none(self, context):
        assert get_value_at_path(context, "input.nope.deeper") is None
        assert get_value_at_path(context, "steps.fetch.items[9]") is None
        assert get_value_at_path(context, "input.name.first") is None

    def test_length_of_lists_and_strings(self, context):
        assert get_value_at_path(context, "steps.fetch.items.length") == 2
        assert get_value_at_path(context, "input.name.length") == 3
        assert get_value_at_path({"page": {"length": 7}}, "page.length") == 7

    def test_empty_path_returns_source(self):
        assert get_value_at_path({"a": 1}, "") == {"a": 1}


class TestTemplates:
    def test_exact_placeholder_keeps_type(self, context):
        assert resolve_template("{{ steps.fetch }}", context) == context["steps"]["fetch"]
        assert resolve_template("{{input.ticket.id}}", context) == 42

    def test_inline_placeholders_are_stringified(self, context):
        rendered = resolve_template(
            "Ticket {{ input.ticket.id }} for {{ input.name }}: {{ input.ticket.tags }}",
            context,
        )
        assert rendered == 'Ticket 42 for Ada: ["billing", "urgent"]'

    def test_missing_inline_value_renders_empty(self, context):
        assert resolve_template("Hi {{ input.missing }}!", context) == "Hi !"

    def test_plain_string_untouched(self, context):
        assert resolve_template("no placeholders", context) == "no placeholders"

    def test_expression_inside_template(self, context):
        assert resolve_template("{{ steps.fetch.count * 2 }}", context) == 10
        assert resolve_template("{{ len(input.ticket.tags) }}", context) == 2

    def test_helpers_are_callable(self, context):
        today = resolve_template("{{ helpers.today() }}", context)
        assert today == datetime.now(timezone.utc).date().isoformat()

    def test_resolve_input_mapping_nested(self, context):
        mapping = {
            "id": "{{ input.ticket.id }}",
            "titles": ["{{ steps.fetch.items[0].title }}", "literal"],
            "meta": {"who": "{{ input.name }}", "n": 3},
        }
        assert resolve_input_mapping(mapping, context) == {
            "id": 42,
            "titles": ["first", "literal"],
            "meta": {"who": "Ada", "n": 3},
        }

    def test_unmapped_input_is_workflow_input(self, context):
        assert resolve_input_mapping(None, context) is context["input"]
        assert resolve_input_mapping(None, build_context(None)) == {}


class TestExpressions:
    def test_is_complex(self):
        assert not is_complex_expression("steps.fetch.count")
        assert is_complex_expression("steps.fetch.count > 3")
        assert is_complex_expression("!input.done")

    def test_js_operators_rewritten(self):
        assert to_python_expression("a === 1 && b !== 2 || !c") == (
            "a  ==  1  and  b  !=  2  or   not c"
        )

    def test_operators_inside_strings_preserved(self):
        assert to_python_expression("x == 'a && b'") == "x == 'a && b'"

    def test_evaluate_expression_falls_back_to_path(self, context):
        assert evaluate_expression("input.name", context) == "Ada"
        assert evaluate_expression("steps.fetch.count + 1", context) == 6

    def test_conditions(self, context):
        assert evaluate_condition("steps.fetch.count > 3", context) is True
        assert evaluate_condition("steps.fetch.count > 3 && input.name === 'Ada'", context)
        assert evaluate_condition("'urgent' in input.ticket.tags", context)
        assert evaluate_condition("!input.closed", context) is True
        assert evaluate_condition("input.closed == null", context) is True

    def test_simple_path_condition_is_truthiness(self, context):
        assert evaluate_condition("steps.fetch.items", context) is True
        assert evaluate_condition("input.missing", context) is False
        assert evaluate_condition("", context) is False

    def test_bare_literals(self, context):
        assert evaluate_condition("true", context) is True
        assert evaluate_condition("false", context) is False
        assert evaluate_expression("null", context) is None

    def test_underscore_keys_need_subscripts(self):
        context = build_context({}, {"loop": {"_iteration": 3}})
        assert evaluate_condition('steps["loop"]["_iteration"] < 5', context) is True

    def test_optional_chaining_rewritten(self):
        assert to_python_expression("steps.a?.b === 1") == "steps.a.b  ==  1"
        assert to_python_expression("steps?.['x']") == "steps['x']"
        assert to_python_expression("x == 'a?.b'") == "x == 'a?.b'"

    def test_optional_chaining_conditions(self):
        context = build_context(
            {},
            {
                "classify": {"classification": "user_error"},
                "fix-audit": {"verdict": "PASS"},
                "options-review": {"approved": False},
            },
        )
        assert evaluate_condition("steps.classify?.classification === 'user_error'", context)
        assert evaluate_condition("steps['fix-audit']?.verdict === 'PASS'", context)
        assert evaluate_condition(
            "steps['options-review']?.approved !== true"
            " && steps['options-review']?.rejected !== true",
            context,
        )
        assert evaluate_condition("steps.triage?.classification === 'bug'", context) is False
        assert evaluate_condition("steps.triage?.['labels']?.length === 3", context) is False

    def test_length_in_expressions(self, context):
        assert evaluate_expression("steps.fetch.items.length", context) == 2
        assert evaluate_condition("steps.fetch.items.length === 2", context) is True
        assert evaluate_condition("input.ticket.tags.length > 5", context) is False

    def test_failed_condition_raises_with_snapshot(self, context):
        with pytest.raises(ExpressionError) as exc_info:
            evaluate_condition("steps.fetch.count > ", context)
        message = str(exc_info.value)
        assert "Expression: steps.fetch.count >" in message
        assert "Available steps: fetch" in message


class TestHelpers:
    def test_fixed_clock(self):
        now = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
        helpers = get_helpers(now)
        assert helpers["today"]() == "2024-03-01"
        assert helpers["yesterday"]() == "2024-02-29"
        assert helpers["todayStart"]() == "2024-03-01T00:00:00.000Z"
        assert helpers["todayEnd"]() == "2024-03-01T23:59:59.999Z"
        assert helpers["json"]({"a": 1}) == '{"a": 1}'

    def test_risk_below(self):
        assert risk_below("low", "high") is True
        assert risk_below("high", "high") is False
        assert risk_below("unknown", "high") is False

    def test_env_context(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_REGION", "eu")
        monkeypatch.setenv("APP_URL", "https://example.test")
        monkeypatch.setenv("SECRET_TOKEN", "nope")
        env = get_env_context()
        assert env["WORKFLOW_REGION"] == "eu"
        assert env["APP_URL"] == "https://example.test"
        assert "SECRET_TOKEN" not in env
