"""Template and expression evaluation for workflow definitions.

Expressions see five names: ``input``, ``steps``, ``variables``, ``env`` and
``helpers``. Simple dot-paths (``steps.fetch.items[0]``) are looked up
directly. Anything with operators is evaluated by simpleeval, after the
common JavaScript operators (``&&``, ``||``, ``!``, ``===``, ``?.``) are
rewritten to their Python equivalents. Reading through a missing value gives
None, and ``.length`` of a list or string is its length.

Attribute names starting with an underscore are not reachable with dot
syntax inside complex expressions; use ``steps["loop"]["_iteration"]``.
"""

from __future__ import annotations

import json
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from simpleeval import EvalWithCompoundTypes

CURATED_ENV_KEYS = (
    "SLACK_DEFAULT_CHANNEL",
    "SLACK_ALERTS_CHANNEL",
    "SLACK_DEFAULT_AGENT_SLUG",
    "NGROK_DOMAIN",
    "APP_URL",
)

RISK_LEVELS = ("trivial", "low", "medium", "high", "critical")

_BRACKET_RE = re.compile(r"""\[(["']?)([^\]"']+)\1\]""")
_COMPLEX_RE = re.compile(r"""[|&?:()'"!+\-*/=<>~%]|\b(?:new|not|and|or|in)\b""")
_EXACT_TEMPLATE_RE = re.compile(r"^\{\{\s*([^}]+)\s*\}\}$")
_INLINE_TEMPLATE_RE = re.compile(r"\{\{\s*([^}]+)\s*\}\}")

_JS_OPERATORS = (
    ("?.[", "["),
    ("?.", "."),
    ("===", " == "),
    ("!==", " != "),
    ("&&", " and "),
    ("||", " or "),
)
_JS_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}

SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
}


class ExpressionError(Exception):
    """Raised when a condition cannot be evaluated."""


def normalize_path(path: str) -> list[str]:
    """Split ``a.b[0]["c"]`` into ``["a", "b", "0", "c"]``."""
    return [part for part in _BRACKET_RE.sub(r".\2", path).split(".") if part]


def get_value_at_path(source: Any, path: str) -> Any:
    """Walk dicts and lists along ``path``. Returns None on any miss."""
    if not path:
        return source
    current = source
    for part in normalize_path(path):
        if isinstance(current, dict):
            current = current.get(part)
        elif part == "length" and isinstance(current, (list, tuple, str)):
            current = len(current)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
        if current is None:
            return None
    return current


def get_env_context(prefix: str = "WORKFLOW_") -> dict[str, str]:
    """Environment variables templates may read."""
    curated = {key: os.environ[key] for key in CURATED_ENV_KEYS if os.environ.get(key)}
    for key, value in os.environ.items():
        if prefix and key.startswith(prefix) and value:
            curated[key] = value
    return curated


def risk_below(actual: Any = None, threshold: Any = None) -> bool:
    """True when ``actual`` is a strictly lower risk level than ``threshold``."""
    actual, threshold = str(actual or ""), str(threshold or "")
    if actual not in RISK_LEVELS or threshold not in RISK_LEVELS:
        return False
    return RISK_LEVELS.index(actual) < RISK_LEVELS.index(threshold)


def get_helpers(now: datetime | None = None) -> dict[str, Callable[..., Any]]:
    """Date helpers and formatting functions exposed to templates."""
    now = now or datetime.now(timezone.utc)
    today = now.date().isoformat()

    return {
        "today": lambda: today,
        "now": lambda: now.isoformat(),
        "yesterday": lambda: (now - timedelta(days=1)).date().isoformat(),
        "todayStart": lambda: f"{today}T00:00:00.000Z",
        "todayEnd": lambda: f"{today}T23:59:59.999Z",
        "json": lambda value: json.dumps(value, default=str),
        "riskBelow": risk_below,
    }


def build_context(
    input: Any,
    steps: dict[str, Any] | None = None,
    variables: dict[str, Any] | None = None,
    env_prefix: str = "WORKFLOW_",
) -> dict[str, Any]:
    """Fresh evaluation context for one workflow execution."""
    return {
        "input": input,
        "steps": dict(steps or {}),
        "variables": dict(variables or {}),
        "env": get_env_context(env_prefix),
        "helpers": get_helpers(),
    }


def is_complex_expression(expr: str) -> bool:
    return bool(_COMPLEX_RE.search(expr))


def to_python_expression(expr: str) -> str:
    """Rewrite JavaScript operators and optional chaining outside string literals."""
    out: list[str] = []
    i = 0
    quote: str | None = None
    while i < len(expr):
        ch = expr[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(expr):
                out.append(expr[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        for js, py in _JS_OPERATORS:
            if expr.startswith(js, i):
                out.append(py)
                i += len(js)
                break
        else:
            if ch == "!" and not expr.startswith("!=", i):
                out.append(" not ")
            else:
                out.append(ch)
            i += 1
    return "".join(out).strip()


class _Evaluator(EvalWithCompoundTypes):
    """Dot and subscript access read dict keys, a missing key reads as None.

    Access on None yields None, as JavaScript optional chaining does.
    """

    def _eval_attribute(self, node):
        if node.attr.startswith("_"):
            return super()._eval_attribute(node)
        value = self._eval(node.value)
        if value is None:
            return None
        if isinstance(value, dict):
            return value.get(node.attr)
        if node.attr == "length" and isinstance(value, (list, tuple, str)):
            return len(value)
        return super()._eval_attribute(node)

    def _eval_subscript(self, node):
        container = self._eval(node.value)
        if container is None:
            return None
        key = self._eval(node.slice)
        if isinstance(container, dict):
            return container.get(key)
        if isinstance(container, (list, tuple)) and isinstance(key, int):
            return container[key] if -len(container) <= key < len(container) else None
        return container[key]


def _evaluator(context: dict[str, Any]) -> _Evaluator:
    helpers = context.get("helpers") or get_helpers()
    names = {
        "input": None,
        "steps": {},
        "variables": {},
        "env": {},
        **context,
        "helpers": helpers,
        "True": True,
        "False": False,
        "None": None,
        **_JS_LITERALS,
    }
    functions = {**SAFE_FUNCTIONS, **helpers}
    return _Evaluator(names=names, functions=functions)


def evaluate_expression(expr: str, context: dict[str, Any]) -> Any:
    """Evaluate an expression, falling back to a plain path lookup."""
    trimmed = expr.strip()
    if trimmed in _JS_LITERALS:
        return _JS_LITERALS[trimmed]
    if not is_complex_expression(trimmed):
        return get_value_at_path(context, trimmed)

    try:
        return _evaluator(context).eval(to_python_expression(trimmed))
    except Exception:
        return get_value_at_path(context, trimmed)


def evaluate_condition(expr: str, context: dict[str, Any]) -> bool:
    """Evaluate a branch or loop condition.

    Raises:
        ExpressionError: If the expression cannot be evaluated
    """
    trimmed = (expr or "").strip()
    if not trimmed:
        return False
    if trimmed in _JS_LITERALS:
        return bool(_JS_LITERALS[trimmed])
    if not is_complex_expression(trimmed):
        return bool(get_value_at_path(context, trimmed))

    try:
        return bool(_evaluator(context).eval(to_python_expression(trimmed)))
    except Exception as e:
        steps = context.get("steps", {})
        snapshot = json.dumps(steps, indent=2, default=str)[:500]
        raise ExpressionError(
            "Branch condition evaluation failed.\n"
            f"Expression: {expr}\n"
            f"Error: {e}\n"
            f"Available steps: {', '.join(steps)}\n"
            f"Steps snapshot: {snapshot}..."
        ) from e


def resolve_template(value: str, context: dict[str, Any]) -> Any:
    """Render ``{{ expr }}`` placeholders.

    A string that is exactly one placeholder yields the raw value, so
    ``"{{ steps.fetch }}"`` can pass a dict through unchanged.
    """
    exact = _EXACT_TEMPLATE_RE.match(value)
    if exact:
        return evaluate_expression(exact.group(1), context)

    if "{{" not in value:
        return value

    def replace(match: re.Match[str]) -> str:
        resolved = evaluate_expression(match.group(1), context)
        if resolved is None:
            return ""
        if isinstance(resolved, str):
            return resolved
        return json.dumps(resolved, default=str)

    return _INLINE_TEMPLATE_RE.sub(replace, value)


def resolve_value(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return resolve_template(value, context)
    if isinstance(value, list):
        return [resolve_value(entry, context) for entry in value]
    if isinstance(value, dict):
        return {key: resolve_value(entry, context) for key, entry in value.items()}
    return value


def resolve_input_mapping(mapping: dict[str, Any] | None, context: dict[str, Any]) -> Any:
    """Step input from its mapping, or the workflow input when unmapped."""
    if not mapping:
        return context.get("input") or {}
    return resolve_value(mapping, context)
