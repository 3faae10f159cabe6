"""A single view over cron schedules and event-based triggers.

Schedules and triggers live in separate collections. The API addresses
both through a unified id, ``schedule:<id>`` or ``trigger:<id>``.

An event trigger's ``input_mapping`` decides how an inbound payload becomes
agent input::

    {
        "template": "New ticket: {{ payload.subject }}",   # optional
        "field": "body.text",                              # optional
        "config": {
            "defaults": {"input": ..., "context": {...}, "max_steps": 5,
                         "environment": "prod"},
            "environment": "prod",
        },
    }
"""

from __future__ import annotations

import json
from typing import Any

from agentc2.models.records import AgentRunRecord, ScheduleRecord, TriggerRecord
from agentc2.workflows.expressions import get_value_at_path, resolve_template

UNIFIED_TRIGGER_TYPES = ("scheduled", "webhook", "event", "api", "manual", "test", "mcp")
UNIFIED_SOURCES = ("schedule", "trigger")
DEFAULT_FIELD_TRIGGER_TYPES = ("api", "manual", "test", "mcp")
DEFAULT_KEYS = ("input", "context", "max_steps", "environment")


def build_unified_trigger_id(source: str, source_id: str) -> str:
    return f"{source}:{source_id}"


def parse_unified_trigger_id(value: str | None) -> tuple[str, str] | None:
    """Split a unified id into ``(source, id)``, None if malformed."""
    if not value or ":" not in value:
        return None
    source, _, source_id = value.partition(":")
    if source not in UNIFIED_SOURCES or not source_id:
        return None
    return source, source_id


def resolve_run_source(trigger_type: str) -> str:
    return "schedule" if trigger_type == "scheduled" else trigger_type


def _clean_defaults(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, dict):
        return None
    defaults = {k: value[k] for k in DEFAULT_KEYS if value.get(k) is not None}
    if "maxSteps" in value and "max_steps" not in defaults:
        defaults["max_steps"] = value["maxSteps"]
    return defaults or None


def extract_trigger_input_mapping(value: Any) -> dict[str, Any] | None:
    return dict(value) if isinstance(value, dict) else None


def extract_trigger_config(mapping: dict[str, Any] | None) -> dict[str, Any] | None:
    """The ``config`` block of an input mapping, with defaults normalized."""
    if not mapping or not isinstance(mapping.get("config"), dict):
        return None
    config = mapping["config"]
    return {
        "defaults": _clean_defaults(config.get("defaults")),
        "environment": config.get("environment"),
    }


def extract_schedule_defaults(value: Any) -> dict[str, Any] | None:
    return _clean_defaults(value)


def build_defaults(
    input: Any = None,
    context: dict[str, Any] | None = None,
    max_steps: int | None = None,
    environment: str | None = None,
) -> dict[str, Any] | None:
    """Defaults dict from request fields, None when none were given."""
    return _clean_defaults(
        {"input": input, "context": context, "max_steps": max_steps, "environment": environment}
    )


def merge_trigger_input_mapping(
    mapping: dict[str, Any] | None,
    overrides: dict[str, Any] | None,
    set_default_field: bool = False,
) -> dict[str, Any] | None:
    """Fold ``{"defaults", "environment"}`` overrides into a mapping's config.

    For trigger types whose payload carries the prompt directly,
    ``set_default_field`` points an otherwise unconfigured mapping at the
    payload's ``input`` field.
    """
    merged = dict(mapping) if mapping else {}

    if overrides:
        config = dict(merged.get("config") or {})
        defaults = {**(config.get("defaults") or {}), **(overrides.get("defaults") or {})}
        config["defaults"] = {k: v for k, v in defaults.items() if v is not None}
        if overrides.get("environment") is not None:
            config["environment"] = overrides["environment"]
        merged["config"] = config

    if set_default_field and not merged.get("field") and not merged.get("template"):
        merged["field"] = "input"

    return merged or None


def validate_trigger_input_mapping(mapping: dict[str, Any] | None) -> tuple[bool, str | None]:
    if mapping is None:
        return True, None
    if not isinstance(mapping, dict):
        return False, "inputMapping must be an object"
    if "template" in mapping and not isinstance(mapping["template"], str):
        return False, "inputMapping.template must be a string"
    if "field" in mapping and not isinstance(mapping["field"], str):
        return False, "inputMapping.field must be a string"
    if "config" in mapping and not isinstance(mapping["config"], dict):
        return False, "inputMapping.config must be an object"
    return True, None


def _matches(actual: Any, expected: Any) -> bool:
    if isinstance(expected, list):
        if isinstance(actual, list):
            return any(item in expected for item in actual)
        return actual in expected
    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            return False
        return all(_matches(get_value_at_path(actual, k), v) for k, v in expected.items())
    return actual == expected


def matches_trigger_filter(payload: dict[str, Any], filter: dict[str, Any] | None) -> bool:
    """Every filter key (a dot-path into the payload) must match.

    A list expectation means membership, a dict means a nested match, and
    anything else means equality.
    """
    if not filter:
        return True
    return all(_matches(get_value_at_path(payload, key), value) for key, value in filter.items())


def resolve_trigger_input(
    payload: dict[str, Any],
    mapping: dict[str, Any] | None,
    trigger_name: str,
) -> Any:
    """Turn an inbound payload into the agent's input."""
    mapping = mapping or {}

    template = mapping.get("template")
    if isinstance(template, str) and template:
        return resolve_template(template, {"payload": payload, "input": payload})

    field = mapping.get("field")
    if isinstance(field, str) and field:
        value = get_value_at_path(payload, field)
        if value is not None:
            return value

    for key in ("input", "message"):
        if isinstance(payload.get(key), str):
            return payload[key]

    return f"Trigger '{trigger_name}' fired\n\n{json.dumps(payload, indent=2, default=str)}"


def stringify_input(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value if value is not None else {}, default=str)


def summarize_run(run: AgentRunRecord | None) -> dict[str, Any] | None:
    if run is None:
        return None
    return {
        "id": run.id,
        "status": run.status.value,
        "started_at": run.started_at.isoformat(),
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "duration_ms": run.duration_ms,
    }


def build_schedule_trigger(
    schedule: ScheduleRecord,
    last_run: AgentRunRecord | None = None,
) -> dict[str, Any]:
    defaults = extract_schedule_defaults(schedule.input_defaults)
    return {
        "id": build_unified_trigger_id("schedule", schedule.id),
        "source_id": schedule.id,
        "source_type": "schedule",
        "type": "scheduled",
        "name": schedule.name,
        "description": schedule.description,
        "is_active": schedule.is_active,
        "created_at": schedule.created_at.isoformat(),
        "updated_at": schedule.updated_at.isoformat(),
        "config": {
            "cron_expr": schedule.cron_expr,
            "timezone": schedule.timezone,
            "environment": (defaults or {}).get("environment"),
        },
        "input_defaults": defaults,
        "stats": {
            "last_run_at": schedule.last_run_at.isoformat() if schedule.last_run_at else None,
            "next_run_at": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
            "run_count": schedule.run_count,
        },
        "last_run": summarize_run(last_run),
    }


def build_trigger_trigger(
    trigger: TriggerRecord,
    target_slug: str,
    last_run: AgentRunRecord | None = None,
) -> dict[str, Any]:
    mapping = extract_trigger_input_mapping(trigger.input_mapping)
    config = extract_trigger_config(mapping) or {}
    defaults = config.get("defaults")
    unified_id = build_unified_trigger_id("trigger", trigger.id)

    view_config: dict[str, Any] = {
        "event_name": trigger.event_name,
        "webhook_path": trigger.webhook_path,
        "has_webhook_secret": bool(trigger.webhook_secret),
        "environment": config.get("environment") or (defaults or {}).get("environment"),
    }
    if trigger.trigger_type == "mcp":
        view_config["tool_name"] = f"agent.{target_slug}"
    if trigger.trigger_type == "api":
        view_config["api_endpoint"] = (
            f"/api/agents/{target_slug}/execution-triggers/{unified_id}/execute"
        )

    return {
        "id": unified_id,
        "source_id": trigger.id,
        "source_type": "trigger",
        "type": trigger.trigger_type,
        "name": trigger.name,
        "description": trigger.description,
        "is_active": trigger.is_active,
        "created_at": trigger.created_at.isoformat(),
        "updated_at": trigger.updated_at.isoformat(),
        "config": view_config,
        "input_defaults": defaults,
        "filter": trigger.filter or None,
        "input_mapping": mapping,
        "stats": {
            "last_run_at": (
                trigger.last_triggered_at.isoformat() if trigger.last_triggered_at else None
            ),
            "trigger_count": trigger.trigger_count,
        },
        "last_run": summarize_run(last_run),
    }
