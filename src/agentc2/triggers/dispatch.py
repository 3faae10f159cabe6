"""Trigger dispatch: inbound webhooks, events, schedules and manual execution.

Every path that starts work ends in ``fire_trigger`` or ``fire_schedule``.
Those record a QUEUED agent or workflow run and put an event on the bus. The
``AgentInvoker`` picks the event up and does the actual work.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from agentc2.config import WebhookConfig
from agentc2.errors import ForbiddenError, NotFoundError, ValidationError
from agentc2.events import Event, EventBus, EventType
from agentc2.models.records import (
    AgentRecord,
    AgentRunRecord,
    RunStatus,
    ScheduleRecord,
    TriggerEventStatus,
    TriggerRecord,
    WorkflowRecord,
    WorkflowRunRecord,
    utcnow,
)
from agentc2.storage.json_store import Database
from agentc2.triggers.events import TriggerEventRecorder, build_trigger_payload_snapshot
from agentc2.triggers.rate_limit import RateLimiter, RateLimitPolicy
from agentc2.triggers.schedules import get_next_run_at
from agentc2.triggers.security import (
    SignatureError,
    generate_webhook_credentials,
    verify_webhook_signature,
)
from agentc2.triggers.unified import (
    DEFAULT_FIELD_TRIGGER_TYPES,
    UNIFIED_TRIGGER_TYPES,
    build_defaults,
    build_schedule_trigger,
    build_trigger_trigger,
    extract_schedule_defaults,
    extract_trigger_config,
    extract_trigger_input_mapping,
    matches_trigger_filter,
    merge_trigger_input_mapping,
    parse_unified_trigger_id,
    resolve_run_source,
    resolve_trigger_input,
    stringify_input,
    validate_trigger_input_mapping,
)

logger = logging.getLogger(__name__)

Owner = AgentRecord | WorkflowRecord


@dataclass
class DispatchResult:
    """HTTP-shaped outcome of an inbound delivery."""

    status: int
    body: dict[str, Any] = field(default_factory=dict)


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    """First present key, accepting both snake_case and camelCase spellings."""
    for key in keys:
        if key in data:
            return data[key]
    return None


def _owner_field(owner: Owner) -> str:
    return "agent_id" if isinstance(owner, AgentRecord) else "workflow_id"


class TriggerDispatcher:
    """Manages triggers and turns deliveries into queued runs.

    Args:
        db: Storage
        bus: Where fire events are published
        rate_limiter: Shared limiter (one is created if omitted)
        recorder: Trigger event audit trail
        config: Webhook header names, tolerance and rate limit
    """

    def __init__(
        self,
        db: Database,
        bus: EventBus,
        rate_limiter: RateLimiter | None = None,
        recorder: TriggerEventRecorder | None = None,
        config: WebhookConfig | None = None,
    ) -> None:
        self.db = db
        self.bus = bus
        self.rate_limiter = rate_limiter or RateLimiter()
        self.recorder = recorder or TriggerEventRecorder(db)
        self.config = config or WebhookConfig()

    # ------------------------------------------------------------------
    # Owners and targets
    # ------------------------------------------------------------------

    def get_owner(self, owner_id: str, owner_type: str = "agent") -> Owner:
        if owner_type == "workflow":
            owner = self.db.find_workflow(owner_id)
            kind = "Workflow"
        else:
            owner = self.db.find_agent(owner_id)
            kind = "Agent"
        if owner is None:
            raise NotFoundError(f"{kind} '{owner_id}' not found")
        return owner

    def _target_of(self, item: TriggerRecord | ScheduleRecord) -> Owner | None:
        if item.agent_id:
            return self.db.agents.get(item.agent_id)
        if item.workflow_id:
            return self.db.workflows.get(item.workflow_id)
        return None

    def _owned_by(self, owner: Owner):
        owner_field = _owner_field(owner)
        return lambda item: getattr(item, owner_field) == owner.id

    def _last_runs(self, ids: set[str]) -> dict[str, AgentRunRecord]:
        latest: dict[str, AgentRunRecord] = {}
        for run in self.db.agent_runs.list(lambda r: r.trigger_id in ids):
            latest.setdefault(run.trigger_id, run)
        return latest

    # ------------------------------------------------------------------
    # CRUD over the unified view
    # ------------------------------------------------------------------

    def list_triggers(self, owner_id: str, owner_type: str = "agent") -> list[dict[str, Any]]:
        owner = self.get_owner(owner_id, owner_type)
        schedules = self.db.schedules.list(self._owned_by(owner))
        triggers = self.db.triggers.list(self._owned_by(owner))
        last_runs = self._last_runs({s.id for s in schedules} | {t.id for t in triggers})

        views = [build_schedule_trigger(s, last_runs.get(s.id)) for s in schedules]
        views += [build_trigger_trigger(t, owner.slug, last_runs.get(t.id)) for t in triggers]
        views.sort(key=lambda v: v["created_at"], reverse=True)
        return views

    def _lookup(
        self, owner: Owner, unified_id: str
    ) -> tuple[str, ScheduleRecord | TriggerRecord]:
        parsed = parse_unified_trigger_id(unified_id)
        if parsed is None:
            raise ValidationError("Invalid triggerId format")
        source, source_id = parsed
        owned = self._owned_by(owner)

        if source == "schedule":
            schedule = self.db.schedules.get(source_id)
            if schedule is None or not owned(schedule):
                raise NotFoundError(f"Schedule '{source_id}' not found")
            return source, schedule

        trigger = self.db.triggers.get(source_id)
        if trigger is None or not owned(trigger):
            raise NotFoundError(f"Trigger '{source_id}' not found")
        return source, trigger

    def get_trigger(
        self, owner_id: str, unified_id: str, owner_type: str = "agent"
    ) -> dict[str, Any]:
        owner = self.get_owner(owner_id, owner_type)
        source, item = self._lookup(owner, unified_id)
        last_run = self._last_runs({item.id}).get(item.id)
        if source == "schedule":
            return build_schedule_trigger(item, last_run)
        return build_trigger_trigger(item, owner.slug, last_run)

    def create_trigger(
        self, owner_id: str, body: Mapping[str, Any], owner_type: str = "agent"
    ) -> dict[str, Any]:
        """Create a schedule or trigger from an API body.

        Returns:
            ``{"trigger": view}`` plus ``{"webhook": {path, secret}}`` for
            webhook triggers. The secret is not retrievable later.
        """
        trigger_type = body.get("type")
        name = body.get("name")
        if not name or not trigger_type:
            raise ValidationError("Missing required fields: name, type")
        if trigger_type not in UNIFIED_TRIGGER_TYPES:
            raise ValidationError(
                f"Invalid type. Must be one of: {', '.join(UNIFIED_TRIGGER_TYPES)}"
            )

        owner = self.get_owner(owner_id, owner_type)
        config = body.get("config") or {}
        defaults = build_defaults(
            body.get("input"),
            body.get("context"),
            _pick(body, "max_steps", "maxSteps"),
            body.get("environment"),
        )
        common = {
            _owner_field(owner): owner.id,
            "organization_id": owner.organization_id,
            "workspace_id": owner.workspace_id,
            "name": name,
            "description": body.get("description"),
            "is_active": _pick(body, "is_active", "isActive") is not False,
        }

        if trigger_type == "scheduled":
            cron_expr = _pick(config, "cron_expr", "cronExpr")
            if not cron_expr:
                raise ValidationError("Missing required field: config.cron_expr")
            tz = config.get("timezone") or "UTC"
            schedule = ScheduleRecord(
                **common,
                cron_expr=cron_expr,
                timezone=tz,
                input_defaults=defaults,
                next_run_at=get_next_run_at(cron_expr, tz),
            )
            if not schedule.is_active:
                schedule.next_run_at = None
            self.db.schedules.save(schedule)
            logger.info("Created schedule %s (%s) for %s", schedule.id, cron_expr, owner.slug)
            return {"trigger": build_schedule_trigger(schedule)}

        event_name = _pick(config, "event_name", "eventName")
        if trigger_type == "event" and not event_name:
            raise ValidationError("Missing required field: config.event_name")

        raw_mapping = _pick(body, "input_mapping", "inputMapping")
        mapping = extract_trigger_input_mapping(raw_mapping)
        if raw_mapping is not None and mapping is None:
            raise ValidationError("inputMapping must be an object")

        overrides = (
            {"defaults": defaults, "environment": body.get("environment")} if defaults else None
        )
        merged = merge_trigger_input_mapping(
            mapping, overrides, set_default_field=trigger_type in DEFAULT_FIELD_TRIGGER_TYPES
        )
        valid, error = validate_trigger_input_mapping(merged)
        if not valid:
            raise ValidationError(error or "Invalid inputMapping")

        webhook_path = webhook_secret = None
        if trigger_type == "webhook":
            webhook_path, webhook_secret = generate_webhook_credentials()

        trigger = self.db.triggers.save(
            TriggerRecord(
                **common,
                trigger_type=trigger_type,
                event_name=event_name,
                webhook_path=webhook_path,
                webhook_secret=webhook_secret,
                filter=body.get("filter") or None,
                input_mapping=merged,
            )
        )
        logger.info("Created %s trigger %s for %s", trigger_type, trigger.id, owner.slug)

        result: dict[str, Any] = {"trigger": build_trigger_trigger(trigger, owner.slug)}
        if trigger_type == "webhook":
            result["webhook"] = {
                "path": f"/api/webhooks/{webhook_path}",
                "secret": webhook_secret,
                "note": "Save this secret - it won't be shown again",
            }
        return result

    def update_trigger(
        self,
        owner_id: str,
        unified_id: str,
        body: Mapping[str, Any],
        owner_type: str = "agent",
    ) -> dict[str, Any]:
        owner = self.get_owner(owner_id, owner_type)
        source, item = self._lookup(owner, unified_id)
        config = body.get("config") or {}
        is_active = _pick(body, "is_active", "isActive")
        defaults = build_defaults(
            body.get("input"),
            body.get("context"),
            _pick(body, "max_steps", "maxSteps"),
            body.get("environment"),
        )

        if "name" in body:
            item.name = body["name"]
        if "description" in body:
            item.description = body["description"]

        if source == "schedule":
            cron_expr = _pick(config, "cron_expr", "cronExpr")
            tz = config.get("timezone")
            was_active = item.is_active
            if cron_expr is not None:
                item.cron_expr = cron_expr
            if tz is not None:
                item.timezone = tz
            if is_active is not None:
                item.is_active = is_active is not False
            if defaults:
                item.input_defaults = defaults

            if cron_expr is not None or tz is not None or (is_active is True and not was_active):
                item.next_run_at = get_next_run_at(item.cron_expr, item.timezone or "UTC")
            if is_active is False:
                item.next_run_at = None

            self.db.schedules.save(item)
            return build_schedule_trigger(item)

        event_name = _pick(config, "event_name", "eventName")
        if item.trigger_type == "event" and event_name == "":
            raise ValidationError("eventName cannot be empty")

        mapping_given = "input_mapping" in body or "inputMapping" in body
        overrides = (
            {"defaults": defaults, "environment": body.get("environment")} if defaults else None
        )
        if mapping_given or overrides:
            raw_mapping = _pick(body, "input_mapping", "inputMapping")
            candidate = extract_trigger_input_mapping(
                raw_mapping if mapping_given else item.input_mapping
            )
            if mapping_given and raw_mapping is not None and candidate is None:
                raise ValidationError("inputMapping must be an object")
            merged = merge_trigger_input_mapping(
                candidate,
                overrides,
                set_default_field=item.trigger_type in DEFAULT_FIELD_TRIGGER_TYPES,
            )
            valid, error = validate_trigger_input_mapping(merged)
            if not valid:
                raise ValidationError(error or "Invalid inputMapping")
            item.input_mapping = merged

        if event_name is not None:
            item.event_name = event_name
        if "filter" in body:
            item.filter = body["filter"] or None
        if is_active is not None:
            item.is_active = is_active is not False

        self.db.triggers.save(item)
        return build_trigger_trigger(item, owner.slug)

    def set_active(
        self, owner_id: str, unified_id: str, active: bool, owner_type: str = "agent"
    ) -> dict[str, Any]:
        return self.update_trigger(owner_id, unified_id, {"is_active": active}, owner_type)

    def delete_trigger(self, owner_id: str, unified_id: str, owner_type: str = "agent") -> str:
        owner = self.get_owner(owner_id, owner_type)
        source, item = self._lookup(owner, unified_id)
        if source == "schedule":
            self.db.schedules.delete(item.id)
            return "Schedule deleted"
        self.db.triggers.delete(item.id)
        return "Trigger deleted"

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def _publish(self, event_type: EventType, data: dict[str, Any], correlation: str) -> None:
        await self.bus.emit(
            Event(type=event_type, source="dispatcher", data=data, correlation_id=correlation)
        )

    async def _start(
        self,
        target: Owner,
        input_value: Any,
        context: dict[str, Any],
        max_steps: int | None,
        trigger_type: str,
        trigger_id: str,
        event_type: EventType,
    ) -> str:
        """Record the queued run and publish the event that starts it."""
        if isinstance(target, WorkflowRecord):
            source = resolve_run_source(trigger_type)
            wf_run = self.db.workflow_runs.save(
                WorkflowRunRecord(
                    workflow_id=target.id,
                    workflow_slug=target.slug,
                    status=RunStatus.QUEUED,
                    input=input_value,
                    source=source,
                    trigger_id=trigger_id,
                    organization_id=target.organization_id,
                )
            )
            await self._publish(
                EventType.WORKFLOW_TRIGGER,
                {
                    "run_id": wf_run.id,
                    "workflow_id": target.id,
                    "workflow_slug": target.slug,
                    "input": input_value,
                    "context": context,
                    "source": source,
                    "trigger_id": trigger_id,
                    "organization_id": target.organization_id,
                },
                wf_run.id,
            )
            return wf_run.id

        text = stringify_input(input_value)
        run = self.db.agent_runs.save(
            AgentRunRecord(
                agent_id=target.id,
                agent_slug=target.slug,
                input=text,
                context=context,
                max_steps=max_steps,
                source=resolve_run_source(trigger_type),
                trigger_type=trigger_type,
                trigger_id=trigger_id,
                status=RunStatus.QUEUED,
            )
        )
        await self._publish(
            event_type,
            {
                "run_id": run.id,
                "agent_id": target.id,
                "agent_slug": target.slug,
                "input": text,
                "context": context,
                "max_steps": max_steps,
                "organization_id": target.organization_id,
            },
            run.id,
        )
        return run.id

    async def fire_trigger(
        self,
        trigger: TriggerRecord,
        payload: dict[str, Any],
        overrides: Mapping[str, Any] | None = None,
        event_type: EventType = EventType.TRIGGER_FIRE,
    ) -> str:
        """Queue a run for ``trigger``. Returns the run id.

        Raises:
            NotFoundError: The trigger's target no longer exists
        """
        target = self._target_of(trigger)
        if target is None:
            raise NotFoundError(f"Target of trigger '{trigger.id}' not found")

        overrides = overrides or {}
        mapping = extract_trigger_input_mapping(trigger.input_mapping)
        config = extract_trigger_config(mapping) or {}
        defaults = config.get("defaults") or {}

        input_value = overrides.get("input")
        if input_value is None:
            if isinstance(target, WorkflowRecord) and not (
                mapping and (mapping.get("template") or mapping.get("field"))
            ):
                input_value = payload
            else:
                input_value = resolve_trigger_input(payload, mapping, trigger.name)

        max_steps = _pick(overrides, "max_steps", "maxSteps")
        if not isinstance(max_steps, int):
            max_steps = defaults.get("max_steps")
        environment = (
            overrides.get("environment") or config.get("environment") or defaults.get("environment")
        )
        context = {
            **(defaults.get("context") or {}),
            **(overrides.get("context") or {}),
            "trigger_id": trigger.id,
            "trigger_name": trigger.name,
            "trigger_type": trigger.trigger_type,
            "event_name": trigger.event_name,
            "payload": payload,
        }
        if environment:
            context["environment"] = environment

        run_id = await self._start(
            target, input_value, context, max_steps, trigger.trigger_type, trigger.id, event_type
        )

        trigger.last_triggered_at = utcnow()
        trigger.trigger_count += 1
        self.db.triggers.save(trigger)
        logger.info("Trigger %s fired (run %s)", trigger.id, run_id)
        return run_id

    async def fire_schedule(
        self,
        schedule: ScheduleRecord,
        overrides: Mapping[str, Any] | None = None,
        now: datetime | None = None,
        advance: bool = True,
    ) -> str:
        """Queue a run for ``schedule``, advancing ``next_run_at`` if asked."""
        target = self._target_of(schedule)
        if target is None:
            raise NotFoundError(f"Target of schedule '{schedule.id}' not found")

        overrides = overrides or {}
        defaults = extract_schedule_defaults(schedule.input_defaults) or {}
        input_value = overrides.get("input")
        if input_value is None:
            input_value = defaults.get("input", f"Scheduled run: {schedule.name}")

        max_steps = _pick(overrides, "max_steps", "maxSteps")
        if not isinstance(max_steps, int):
            max_steps = defaults.get("max_steps")
        environment = overrides.get("environment") or defaults.get("environment")
        context = {
            **(defaults.get("context") or {}),
            **(overrides.get("context") or {}),
            "schedule_id": schedule.id,
            "schedule_name": schedule.name,
        }
        if environment:
            context["environment"] = environment

        run_id = await self._start(
            target, input_value, context, max_steps, "scheduled", schedule.id, EventType.AGENT_INVOKE
        )

        now = now or utcnow()
        schedule.last_run_at = now
        schedule.run_count += 1
        if advance:
            schedule.next_run_at = get_next_run_at(schedule.cron_expr, schedule.timezone, now)
        self.db.schedules.save(schedule)
        return run_id

    async def fire_due_schedule(self, schedule: ScheduleRecord, now: datetime) -> str | None:
        """Fire a due schedule from the poller.

        A schedule whose target was deleted is deactivated. One whose target
        is disabled skips this occurrence and moves on to the next.
        """
        target = self._target_of(schedule)
        if target is None:
            schedule.is_active = False
            schedule.next_run_at = None
            self.db.schedules.save(schedule)
            logger.warning("Schedule %s deactivated: its target no longer exists", schedule.id)
            return None

        if not target.is_active:
            schedule.next_run_at = get_next_run_at(schedule.cron_expr, schedule.timezone, now)
            self.db.schedules.save(schedule)
            logger.info("Schedule %s skipped: %s is not active", schedule.id, target.slug)
            return None

        return await self.fire_schedule(schedule, now=now)

    async def execute_trigger(
        self,
        owner_id: str,
        unified_id: str,
        body: Mapping[str, Any] | None = None,
        owner_type: str = "agent",
    ) -> str:
        """Run a trigger or schedule on demand with optional overrides.

        Raises:
            ValidationError: Malformed id, or the payload fails the filter
            NotFoundError: Unknown owner, schedule or trigger
            ForbiddenError: Owner, schedule or trigger is disabled
        """
        body = body or {}
        if parse_unified_trigger_id(unified_id) is None:
            raise ValidationError("Invalid triggerId format")

        owner = self.get_owner(owner_id, owner_type)
        if not owner.is_active:
            raise ForbiddenError(f"{owner_type.capitalize()} '{owner_id}' is not active")

        source, item = self._lookup(owner, unified_id)
        overrides = {
            "input": body.get("input"),
            "context": body.get("context"),
            "max_steps": _pick(body, "max_steps", "maxSteps"),
            "environment": body.get("environment"),
        }

        if source == "schedule":
            if not item.is_active:
                raise ForbiddenError("Schedule is disabled")
            return await self.fire_schedule(item, overrides, advance=False)

        if not item.is_active:
            raise ForbiddenError("Trigger is disabled")

        payload = body.get("payload")
        if isinstance(payload, dict):
            payload_obj = payload
        elif body.get("input"):
            payload_obj = {"input": body["input"]}
        elif payload is not None:
            payload_obj = {"value": payload}
        else:
            payload_obj = {}

        if not matches_trigger_filter(payload_obj, item.filter):
            raise ValidationError("Trigger filter did not match payload")

        return await self.fire_trigger(item, payload_obj, overrides, EventType.AGENT_INVOKE)

    # ------------------------------------------------------------------
    # Inbound deliveries
    # ------------------------------------------------------------------

    async def _reject(
        self,
        event_id: str,
        trigger: TriggerRecord,
        status: int,
        message: str,
    ) -> DispatchResult:
        self.recorder.update(event_id, TriggerEventStatus.REJECTED, reason=message)
        logger.info("Trigger %s rejected delivery %s: %s", trigger.id, event_id, message)
        await self._publish(
            EventType.TRIGGER_REJECTED,
            {"trigger_id": trigger.id, "event_id": event_id, "reason": message, "status": status},
            event_id,
        )
        return DispatchResult(status, {"success": False, "error": message})

    async def handle_webhook(
        self,
        path: str,
        body: bytes | str,
        headers: Mapping[str, str] | None = None,
    ) -> DispatchResult:
        """Process one inbound webhook delivery."""
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        trigger = self.db.triggers.find_one(webhook_path=path)
        if trigger is None or trigger.is_archived:
            return DispatchResult(404, {"success": False, "error": "Webhook not found"})

        limit = self.rate_limiter.check(
            f"webhook:{path}", RateLimitPolicy(limit=self.config.rate_limit_per_minute)
        )
        if not limit.allowed:
            return DispatchResult(
                429, {"success": False, "error": "Rate limit exceeded", "reset_at": limit.reset_at}
            )

        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
        payload: Any = {}
        parse_error = None
        if text.strip():
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as e:
                parse_error = str(e)
                payload = {"raw": text[:1000]}

        snapshot = build_trigger_payload_snapshot(payload, headers, self.config.max_payload_bytes)
        event = self.recorder.create(
            trigger_id=trigger.id,
            webhook_path=path,
            payload=snapshot["payload"],
            headers=snapshot["headers"],
        )

        if not trigger.is_active:
            return await self._reject(event.id, trigger, 403, "Trigger is disabled")

        target = self._target_of(trigger)
        if target is None or not target.is_active:
            kind = "Agent" if trigger.agent_id else "Workflow"
            return await self._reject(event.id, trigger, 403, f"{kind} is disabled")

        if trigger.webhook_secret:
            try:
                verify_webhook_signature(
                    body,
                    trigger.webhook_secret,
                    headers.get(self.config.signature_header),
                    headers.get(self.config.timestamp_header),
                    tolerance=self.config.signature_tolerance_seconds,
                )
            except SignatureError as e:
                return await self._reject(event.id, trigger, 401, str(e))

        if parse_error:
            return await self._reject(event.id, trigger, 400, f"Invalid JSON payload: {parse_error}")

        normalized = snapshot["normalized_payload"]
        if not matches_trigger_filter(normalized, trigger.filter):
            self.recorder.update(
                event.id, TriggerEventStatus.SKIPPED, reason="Filter did not match payload"
            )
            return DispatchResult(
                200, {"success": True, "skipped": True, "event_id": event.id}
            )

        run_id = await self.fire_trigger(trigger, normalized)
        self.recorder.update(event.id, TriggerEventStatus.QUEUED, run_id=run_id)
        return DispatchResult(200, {"success": True, "event_id": event.id, "run_id": run_id})

    async def emit_event(
        self,
        event_name: str,
        payload: Any,
        organization_id: str | None = None,
    ) -> list[str]:
        """Fire every active event trigger listening for ``event_name``.

        Returns:
            Ids of the triggers that fired
        """
        normalized = payload if isinstance(payload, dict) else {"value": payload}
        fired = []

        candidates = self.db.triggers.list(
            lambda t: t.trigger_type == "event"
            and t.event_name == event_name
            and t.is_active
            and not t.is_archived
            and (organization_id is None or t.organization_id in (None, organization_id)),
            newest_first=False,
        )
        for trigger in candidates:
            target = self._target_of(trigger)
            if target is None or not target.is_active:
                continue

            snapshot = build_trigger_payload_snapshot(
                normalized, max_bytes=self.config.max_payload_bytes
            )
            event = self.recorder.create(
                trigger_id=trigger.id, event_name=event_name, payload=snapshot["payload"]
            )
            if not matches_trigger_filter(normalized, trigger.filter):
                self.recorder.update(
                    event.id, TriggerEventStatus.SKIPPED, reason="Filter did not match payload"
                )
                continue

            run_id = await self.fire_trigger(trigger, normalized)
            self.recorder.update(event.id, TriggerEventStatus.QUEUED, run_id=run_id)
            fired.append(trigger.id)

        logger.info("Event %s fired %d trigger(s)", event_name, len(fired))
        return fired
