"""HTTP API for workflows, execution triggers, inbound webhooks and billing."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from aiohttp import web

from agentc2.agents.resolver import AgentResolver
from agentc2.billing import StripeWebhookHandler
from agentc2.changelog import ChangelogRecorder
from agentc2.config import AgentC2Config, get_default_config
from agentc2.errors import AgentC2Error, ValidationError
from agentc2.events import EventBus
from agentc2.models.records import AgentRecord
from agentc2.providers import LLMProvider, get_provider
from agentc2.queue import JobQueue
from agentc2.runs import AgentInvoker
from agentc2.storage.json_store import Database
from agentc2.tools import ToolRegistry
from agentc2.triggers import RateLimiter, ScheduleRunner, TriggerDispatcher
from agentc2.workflows import WorkflowRuntime, WorkflowService

logger = logging.getLogger(__name__)

_dumps = functools.partial(json.dumps, default=str)


@dataclass
class Services:
    """Everything the HTTP handlers need, wired together."""

    config: AgentC2Config
    db: Database
    bus: EventBus
    queue: JobQueue
    tools: ToolRegistry
    resolver: AgentResolver
    runtime: WorkflowRuntime
    workflows: WorkflowService
    changelog: ChangelogRecorder
    dispatcher: TriggerDispatcher
    invoker: AgentInvoker
    schedules: ScheduleRunner
    stripe: StripeWebhookHandler
    http: httpx.AsyncClient
    _bus_task: asyncio.Task | None = field(default=None, repr=False)

    async def start(self, run_schedules: bool = True) -> None:
        self._bus_task = asyncio.create_task(self.bus.run())
        await self.queue.start()
        self.invoker.attach()
        if run_schedules:
            await self.schedules.start()
        logger.info("Services started (storage: %s)", self.config.storage_dir)

    async def stop(self) -> None:
        await self.schedules.stop()
        self.invoker.detach()
        await self.queue.stop()
        self.bus.stop()
        if self._bus_task:
            self._bus_task.cancel()
            try:
                await self._bus_task
            except asyncio.CancelledError:
                pass
            self._bus_task = None
        await self.http.aclose()


def build_services(
    config: AgentC2Config | None = None,
    provider_factory: Callable[[AgentRecord], LLMProvider] | None = None,
    tool_registry: ToolRegistry | None = None,
) -> Services:
    """Wire storage, bus, queue, runtime and dispatch from ``config``."""
    config = config or get_default_config()
    db = Database(config.storage_dir)
    bus = EventBus()
    queue = JobQueue(
        max_concurrent=config.queue.max_concurrent,
        max_completed_jobs=config.queue.max_completed_jobs,
    )
    tools = tool_registry or ToolRegistry()

    if provider_factory is None:
        provider_factory = functools.partial(_default_provider, config)

    resolver = AgentResolver(db, provider_factory, tools)
    runtime = WorkflowRuntime(resolver, tools, config=config.workflows)
    changelog = ChangelogRecorder(db)
    workflows = WorkflowService(db, runtime, bus, changelog)
    dispatcher = TriggerDispatcher(db, bus, RateLimiter(), config=config.webhooks)
    http = httpx.AsyncClient(timeout=30.0)

    return Services(
        config=config,
        db=db,
        bus=bus,
        queue=queue,
        tools=tools,
        resolver=resolver,
        runtime=runtime,
        workflows=workflows,
        changelog=changelog,
        dispatcher=dispatcher,
        invoker=AgentInvoker(db, resolver, queue, workflows, bus),
        schedules=ScheduleRunner(dispatcher, interval=config.queue.schedule_poll_seconds),
        stripe=StripeWebhookHandler(config.stripe, db, http, bus),
        http=http,
    )


def _default_provider(config: AgentC2Config, record: AgentRecord) -> LLMProvider:
    return get_provider(config.provider, record.model)


SERVICES = web.AppKey("services", Services)
RUN_SCHEDULES = web.AppKey("run_schedules", bool)


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


async def _body(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body. An empty body is an empty object."""
    raw = await request.text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON body") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _limit(request: web.Request, default: int = 50) -> int:
    try:
        limit = int(request.query.get("limit", default))
    except ValueError:
        raise ValidationError("limit must be an integer") from None
    if limit < 1:
        raise ValidationError("limit must be positive")
    return limit


def _services(request: web.Request) -> Services:
    return request.app[SERVICES]


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except AgentC2Error as e:
        return _json(e.to_dict(), status=e.status)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error("Unhandled error on %s %s: %s", request.method, request.path, e, exc_info=True)
        return _json({"success": False, "error": "Internal server error"}, status=500)


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------


async def health_handler(request: web.Request) -> web.Response:
    services = _services(request)
    return _json(
        {
            "status": "ok",
            "queue": await services.queue.get_queue_info(),
            "events": services.bus.get_metrics(),
            "schedules_running": services.schedules.is_running,
            "stripe_enabled": services.stripe.enabled,
        }
    )


# ----------------------------------------------------------------------
# Workflows
# ----------------------------------------------------------------------


async def api_workflow_create_handler(request: web.Request) -> web.Response:
    body = await _body(request)
    workflow = _services(request).workflows.create_workflow(
        slug=body.get("slug", ""),
        definition=body.get("definition") or {},
        name=body.get("name", ""),
        organization_id=body.get("organization_id"),
        workspace_id=body.get("workspace_id"),
    )
    return _json({"success": True, "workflow": workflow.model_dump(mode="json")}, status=201)


async def api_workflow_detail_handler(request: web.Request) -> web.Response:
    workflow = _services(request).workflows.get_workflow(request.match_info["slug"])
    return _json({"success": True, "workflow": workflow.model_dump(mode="json")})


async def api_workflow_update_handler(request: web.Request) -> web.Response:
    body = await _body(request)
    workflow = _services(request).workflows.update_workflow(
        request.match_info["slug"],
        definition=body.get("definition"),
        name=body.get("name"),
        is_active=body.get("is_active"),
        actor=body.get("actor") or request.headers.get("X-Actor"),
    )
    return _json({"success": True, "workflow": workflow.model_dump(mode="json")})


async def api_workflow_changelog_handler(request: web.Request) -> web.Response:
    services = _services(request)
    workflow = services.workflows.get_workflow(request.match_info["slug"])
    limit = _limit(request)
    entries = services.changelog.list("workflow", workflow.id, limit=limit)
    return _json({"success": True, "entries": [e.model_dump(mode="json") for e in entries]})


def _result_body(run_id: str, result) -> dict[str, Any]:
    data = result.model_dump(mode="json")
    return {
        "success": result.status != "failed",
        "run_id": run_id,
        "status": result.status,
        "output": data["output"],
        "suspended": data["suspended"],
        "steps": data["steps"],
        "error": result.error,
    }


async def api_workflow_execute_handler(request: web.Request) -> web.Response:
    body = await _body(request)
    run, result = await _services(request).workflows.execute(
        request.match_info["slug"],
        body.get("input"),
        request_context=body.get("context"),
    )
    return _json(_result_body(run.id, result))


async def api_workflow_resume_handler(request: web.Request) -> web.Response:
    body = await _body(request)
    step_id = body.get("step_id") or body.get("stepId")
    if not step_id:
        raise ValidationError("Missing required field: step_id")
    run, result = await _services(request).workflows.resume(
        request.match_info["slug"],
        request.match_info["run_id"],
        step_id,
        body.get("data"),
        request_context=body.get("context"),
    )
    return _json(_result_body(run.id, result))


async def api_workflow_runs_handler(request: web.Request) -> web.Response:
    runs = _services(request).workflows.list_runs(
        request.match_info["slug"],
        status=request.query.get("status"),
        limit=_limit(request),
    )
    return _json({"success": True, "runs": [r.model_dump(mode="json") for r in runs]})


async def api_workflow_run_detail_handler(request: web.Request) -> web.Response:
    run = _services(request).workflows.get_run(
        request.match_info["slug"], request.match_info["run_id"]
    )
    return _json({"success": True, "run": run.model_dump(mode="json")})


# ----------------------------------------------------------------------
# Agents and execution triggers
# ----------------------------------------------------------------------


async def api_agent_invoke_handler(request: web.Request) -> web.Response:
    body = await _body(request)
    prompt = body.get("input")
    if not prompt:
        raise ValidationError("Missing required field: input")
    run, job = await _services(request).invoker.invoke(
        request.match_info["id"],
        str(prompt),
        context=body.get("context"),
        max_steps=body.get("max_steps"),
        wait=body.get("wait", True) is not False,
    )
    return _json({"success": True, "run": run.model_dump(mode="json"), "job": job.to_dict()})


def _owner(request: web.Request) -> tuple[str, str]:
    owner_type = request.match_info.get("owner", "agents").rstrip("s")
    return request.match_info["id"], owner_type


async def api_triggers_list_handler(request: web.Request) -> web.Response:
    owner_id, owner_type = _owner(request)
    triggers = _services(request).dispatcher.list_triggers(owner_id, owner_type)
    return _json({"success": True, "triggers": triggers})


async def api_triggers_create_handler(request: web.Request) -> web.Response:
    owner_id, owner_type = _owner(request)
    body = await _body(request)
    created = _services(request).dispatcher.create_trigger(owner_id, body, owner_type)
    return _json({"success": True, **created}, status=201)


async def api_trigger_detail_handler(request: web.Request) -> web.Response:
    owner_id, owner_type = _owner(request)
    trigger = _services(request).dispatcher.get_trigger(
        owner_id, request.match_info["trigger_id"], owner_type
    )
    return _json({"success": True, "trigger": trigger})


async def api_trigger_update_handler(request: web.Request) -> web.Response:
    owner_id, owner_type = _owner(request)
    body = await _body(request)
    trigger = _services(request).dispatcher.update_trigger(
        owner_id, request.match_info["trigger_id"], body, owner_type
    )
    return _json({"success": True, "trigger": trigger})


async def api_trigger_delete_handler(request: web.Request) -> web.Response:
    owner_id, owner_type = _owner(request)
    message = _services(request).dispatcher.delete_trigger(
        owner_id, request.match_info["trigger_id"], owner_type
    )
    return _json({"success": True, "message": message})


async def api_trigger_execute_handler(request: web.Request) -> web.Response:
    owner_id, owner_type = _owner(request)
    body = await _body(request)
    run_id = await _services(request).dispatcher.execute_trigger(
        owner_id, request.match_info["trigger_id"], body, owner_type
    )
    return _json({"success": True, "run_id": run_id})


async def api_trigger_events_handler(request: web.Request) -> web.Response:
    owner_id, owner_type = _owner(request)
    services = _services(request)
    trigger = services.dispatcher.get_trigger(
        owner_id, request.match_info["trigger_id"], owner_type
    )
    events = services.dispatcher.recorder.list_for_trigger(
        trigger["source_id"], limit=_limit(request)
    )
    return _json({"success": True, "events": [e.model_dump(mode="json") for e in events]})


# ----------------------------------------------------------------------
# Inbound deliveries
# ----------------------------------------------------------------------


async def api_webhook_handler(request: web.Request) -> web.Response:
    result = await _services(request).dispatcher.handle_webhook(
        request.match_info["path"],
        await request.read(),
        dict(request.headers),
    )
    return _json(result.body, status=result.status)


async def api_event_handler(request: web.Request) -> web.Response:
    body = await _body(request)
    fired = await _services(request).dispatcher.emit_event(
        request.match_info["event_name"],
        body.get("payload", body),
        organization_id=body.get("organization_id") or request.headers.get("X-Organization-Id"),
    )
    return _json({"success": True, "triggered": fired})


async def api_stripe_webhook_handler(request: web.Request) -> web.Response:
    status, body = await _services(request).stripe.handle(
        await request.read(),
        request.headers.get("Stripe-Signature"),
    )
    return _json(body, status=status)


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------


async def on_startup(app: web.Application) -> None:
    """Start the event bus loop, job queue, invoker and schedule runner."""
    await app[SERVICES].start(run_schedules=app[RUN_SCHEDULES])


async def on_cleanup(app: web.Application) -> None:
    await app[SERVICES].stop()


def create_app(
    config: AgentC2Config | None = None,
    services: Services | None = None,
    run_schedules: bool = True,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[SERVICES] = services or build_services(config)
    app[RUN_SCHEDULES] = run_schedules

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get('/api/health', health_handler)

    app.router.add_post('/api/workflows', api_workflow_create_handler)
    app.router.add_get('/api/workflows/{slug}', api_workflow_detail_handler)
    app.router.add_put('/api/workflows/{slug}', api_workflow_update_handler)
    app.router.add_get('/api/workflows/{slug}/changelog', api_workflow_changelog_handler)
    app.router.add_post('/api/workflows/{slug}/execute', api_workflow_execute_handler)
    app.router.add_get('/api/workflows/{slug}/runs', api_workflow_runs_handler)
    app.router.add_get('/api/workflows/{slug}/runs/{run_id}', api_workflow_run_detail_handler)
    app.router.add_post(
        '/api/workflows/{slug}/runs/{run_id}/resume', api_workflow_resume_handler
    )

    app.router.add_post('/api/agents/{id}/invoke', api_agent_invoke_handler)

    # Execution triggers, for agents and workflows alike
    base = '/api/{owner:agents|workflows}/{id}/execution-triggers'
    app.router.add_get(base, api_triggers_list_handler)
    app.router.add_post(base, api_triggers_create_handler)
    app.router.add_get(base + '/{trigger_id}', api_trigger_detail_handler)
    app.router.add_patch(base + '/{trigger_id}', api_trigger_update_handler)
    app.router.add_delete(base + '/{trigger_id}', api_trigger_delete_handler)
    app.router.add_post(base + '/{trigger_id}/execute', api_trigger_execute_handler)
    app.router.add_get(base + '/{trigger_id}/events', api_trigger_events_handler)

    # Stripe must be registered before the generic webhook path
    app.router.add_post('/api/webhooks/stripe', api_stripe_webhook_handler)
    app.router.add_post('/api/webhooks/{path}', api_webhook_handler)
    app.router.add_post('/api/events/{event_name}', api_event_handler)

    return app


def run_server(
    host: str = '0.0.0.0',
    port: int = 8080,
    config: AgentC2Config | None = None,
) -> None:
    """Run the web server."""
    config = config or get_default_config()
    app = create_app(config)
    print(f"\n{'='*60}")
    print("  AGENTC2 WORKFLOW SERVER")
    print(f"{'='*60}")
    print(f"  API:          http://{host}:{port}/api")
    print(f"  Webhooks:     http://{host}:{port}/api/webhooks/<path>")
    print(f"  Storage:      {config.storage_dir}")
    print(f"  Provider:     {config.provider.name} ({config.provider.model})")
    print(f"  Stripe:       {'enabled' if config.stripe.enabled else 'disabled'}")
    print()
    print("  Press Ctrl+C to stop")
    print(f"{'='*60}\n")
    web.run_app(app, host=host, port=port, print=None)
