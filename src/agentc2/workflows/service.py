"""Stored workflows and their runs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from agentc2.changelog import ChangelogRecorder
from agentc2.errors import NotFoundError, ValidationError
from agentc2.events import Event, EventBus, EventType
from agentc2.models.records import (
    AgentRunRecord,
    RunStatus,
    WorkflowRecord,
    WorkflowRunRecord,
    utcnow,
)
from agentc2.storage.json_store import Database
from agentc2.workflows.parsing import schema_errors
from agentc2.workflows.runtime import AgentStepHooks, WorkflowMeta, WorkflowRuntime
from agentc2.workflows.schemas import (
    ExecutionStep,
    ResumeInput,
    WorkflowDefinition,
    WorkflowExecutionResult,
)

logger = logging.getLogger(__name__)

_FINAL_STATUS = {
    "success": RunStatus.COMPLETED,
    "failed": RunStatus.FAILED,
    "suspended": RunStatus.SUSPENDED,
}

_FINAL_EVENT = {
    RunStatus.COMPLETED: EventType.WORKFLOW_RUN_COMPLETE,
    RunStatus.FAILED: EventType.WORKFLOW_RUN_FAILED,
    RunStatus.SUSPENDED: EventType.WORKFLOW_RUN_SUSPENDED,
}


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return int((completed_at - started_at).total_seconds() * 1000)


class _RunAgentHooks(AgentStepHooks):
    """Records an agent run for every agent step of a workflow run."""

    def __init__(self, db: Database, run: WorkflowRunRecord) -> None:
        self.db = db
        self.run = run

    async def on_agent_start(self, step_id: str, agent_slug: str, prompt: str) -> str | None:
        agent = self.db.find_agent(agent_slug)
        record = self.db.agent_runs.save(
            AgentRunRecord(
                agent_id=agent.id if agent else agent_slug,
                agent_slug=agent_slug,
                input=prompt,
                context={"workflow_run_id": self.run.id, "step_id": step_id},
                source="workflow",
                status=RunStatus.RUNNING,
            )
        )
        return record.id

    async def on_agent_complete(
        self,
        step_id: str,
        agent_run_id: str | None,
        agent_slug: str,
        output: str,
        duration_ms: int,
        model: str | None = None,
        total_tokens: int | None = None,
    ) -> None:
        record = self.db.agent_runs.get(agent_run_id)
        if record is None:
            return
        record.status = RunStatus.COMPLETED
        record.output = output
        record.total_tokens = total_tokens
        record.completed_at = utcnow()
        record.duration_ms = duration_ms
        self.db.agent_runs.save(record)

    async def on_agent_fail(
        self,
        step_id: str,
        agent_run_id: str | None,
        agent_slug: str,
        error: Exception,
        duration_ms: int,
    ) -> None:
        record = self.db.agent_runs.get(agent_run_id)
        if record is None:
            return
        record.status = RunStatus.FAILED
        record.error = str(error)
        record.completed_at = utcnow()
        record.duration_ms = duration_ms
        self.db.agent_runs.save(record)


class WorkflowService:
    """Create, version, execute and resume stored workflows.

    Usage:
        service = WorkflowService(db, runtime, bus, ChangelogRecorder(db))
        run, result = await service.execute("triage", {"ticket": "..."})
        if result.status == "suspended":
            await service.resume("triage", run.id, result.suspended.step_id, {"ok": True})
    """

    def __init__(
        self,
        db: Database,
        runtime: WorkflowRuntime,
        bus: EventBus | None = None,
        changelog: ChangelogRecorder | None = None,
    ) -> None:
        self.db = db
        self.runtime = runtime
        self.bus = bus
        self.changelog = changelog or ChangelogRecorder(db)
        if runtime.workflow_lookup is None:
            runtime.workflow_lookup = self.lookup_definition

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_definition(definition: dict[str, Any]) -> dict[str, Any]:
        try:
            WorkflowDefinition.model_validate(definition)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid workflow definition: {e}") from e
        return definition

    def get_workflow(self, id_or_slug: str) -> WorkflowRecord:
        workflow = self.db.find_workflow(id_or_slug)
        if workflow is None:
            raise NotFoundError(f"Workflow '{id_or_slug}' not found")
        return workflow

    def lookup_definition(self, id_or_slug: str) -> dict[str, Any] | None:
        workflow = self.db.find_workflow(id_or_slug)
        return workflow.definition if workflow and workflow.definition else None

    def create_workflow(
        self,
        slug: str,
        definition: dict[str, Any],
        name: str = "",
        organization_id: str | None = None,
        workspace_id: str | None = None,
    ) -> WorkflowRecord:
        if not slug:
            raise ValidationError("Workflow slug is required")
        if self.db.workflows.find_one(slug=slug):
            raise ValidationError(f"Workflow '{slug}' already exists")

        workflow = WorkflowRecord(
            slug=slug,
            name=name or slug,
            definition=self._validate_definition(definition),
            organization_id=organization_id,
            workspace_id=workspace_id,
        )
        self.db.workflows.save(workflow)
        logger.info("Created workflow %s", slug)
        return workflow

    def update_workflow(
        self,
        slug: str,
        definition: dict[str, Any] | None = None,
        name: str | None = None,
        is_active: bool | None = None,
        actor: str | None = None,
    ) -> WorkflowRecord:
        """Apply changes, bumping the version and logging a changelog entry."""
        workflow = self.get_workflow(slug)
        before = workflow.model_dump(mode="json", include={"name", "definition", "is_active"})

        if definition is not None:
            workflow.definition = self._validate_definition(definition)
        if name is not None:
            workflow.name = name
        if is_active is not None:
            workflow.is_active = is_active

        after = workflow.model_dump(mode="json", include={"name", "definition", "is_active"})
        entry = self.changelog.record(
            "workflow", workflow.id, before, after, actor=actor, version=workflow.version + 1
        )
        if entry is not None:
            workflow.version += 1
            self.db.workflows.save(workflow)
        return workflow

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def _emit(self, event_type: EventType, run: WorkflowRunRecord, **data: Any) -> None:
        if self.bus is None:
            return
        await self.bus.emit(
            Event(
                type=event_type,
                source="workflow_service",
                data={
                    "run_id": run.id,
                    "workflow_slug": run.workflow_slug,
                    "status": run.status.value,
                    **data,
                },
                correlation_id=run.id,
            )
        )

    async def _run(
        self,
        workflow: WorkflowRecord,
        run: WorkflowRunRecord,
        request_context: dict[str, Any] | None,
        resume: ResumeInput | None = None,
        existing_steps: dict[str, Any] | None = None,
    ) -> WorkflowExecutionResult:
        prior_steps = list(run.steps)

        async def on_step(step: ExecutionStep) -> None:
            run.steps.append(step.model_dump(mode="json"))
            self.db.workflow_runs.save(run)
            await self._emit(
                EventType.WORKFLOW_STEP, run, step_id=step.step_id, step_status=step.status
            )

        context = {"organization_id": workflow.organization_id, **(request_context or {})}
        result = await self.runtime.execute(
            workflow.definition,
            run.input,
            resume=resume,
            existing_steps=existing_steps,
            on_step_event=on_step,
            request_context=context,
            workflow_meta=WorkflowMeta(run_id=run.id, workflow_slug=workflow.slug),
            agent_hooks=_RunAgentHooks(self.db, run),
        )

        run.steps = prior_steps + [s.model_dump(mode="json") for s in result.steps]
        run.status = _FINAL_STATUS[result.status]
        run.output = result.output
        run.error = result.error
        if result.suspended:
            run.suspended_step = result.suspended.step_id
            run.suspend_data = result.suspended.data
            run.completed_at = None
            run.duration_ms = None
        else:
            run.suspended_step = None
            run.suspend_data = None
            run.completed_at = utcnow()
            run.duration_ms = _duration_ms(run.started_at, run.completed_at)
        self.db.workflow_runs.save(run)

        logger.info("Workflow run %s (%s) finished: %s", run.id, workflow.slug, run.status.value)
        await self._emit(_FINAL_EVENT[run.status], run, error=run.error)
        return result

    async def execute(
        self,
        slug: str,
        input: Any = None,
        request_context: dict[str, Any] | None = None,
        source: str = "api",
        trigger_id: str | None = None,
        run_id: str | None = None,
    ) -> tuple[WorkflowRunRecord, WorkflowExecutionResult]:
        """Start a run of a stored workflow.

        With ``run_id`` naming a QUEUED run of this workflow, that record is
        started instead of creating a new one. It is marked FAILED when the
        workflow cannot run.

        Raises:
            NotFoundError: Unknown or inactive workflow
            ValidationError: Input violates the definition's input schema
        """
        queued = self.db.workflow_runs.get(run_id) if run_id else None
        if queued is not None and queued.status != RunStatus.QUEUED:
            queued = None

        try:
            workflow = self.get_workflow(slug)
            if not workflow.is_active:
                raise NotFoundError(f"Workflow '{slug}' is not active")

            input_schema = workflow.definition.get("inputSchema") or workflow.definition.get(
                "input_schema"
            )
            if input_schema:
                problems = schema_errors(input, input_schema)
                if problems:
                    raise ValidationError("Invalid workflow input: " + "; ".join(problems))
        except (NotFoundError, ValidationError) as e:
            if queued is not None:
                queued.status = RunStatus.FAILED
                queued.error = str(e)
                queued.completed_at = utcnow()
                self.db.workflow_runs.save(queued)
            raise

        if queued is not None and queued.workflow_id == workflow.id:
            run = queued
            run.status = RunStatus.RUNNING
            run.started_at = utcnow()
            self.db.workflow_runs.save(run)
        else:
            run = self.db.workflow_runs.save(
                WorkflowRunRecord(
                    workflow_id=workflow.id,
                    workflow_slug=workflow.slug,
                    input=input,
                    source=source,
                    trigger_id=trigger_id,
                    organization_id=workflow.organization_id,
                )
            )
        await self._emit(EventType.WORKFLOW_RUN_START, run, source=source)

        result = await self._run(workflow, run, request_context)
        return run, result

    async def resume(
        self,
        slug: str,
        run_id: str,
        step_id: str,
        data: Any = None,
        request_context: dict[str, Any] | None = None,
    ) -> tuple[WorkflowRunRecord, WorkflowExecutionResult]:
        """Continue a suspended run with the human response for ``step_id``.

        Raises:
            NotFoundError: Unknown run, or run of another workflow
            ValidationError: Run is not suspended, or waits on another step
        """
        workflow = self.get_workflow(slug)
        run = self.get_run(slug, run_id)

        if run.status != RunStatus.SUSPENDED:
            raise ValidationError(f"Run {run_id} is not suspended (status {run.status.value})")
        if run.suspended_step and run.suspended_step != step_id:
            raise ValidationError(
                f"Run {run_id} is waiting on step '{run.suspended_step}', not '{step_id}'"
            )

        # Completed top-level outputs are replayed, the suspended record is dropped
        existing = {
            s["step_id"]: s.get("output")
            for s in run.steps
            if s.get("status") == "completed" and s.get("iteration_index") is None
        }
        run.steps = [s for s in run.steps if s.get("status") != "suspended"]
        run.status = RunStatus.RUNNING
        self.db.workflow_runs.save(run)
        await self._emit(EventType.WORKFLOW_RUN_RESUMED, run, step_id=step_id)

        result = await self._run(
            workflow,
            run,
            request_context,
            resume=ResumeInput(step_id=step_id, data=data),
            existing_steps=existing,
        )
        return run, result

    def get_run(self, slug: str, run_id: str) -> WorkflowRunRecord:
        workflow = self.get_workflow(slug)
        run = self.db.workflow_runs.get(run_id)
        if run is None or run.workflow_id != workflow.id:
            raise NotFoundError(f"Run '{run_id}' not found")
        return run

    def list_runs(
        self,
        slug: str,
        status: RunStatus | str | None = None,
        limit: int = 50,
    ) -> list[WorkflowRunRecord]:
        workflow = self.get_workflow(slug)
        try:
            wanted = RunStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Unknown run status '{status}'") from None
        return self.db.workflow_runs.list(
            lambda r: r.workflow_id == workflow.id and (wanted is None or r.status == wanted),
            limit=limit,
        )
