"""Step-graph runner for stored workflow definitions.

A definition is an ordered list of steps. Control-flow steps (branch,
parallel, foreach, dowhile) carry nested step lists. Execution can pause on
a ``human`` step. The caller persists the completed step outputs and later
calls ``execute`` again with them as ``existing_steps`` and a ``resume``
payload for the waiting step.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from agentc2.config import WorkflowConfig
from agentc2.tools.registry import ToolRegistry, call_tool
from agentc2.workflows.expressions import (
    ExpressionError,
    build_context,
    evaluate_condition,
    get_value_at_path,
    resolve_input_mapping,
    resolve_template,
)
from agentc2.workflows.parsing import (
    OutputParseError,
    parse_agent_json_output,
    schema_errors,
    unwrap_tool_result,
    validate_agent_output,
)
from agentc2.workflows.schemas import (
    AgentStepConfig,
    BranchConfig,
    DoWhileConfig,
    ExecutionStep,
    ForeachConfig,
    HumanConfig,
    ParallelConfig,
    ResumeInput,
    StepType,
    SuspendInfo,
    ToolStepConfig,
    WorkflowCallConfig,
    WorkflowDefinition,
    WorkflowExecutionResult,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

StepEventHandler = Callable[[ExecutionStep], Any]
WorkflowLookup = Callable[[str], "WorkflowDefinition | dict[str, Any] | None"]


class StepError(Exception):
    """A step could not run (bad config, missing agent or tool, failed condition)."""


class AgentResolverLike(Protocol):
    async def resolve(self, slug: str, request_context: dict[str, Any] | None = None) -> Any: ...


class AgentStepHooks:
    """Callbacks around agent steps. Subclass and override what you need."""

    async def on_agent_start(self, step_id: str, agent_slug: str, prompt: str) -> str | None:
        """Return an agent run id to attach to the step record."""
        return None

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
        pass

    async def on_agent_fail(
        self,
        step_id: str,
        agent_run_id: str | None,
        agent_slug: str,
        error: Exception,
        duration_ms: int,
    ) -> None:
        pass


@dataclass
class WorkflowMeta:
    run_id: str | None = None
    workflow_slug: str | None = None


@dataclass
class _Options:
    resume: ResumeInput | None = None
    existing_steps: dict[str, Any] | None = None
    on_step_event: StepEventHandler | None = None
    request_context: dict[str, Any] | None = None
    depth: int = 0
    workflow_meta: WorkflowMeta | None = None
    agent_hooks: AgentStepHooks | None = None
    iteration_index: int | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {"value": value}


def _aggregate(results: list[WorkflowExecutionResult]) -> tuple[str, Any, SuspendInfo | None]:
    """Combine sibling results: any failure wins, then any suspension."""
    for result in results:
        if result.status == "failed":
            return "failed", result.error or result.output, None
    for result in results:
        if result.status == "suspended":
            return "suspended", result.output, result.suspended
    return "success", [result.output for result in results], None


class WorkflowRuntime:
    """Executes workflow definitions.

    Args:
        agent_resolver: Object with ``async resolve(slug, request_context)``
            returning something with ``async generate(prompt, max_steps)``
        tool_registry: Tools available to tool steps
        workflow_lookup: Finds nested workflow definitions by id or slug
        config: Runtime limits
    """

    def __init__(
        self,
        agent_resolver: AgentResolverLike | None = None,
        tool_registry: ToolRegistry | None = None,
        workflow_lookup: WorkflowLookup | None = None,
        config: WorkflowConfig | None = None,
    ) -> None:
        self.agent_resolver = agent_resolver
        self.tool_registry = tool_registry or ToolRegistry()
        self.workflow_lookup = workflow_lookup
        self.config = config or WorkflowConfig()

    async def execute(
        self,
        definition: WorkflowDefinition | dict[str, Any],
        input: Any = None,
        resume: ResumeInput | dict[str, Any] | None = None,
        existing_steps: dict[str, Any] | None = None,
        on_step_event: StepEventHandler | None = None,
        request_context: dict[str, Any] | None = None,
        depth: int = 0,
        workflow_meta: WorkflowMeta | None = None,
        agent_hooks: AgentStepHooks | None = None,
    ) -> WorkflowExecutionResult:
        """Run a definition to completion, failure or suspension."""
        if depth > self.config.max_nesting_depth:
            return WorkflowExecutionResult(
                status="failed",
                output=None,
                error="Maximum workflow nesting depth exceeded",
            )

        if isinstance(definition, dict):
            definition = WorkflowDefinition.model_validate(definition)
        if isinstance(resume, dict):
            resume = ResumeInput.model_validate(resume)

        context = build_context(input, existing_steps, env_prefix=self.config.env_prefix)
        options = _Options(
            resume=resume,
            existing_steps=existing_steps,
            on_step_event=on_step_event,
            request_context=request_context,
            depth=depth,
            workflow_meta=workflow_meta,
            agent_hooks=agent_hooks,
        )
        return await self._execute_steps(definition.steps, context, options)

    async def _execute_steps(
        self,
        steps: list[WorkflowStep],
        context: dict[str, Any],
        options: _Options,
    ) -> WorkflowExecutionResult:
        records: list[ExecutionStep] = []
        skip = set(options.existing_steps or {})

        for step in steps:
            if step.id in skip:
                continue

            started_at = _now()
            step_input = resolve_input_mapping(step.input_mapping, context)

            try:
                status, output, suspended, agent_run_id = await self._run_step(
                    step, step_input, context, options, records
                )
            except Exception as e:
                record = self._record(step, "failed", step_input, started_at, options, error=str(e))
                records.append(record)
                await self._emit(options, record)
                logger.info("Workflow step %s failed: %s", step.id, e)
                return WorkflowExecutionResult(
                    status="failed",
                    output=record.error,
                    steps=records,
                    error=record.error,
                )

            if status == "failed":
                # A nested scope failed and already recorded its own failing step
                error = output if isinstance(output, str) else json.dumps(output, default=str)
                record = self._record(step, "failed", step_input, started_at, options, error=error)
                records.append(record)
                await self._emit(options, record)
                return WorkflowExecutionResult(
                    status="failed",
                    output=output,
                    steps=records,
                    error=error,
                )

            record = self._record(
                step,
                "suspended" if status == "suspended" else "completed",
                step_input,
                started_at,
                options,
                output=output,
                agent_run_id=agent_run_id,
            )
            records.append(record)
            context["steps"][step.id] = output
            await self._emit(options, record)

            if status == "suspended":
                return WorkflowExecutionResult(
                    status="suspended",
                    output=output,
                    steps=records,
                    suspended=suspended,
                )

        output = context["steps"].get(steps[-1].id) if steps else None
        return WorkflowExecutionResult(status="success", output=output, steps=records)

    async def _run_step(
        self,
        step: WorkflowStep,
        step_input: Any,
        context: dict[str, Any],
        options: _Options,
        records: list[ExecutionStep],
    ) -> tuple[str, Any, SuspendInfo | None, str | None]:
        """Dispatch one step. Returns (status, output, suspended, agent_run_id)."""
        if step.type == StepType.AGENT:
            output, agent_run_id = await self._agent_step(step, context, options)
            return "success", output, None, agent_run_id

        if step.type == StepType.TOOL:
            return "success", await self._tool_step(step, context, options), None, None

        if step.type == StepType.WORKFLOW:
            result = await self._workflow_step(step, context, options)
            records.extend(result.steps)
            if result.status == "failed":
                return "failed", result.error or result.output, None, None
            return result.status, result.output, result.suspended, None

        if step.type == StepType.BRANCH:
            return (*await self._branch_step(step, context, options, records), None)

        if step.type == StepType.PARALLEL:
            config = ParallelConfig.model_validate(step.config)
            results = await asyncio.gather(
                *[
                    self._execute_steps(branch.steps, self._fork(context), options)
                    for branch in config.branches
                ]
            )
            for result in results:
                records.extend(result.steps)
            return (*_aggregate(list(results)), None)

        if step.type == StepType.FOREACH:
            return (*await self._foreach_step(step, context, options, records), None)

        if step.type == StepType.DOWHILE:
            return (*await self._dowhile_step(step, step_input, context, options, records), None)

        if step.type == StepType.HUMAN:
            return (*self._human_step(step, options), None)

        if step.type == StepType.DELAY:
            delay_ms = step.config.get("delay_ms", step.config.get("delayMs", 0))
            if not isinstance(delay_ms, (int, float)) or isinstance(delay_ms, bool):
                delay_ms = 0
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)
            return "success", {"delayed_ms": delay_ms}, None, None

        # transform and unknown step types pass their input through
        return "success", step_input, None, None

    async def _agent_step(
        self,
        step: WorkflowStep,
        context: dict[str, Any],
        options: _Options,
    ) -> tuple[Any, str | None]:
        config = AgentStepConfig.model_validate(step.config)
        agent_slug = config.agent_slug
        if not agent_slug:
            raise StepError(f'Agent step "{step.id}" missing agent_slug')
        if self.agent_resolver is None:
            raise StepError(f'Agent step "{step.id}" cannot run without an agent resolver')

        prompt = resolve_template(config.prompt_template, context)
        if not isinstance(prompt, str):
            prompt = json.dumps(prompt, default=str)
        agent = await self.agent_resolver.resolve(agent_slug, options.request_context)

        hooks = options.agent_hooks
        agent_run_id: str | None = None
        start = _now()

        try:
            if hooks:
                agent_run_id = await hooks.on_agent_start(step.id, agent_slug, prompt)

            response = await agent.generate(prompt, max_steps=config.max_steps)
            duration_ms = int((_now() - start).total_seconds() * 1000)

            if hooks:
                await hooks.on_agent_complete(
                    step.id,
                    agent_run_id,
                    agent_slug,
                    response.text,
                    duration_ms,
                    model=getattr(response, "model", None),
                    total_tokens=getattr(response, "total_tokens", None),
                )

            if config.output_format == "json":
                try:
                    parsed = parse_agent_json_output(response.text or "", step.id)
                    output = validate_agent_output(parsed, config.output_schema, step.id)
                except OutputParseError as e:
                    raise StepError(
                        f'Agent step "{step.id}" ({agent_slug}) failed to produce '
                        f"valid JSON output. {e}"
                    ) from e
            else:
                output = {
                    "text": response.text,
                    "result": response.text,
                    "tool_calls": list(getattr(response, "tool_calls", None) or []),
                    "_agent_slug": agent_slug,
                }
            return output, agent_run_id
        except Exception as e:
            if hooks:
                duration_ms = int((_now() - start).total_seconds() * 1000)
                await hooks.on_agent_fail(step.id, agent_run_id, agent_slug, e, duration_ms)
            raise

    async def _tool_step(
        self,
        step: WorkflowStep,
        context: dict[str, Any],
        options: _Options,
    ) -> Any:
        config = ToolStepConfig.model_validate(step.config)
        if not config.tool_id:
            raise StepError(f'Tool step "{step.id}" missing tool_id')

        organization_id = (options.request_context or {}).get("organization_id")
        tool = self.tool_registry.get(config.tool_id, organization_id)
        if tool is None:
            raise StepError(f'Tool "{config.tool_id}" not found')

        tool_input = resolve_input_mapping(step.input_mapping or config.parameters, context)
        if isinstance(tool_input, dict):
            tool_input = dict(tool_input)
            if organization_id:
                tool_input.setdefault("organization_id", organization_id)
            meta = options.workflow_meta
            if meta:
                if meta.workflow_slug:
                    tool_input.setdefault("workflow_slug", meta.workflow_slug)
                if meta.run_id:
                    tool_input.setdefault("run_id", meta.run_id)
                tool_input.setdefault("step_id", step.id)

        return unwrap_tool_result(await call_tool(tool, tool_input))

    async def _workflow_step(
        self,
        step: WorkflowStep,
        context: dict[str, Any],
        options: _Options,
    ) -> WorkflowExecutionResult:
        config = WorkflowCallConfig.model_validate(step.config)
        if not config.workflow_id:
            raise StepError(f'Workflow step "{step.id}" missing workflow_id')

        definition = self.workflow_lookup(config.workflow_id) if self.workflow_lookup else None
        if inspect.isawaitable(definition):
            definition = await definition
        if not definition:
            raise StepError(f'Workflow "{config.workflow_id}" not found')

        nested_input = resolve_input_mapping(step.input_mapping or config.input, context)
        return await self.execute(
            definition,
            nested_input,
            resume=options.resume,
            request_context=options.request_context,
            depth=options.depth + 1,
            agent_hooks=options.agent_hooks,
        )

    async def _branch_step(
        self,
        step: WorkflowStep,
        context: dict[str, Any],
        options: _Options,
        records: list[ExecutionStep],
    ) -> tuple[str, Any, SuspendInfo | None]:
        config = BranchConfig.model_validate(step.config)
        selected = None
        evaluations: list[dict[str, Any]] = []

        for branch in config.branches:
            try:
                matched = evaluate_condition(branch.condition, context)
            except ExpressionError as e:
                raise StepError(
                    f"[Branch: {step.id}] Branch condition evaluation failed.\n"
                    f"Branch ID: {branch.id or 'unnamed'}\n"
                    f"Condition: {branch.condition}\n"
                    f"Error: {e}"
                ) from e
            evaluations.append(
                {"branch_id": branch.id, "condition": branch.condition, "result": matched}
            )
            if matched:
                selected = branch
                break

        if selected is not None:
            branch_steps = selected.steps
        elif config.default_branch is not None:
            branch_steps = config.default_branch
        else:
            branch_steps = []
            logger.warning(
                "Branch %s: no condition matched and no default_branch defined (%s)",
                step.id,
                "; ".join(f"{e['branch_id'] or 'unnamed'}: {e['condition']}" for e in evaluations),
            )

        result = await self._execute_steps(branch_steps, context, options)
        records.extend(result.steps)
        output = {
            "branch_id": selected.id if selected else None,
            "result": result.output,
            "_evaluation_results": evaluations,
        }
        if result.status == "failed":
            return "failed", result.error, None
        return result.status, output, result.suspended

    async def _foreach_step(
        self,
        step: WorkflowStep,
        context: dict[str, Any],
        options: _Options,
        records: list[ExecutionStep],
    ) -> tuple[str, Any, SuspendInfo | None]:
        config = ForeachConfig.model_validate(step.config)
        collection = get_value_at_path(context, config.collection_path)
        if not isinstance(collection, list):
            raise StepError(f'Foreach step "{step.id}" collection is not an array')

        pending = list(enumerate(collection))
        results: dict[int, WorkflowExecutionResult] = {}

        async def worker() -> None:
            while pending:
                index, item = pending.pop(0)
                iteration = self._fork(context, {config.item_var: item, "index": index})
                results[index] = await self._execute_steps(
                    config.steps, iteration, replace(options, iteration_index=index)
                )

        await asyncio.gather(*[worker() for _ in range(max(1, config.concurrency))])

        ordered = [results[i] for i in sorted(results)]
        for result in ordered:
            records.extend(result.steps)
        return _aggregate(ordered)

    async def _dowhile_step(
        self,
        step: WorkflowStep,
        step_input: Any,
        context: dict[str, Any],
        options: _Options,
        records: list[ExecutionStep],
    ) -> tuple[str, Any, SuspendInfo | None]:
        config = DoWhileConfig.model_validate(step.config)
        max_iterations = config.max_iterations or self.config.default_max_iterations
        iteration = 0
        last_output = step_input

        while True:
            scope = self._fork(context, {"_dowhile_iteration": iteration})
            result = await self._execute_steps(
                config.steps, scope, replace(options, iteration_index=iteration)
            )
            records.extend(result.steps)

            if result.status == "suspended":
                return "suspended", result.output, result.suspended
            if result.status == "failed":
                return "failed", result.error or result.output, None

            last_output = result.output
            iteration += 1
            context["steps"].update(scope["steps"])
            context["steps"][step.id] = {**_as_mapping(last_output), "_iteration": iteration}

            if iteration >= max_iterations:
                logger.warning(
                    "DoWhile %s: max iterations (%d) reached. Condition: %s",
                    step.id,
                    max_iterations,
                    config.condition_expression,
                )
                break

            try:
                keep_going = evaluate_condition(config.condition_expression, context)
            except ExpressionError as e:
                raise StepError(
                    f"[DoWhile: {step.id}] Condition evaluation failed at iteration "
                    f"{iteration}. {e}"
                ) from e
            if not keep_going:
                break

        return "success", {**_as_mapping(last_output), "_total_iterations": iteration}, None

    def _human_step(
        self,
        step: WorkflowStep,
        options: _Options,
    ) -> tuple[str, Any, SuspendInfo | None]:
        config = HumanConfig.model_validate(step.config)
        if options.resume and options.resume.step_id == step.id:
            data = options.resume.data
            schema = config.form_schema
            if schema and "type" in schema:
                problems = schema_errors(data, schema)
                if problems:
                    raise StepError(
                        f'Human step "{step.id}" response is invalid: ' + "; ".join(problems)
                    )
            return "success", data, None

        suspended = SuspendInfo(
            step_id=step.id,
            data={
                "prompt": config.prompt or step.name or "Human approval required",
                "form_schema": config.form_schema or {},
                "timeout": config.timeout,
            },
        )
        return "suspended", None, suspended

    @staticmethod
    def _fork(context: dict[str, Any], variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Child scope with its own steps and variables."""
        return {
            **context,
            "steps": dict(context["steps"]),
            "variables": {**context["variables"], **(variables or {})},
        }

    @staticmethod
    def _record(
        step: WorkflowStep,
        status: str,
        step_input: Any,
        started_at: datetime,
        options: _Options,
        output: Any = None,
        error: str | None = None,
        agent_run_id: str | None = None,
    ) -> ExecutionStep:
        completed_at = _now()
        return ExecutionStep(
            step_id=step.id,
            step_type=step.type,
            step_name=step.name,
            status=status,
            input=step_input,
            output=output,
            error=error,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((completed_at - started_at).total_seconds() * 1000),
            agent_run_id=agent_run_id,
            iteration_index=options.iteration_index,
        )

    @staticmethod
    async def _emit(options: _Options, record: ExecutionStep) -> None:
        if options.on_step_event is None:
            return
        result = options.on_step_event(record)
        if inspect.isawaitable(result):
            await result
