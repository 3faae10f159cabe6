"""Workflow definition and execution models.

Definitions are usually authored as JSON with camelCase keys
(``inputMapping``, ``agentSlug``, ``collectionPath``). Every model here
accepts both that form and snake_case.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class StepType(str, Enum):
    """Kinds of workflow steps."""

    AGENT = "agent"
    TOOL = "tool"
    WORKFLOW = "workflow"
    BRANCH = "branch"
    PARALLEL = "parallel"
    FOREACH = "foreach"
    DOWHILE = "dowhile"
    HUMAN = "human"
    DELAY = "delay"
    TRANSFORM = "transform"


class WorkflowStep(_Model):
    """One node of a workflow definition.

    ``type`` is kept as a plain string so unknown step types degrade to a
    pass-through instead of failing validation.
    """

    id: str
    type: str
    name: str | None = None
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    input_mapping: dict[str, Any] | None = None


class AgentStepConfig(_Model):
    agent_slug: str | None = None
    prompt_template: str = ""
    output_format: Literal["text", "json"] = "text"
    output_schema: dict[str, Any] | None = None
    max_steps: int | None = None


class ToolStepConfig(_Model):
    tool_id: str | None = None
    parameters: dict[str, Any] | None = None


class WorkflowCallConfig(_Model):
    workflow_id: str | None = None
    input: dict[str, Any] | None = None


class ConditionalBranch(_Model):
    id: str | None = None
    condition: str
    steps: list[WorkflowStep] = Field(default_factory=list)


class BranchConfig(_Model):
    branches: list[ConditionalBranch] = Field(default_factory=list)
    default_branch: list[WorkflowStep] | None = None


class ParallelBranch(_Model):
    id: str | None = None
    steps: list[WorkflowStep] = Field(default_factory=list)


class ParallelConfig(_Model):
    branches: list[ParallelBranch] = Field(default_factory=list)


class ForeachConfig(_Model):
    collection_path: str
    item_var: str = "item"
    concurrency: int = Field(default=1, ge=1)
    steps: list[WorkflowStep] = Field(default_factory=list)


class DoWhileConfig(_Model):
    steps: list[WorkflowStep] = Field(default_factory=list)
    condition_expression: str = "false"
    max_iterations: int | None = None


class HumanConfig(_Model):
    prompt: str | None = None
    form_schema: dict[str, Any] | None = None
    timeout: int | str | None = None


class WorkflowDefinition(_Model):
    steps: list[WorkflowStep] = Field(default_factory=list)
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None


class ExecutionStep(BaseModel):
    """Record of one executed step."""

    step_id: str
    step_type: str
    step_name: str | None = None
    status: Literal["completed", "failed", "suspended"]
    input: Any = None
    output: Any = None
    error: str | None = None
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    agent_run_id: str | None = None
    iteration_index: int | None = None


class SuspendInfo(BaseModel):
    step_id: str
    data: dict[str, Any] = Field(default_factory=dict)


class ResumeInput(BaseModel):
    step_id: str
    data: Any = None


class WorkflowExecutionResult(BaseModel):
    status: Literal["success", "failed", "suspended"]
    output: Any = None
    steps: list[ExecutionStep] = Field(default_factory=list)
    suspended: SuspendInfo | None = None
    error: str | None = None
