"""Workflow definitions, runtime and service."""

from agentc2.workflows.expressions import ExpressionError
from agentc2.workflows.parsing import OutputParseError
from agentc2.workflows.runtime import AgentStepHooks, StepError, WorkflowMeta, WorkflowRuntime
from agentc2.workflows.schemas import (
    ExecutionStep,
    ResumeInput,
    StepType,
    SuspendInfo,
    WorkflowDefinition,
    WorkflowExecutionResult,
    WorkflowStep,
)
from agentc2.workflows.service import WorkflowService

__all__ = [
    "AgentStepHooks",
    "ExecutionStep",
    "ExpressionError",
    "OutputParseError",
    "ResumeInput",
    "StepError",
    "StepType",
    "SuspendInfo",
    "WorkflowDefinition",
    "WorkflowExecutionResult",
    "WorkflowMeta",
    "WorkflowRuntime",
    "WorkflowService",
    "WorkflowStep",
]
