"""AgentC2 - workflow runtime and execution trigger service for AI agents."""

__version__ = "0.1.0"

from agentc2.workflows import WorkflowRuntime, WorkflowService

__all__ = ["WorkflowRuntime", "WorkflowService", "__version__"]
