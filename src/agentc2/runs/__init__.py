"""Background execution of agent and workflow runs."""

from agentc2.runs.invoker import AgentInvoker

__all__ = ["AgentInvoker"]
