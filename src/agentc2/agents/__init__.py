"""Agents backed by stored configuration."""

from agentc2.agents.base import Agent, AgentResponse
from agentc2.agents.resolver import AgentResolver

__all__ = ["Agent", "AgentResolver", "AgentResponse"]
