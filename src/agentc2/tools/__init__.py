"""Tools that agents and workflow steps can call."""

from agentc2.tools.registry import RegisteredTool, ToolRegistry, call_tool

__all__ = ["RegisteredTool", "ToolRegistry", "call_tool"]
