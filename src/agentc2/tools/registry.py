"""Registry of tools callable from agents and workflow tool steps."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any

from agentc2.providers.base import ToolDefinition

logger = logging.getLogger(__name__)


@dataclass
class RegisteredTool:
    """A tool handler plus the schema the LLM sees."""

    name: str
    handler: Any
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    organization_id: str | None = None

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


async def call_tool(tool: RegisteredTool | Any, args: dict[str, Any]) -> Any:
    """Invoke a tool handler with a single argument dict.

    Handlers may be plain or async callables, or objects exposing
    ``execute``, ``invoke`` or ``run``.
    """
    handler = tool.handler if isinstance(tool, RegisteredTool) else tool

    fn = None
    for attr in ("execute", "invoke", "run"):
        candidate = getattr(handler, attr, None)
        if callable(candidate):
            fn = candidate
            break
    if fn is None:
        if not callable(handler):
            name = getattr(tool, "name", repr(tool))
            raise TypeError(f"Tool '{name}' has no callable handler")
        fn = handler

    result = fn(args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ToolRegistry:
    """Name-keyed tools, optionally scoped to one organization.

    A tool registered with an ``organization_id`` is only visible to that
    organization and shadows a global tool of the same name.
    """

    def __init__(self) -> None:
        self._global: dict[str, RegisteredTool] = {}
        self._scoped: dict[str, dict[str, RegisteredTool]] = {}

    def register(
        self,
        name: str,
        handler: Any,
        description: str = "",
        parameters: dict[str, Any] | None = None,
        organization_id: str | None = None,
    ) -> RegisteredTool:
        tool = RegisteredTool(
            name=name,
            handler=handler,
            description=description,
            organization_id=organization_id,
        )
        if parameters is not None:
            tool.parameters = parameters

        if organization_id:
            self._scoped.setdefault(organization_id, {})[name] = tool
        else:
            self._global[name] = tool
        logger.debug("Registered tool %s (org=%s)", name, organization_id or "global")
        return tool

    def unregister(self, name: str, organization_id: str | None = None) -> bool:
        bucket = self._scoped.get(organization_id, {}) if organization_id else self._global
        return bucket.pop(name, None) is not None

    def get(self, name: str, organization_id: str | None = None) -> RegisteredTool | None:
        if organization_id:
            scoped = self._scoped.get(organization_id, {})
            if name in scoped:
                return scoped[name]
        return self._global.get(name)

    def get_tools(
        self,
        names: list[str] | None = None,
        organization_id: str | None = None,
    ) -> dict[str, RegisteredTool]:
        """Tools visible to an organization, filtered to ``names`` if given."""
        visible = dict(self._global)
        if organization_id:
            visible.update(self._scoped.get(organization_id, {}))
        if names is None:
            return visible
        return {name: visible[name] for name in names if name in visible}

    def list_names(self, organization_id: str | None = None) -> list[str]:
        return sorted(self.get_tools(organization_id=organization_id))
