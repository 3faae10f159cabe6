"""Turns stored agent records into runnable agents."""

from __future__ import annotations

import logging
from typing import Any, Callable

from agentc2.agents.base import Agent
from agentc2.errors import NotFoundError
from agentc2.models.records import AgentRecord
from agentc2.providers.base import LLMProvider
from agentc2.storage.json_store import Database
from agentc2.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[AgentRecord], LLMProvider]


class AgentResolver:
    """Resolves an agent by slug (or id) within a request context.

    The request context is a dict that may carry ``organization_id``, used
    to scope tool lookup.
    """

    def __init__(
        self,
        db: Database,
        provider_factory: ProviderFactory,
        tool_registry: ToolRegistry | None = None,
    ) -> None:
        self.db = db
        self.provider_factory = provider_factory
        self.tool_registry = tool_registry or ToolRegistry()

    def get_record(self, slug: str) -> AgentRecord:
        record = self.db.find_agent(slug)
        if record is None or not record.is_active:
            raise NotFoundError(f"Agent '{slug}' not found")
        return record

    async def resolve(
        self,
        slug: str,
        request_context: dict[str, Any] | None = None,
    ) -> Agent:
        record = self.get_record(slug)
        organization_id = (request_context or {}).get("organization_id") or record.organization_id

        tools = self.tool_registry.get_tools(record.tool_names, organization_id)
        missing = set(record.tool_names) - set(tools)
        if missing:
            logger.warning(
                "Agent %s references unknown tools: %s", record.slug, ", ".join(sorted(missing))
            )

        return Agent(record, self.provider_factory(record), tools)
