"""Configured agents: an instruction set, a provider, and a set of tools."""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, Field

from agentc2.models.records import AgentRecord
from agentc2.providers.base import CompletionResponse, LLMProvider, Message
from agentc2.tools.registry import RegisteredTool, call_tool

logger = logging.getLogger(__name__)


class AgentResponse(BaseModel):
    """Result of one ``Agent.generate`` call."""

    text: str
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    model: str | None = None
    total_tokens: int | None = None


class Agent:
    """Runs a prompt through the provider, executing tool calls as requested.

    Each round where the model asks for tools counts as one step. Once
    ``max_steps`` rounds are used the model is asked for a final answer
    without tools.
    """

    def __init__(
        self,
        record: AgentRecord,
        provider: LLMProvider,
        tools: dict[str, RegisteredTool] | None = None,
    ) -> None:
        self.record = record
        self.provider = provider
        self.tools = tools or {}

    @property
    def slug(self) -> str:
        return self.record.slug

    def build_messages(self, prompt: str) -> list[Message]:
        return [
            Message(role="system", content=self.record.instructions),
            Message(role="user", content=prompt),
        ]

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Execute a tool and return its result as text for the model."""
        tool = self.tools.get(name)
        if tool is None:
            return f"Error: unknown tool '{name}'"
        try:
            result = await call_tool(tool, arguments)
        except Exception as e:
            logger.warning("Tool %s failed for agent %s: %s", name, self.slug, e)
            return f"Error: {e}"
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)

    async def generate(self, prompt: str, max_steps: int | None = None) -> AgentResponse:
        """Generate a reply to ``prompt``.

        Args:
            prompt: The user message
            max_steps: Maximum tool-call rounds (defaults to the agent's own)

        Returns:
            AgentResponse with the final text and every tool call made
        """
        limit = max_steps or self.record.max_steps
        messages = self.build_messages(prompt)
        definitions = [t.definition() for t in self.tools.values()] or None
        tokens = 0
        calls: list[dict[str, Any]] = []

        response = await self._complete(messages, definitions)
        tokens += response.total_tokens or 0
        rounds = 0

        while response.tool_calls and rounds < limit:
            rounds += 1
            messages.append(
                Message(
                    role="assistant",
                    content=response.content or "",
                    tool_calls=response.tool_calls,
                )
            )
            for tool_call in response.tool_calls:
                output = await self.execute_tool(tool_call.name, tool_call.arguments)
                calls.append(
                    {
                        "tool": tool_call.name,
                        "arguments": tool_call.arguments,
                        "result": output,
                    }
                )
                messages.append(
                    Message(role="tool", content=output, tool_call_id=tool_call.id)
                )

            # Out of rounds: force a final answer without tools
            tools_for_round = definitions if rounds < limit else None
            response = await self._complete(messages, tools_for_round)
            tokens += response.total_tokens or 0

        return AgentResponse(
            text=response.content,
            tool_calls=calls,
            model=response.model or self.provider.model,
            total_tokens=tokens or None,
        )

    async def _complete(self, messages: list[Message], tools: Any) -> CompletionResponse:
        return await self.provider.complete(
            messages,
            tools=tools,
            temperature=self.record.temperature,
        )
