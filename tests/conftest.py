"""Shared fixtures: temporary storage and scripted agents."""

from __future__ import annotations

from typing import Any

import pytest

from agentc2.agents.base import AgentResponse
from agentc2.events import EventBus
from agentc2.storage.json_store import Database


class ScriptedAgent:
    """Agent double that answers from a list (or a callable) of replies."""

    def __init__(self, replies: list[str] | Any, model: str = "test-model") -> None:
        self.replies = replies
        self.model = model
        self.prompts: list[str] = []

    async def generate(self, prompt: str, max_steps: int | None = None) -> AgentResponse:
        self.prompts.append(prompt)
        if callable(self.replies):
            text = self.replies(prompt)
        else:
            text = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return AgentResponse(text=text, model=self.model, total_tokens=10)


class ScriptedResolver:
    """Resolver double mapping slugs to ``ScriptedAgent`` instances."""

    def __init__(self, agents: dict[str, ScriptedAgent] | None = None) -> None:
        self.agents = agents or {}
        self.contexts: list[dict[str, Any] | None] = []

    async def resolve(self, slug: str, request_context: dict[str, Any] | None = None):
        self.contexts.append(request_context)
        if slug not in self.agents:
            raise LookupError(f"Agent '{slug}' not found")
        return self.agents[slug]


@pytest.fixture
def db(tmp_path) -> Database:
    return Database(tmp_path / "store")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()
