"""Tests for the agent tool loop, the resolver and the tool registry."""

import pytest

from agentc2.agents import Agent, AgentResolver
from agentc2.errors import NotFoundError
from agentc2.models.records import AgentRecord
from agentc2.providers.base import CompletionResponse, LLMProvider, ToolCall
from agentc2.tools import ToolRegistry
from agentc2.tools.registry import call_tool


class ScriptedProvider(LLMProvider):
    """Provider returning canned completions and recording each request."""

    def __init__(self, responses: list[CompletionResponse]):
        super().__init__("scripted")
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    async def complete(self, messages, tools=None, temperature=0.7, max_tokens=None):
        self.requests.append({"messages": list(messages), "tools": tools})
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


def _tool_call(name: str, **arguments) -> CompletionResponse:
    return CompletionResponse(
        content="",
        tool_calls=[ToolCall(id=f"call_{name}", name=name, arguments=arguments)],
        input_tokens=5,
        output_tokens=1,
    )


def _answer(text: str) -> CompletionResponse:
    return CompletionResponse(content=text, input_tokens=5, output_tokens=2)


@pytest.fixture
def tools():
    registry = ToolRegistry()
    registry.register(
        "add",
        lambda args: args["a"] + args["b"],
        description="Add two numbers",
        parameters={
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        },
    )
    return registry


class TestAgent:
    @pytest.mark.asyncio
    async def test_plain_answer(self):
        provider = ScriptedProvider([_answer("hello")])
        agent = Agent(AgentRecord(slug="a", instructions="Be nice"), provider)

        response = await agent.generate("hi")

        assert response.text == "hello"
        assert response.tool_calls == []
        assert response.total_tokens == 7
        messages = provider.requests[0]["messages"]
        assert [(m.role, m.content) for m in messages] == [("system", "Be nice"), ("user", "hi")]
        assert provider.requests[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, tools):
        provider = ScriptedProvider([_tool_call("add", a=2, b=3), _answer("5")])
        agent = Agent(AgentRecord(slug="calc"), provider, tools.get_tools(["add"]))

        response = await agent.generate("2+3?")

        assert response.text == "5"
        assert response.tool_calls == [{"tool": "add", "arguments": {"a": 2, "b": 3}, "result": "5"}]
        assert response.total_tokens == 13

        follow_up = provider.requests[1]["messages"]
        assert follow_up[2].role == "assistant"
        assert follow_up[2].tool_calls[0].id == "call_add"
        assert (follow_up[3].role, follow_up[3].content, follow_up[3].tool_call_id) == (
            "tool",
            "5",
            "call_add",
        )

    @pytest.mark.asyncio
    async def test_last_round_has_no_tools(self, tools):
        provider = ScriptedProvider([_tool_call("add", a=1, b=1), _answer("done")])
        agent = Agent(AgentRecord(slug="calc"), provider, tools.get_tools())

        await agent.generate("go", max_steps=1)

        assert provider.requests[0]["tools"] is not None
        assert provider.requests[1]["tools"] is None

    @pytest.mark.asyncio
    async def test_tool_errors_are_reported_to_model(self):
        registry = ToolRegistry()

        def explode(args):
            raise RuntimeError("disk full")

        registry.register("explode", explode)
        agent = Agent(AgentRecord(slug="a"), ScriptedProvider([]), registry.get_tools())

        assert await agent.execute_tool("explode", {}) == "Error: disk full"
        assert await agent.execute_tool("missing", {}) == "Error: unknown tool 'missing'"


class TestAgentResolver:
    @pytest.mark.asyncio
    async def test_resolves_with_org_tools(self, db, tools):
        tools.register("secret", lambda args: "org only", organization_id="org-1")
        db.agents.save(AgentRecord(slug="helper", tool_names=["add", "secret"]))
        created = []

        def factory(record):
            provider = ScriptedProvider([])
            created.append(record.slug)
            return provider

        resolver = AgentResolver(db, factory, tools)

        scoped = await resolver.resolve("helper", {"organization_id": "org-1"})
        unscoped = await resolver.resolve("helper")

        assert set(scoped.tools) == {"add", "secret"}
        assert set(unscoped.tools) == {"add"}
        assert created == ["helper", "helper"]

    @pytest.mark.asyncio
    async def test_inactive_agent_not_found(self, db):
        db.agents.save(AgentRecord(slug="off", is_active=False))
        resolver = AgentResolver(db, lambda record: ScriptedProvider([]))
        with pytest.raises(NotFoundError):
            await resolver.resolve("off")


class TestToolRegistry:
    def test_org_tools_shadow_global(self, tools):
        tools.register("add", lambda args: "shadow", organization_id="org-1")
        assert tools.list_names() == ["add"]
        assert tools.get("add", "org-1").organization_id == "org-1"
        assert tools.get("add", "org-2").organization_id is None

    def test_unregister(self, tools):
        assert tools.unregister("add") is True
        assert tools.unregister("add") is False
        assert tools.get("add") is None

    def test_definition(self, tools):
        definition = tools.get("add").definition()
        assert definition.name == "add"
        assert definition.parameters["properties"]["a"] == {"type": "number"}

    @pytest.mark.asyncio
    async def test_call_tool_variants(self):
        class Executor:
            async def execute(self, args):
                return {"echo": args}

        async def coroutine(args):
            return "async"

        assert await call_tool(Executor(), {"x": 1}) == {"echo": {"x": 1}}
        assert await call_tool(coroutine, {}) == "async"
        with pytest.raises(TypeError):
            await call_tool(object(), {})
