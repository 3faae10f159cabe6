"""Tests for LLM providers."""

import json

import httpx
import pytest

from agentc2.config import ProviderConfig
from agentc2.providers import get_provider
from agentc2.providers.base import (
    CompletionResponse,
    LLMProvider,
    Message,
    RateLimitError,
    RetryConfig,
    ToolCall,
    ToolDefinition,
)
from agentc2.providers.chat_completions import ChatCompletionsProvider


class TestCompletionResponse:
    def test_simple_response(self):
        response = CompletionResponse(
            content="Hello, how can I help?",
            input_tokens=10,
            output_tokens=5,
        )
        assert response.content == "Hello, how can I help?"
        assert response.total_tokens == 15

    def test_total_tokens_none(self):
        response = CompletionResponse(content="test")
        assert response.total_tokens is None


class TestRetryConfig:
    def test_default_config(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 60.0
        assert config.exponential_base == 2.0


class TestRetryLogic:
    """Test the retry mechanism in LLMProvider."""

    @pytest.fixture
    def mock_provider(self):
        """Create a concrete provider for testing retry logic."""

        class MockProvider(LLMProvider):
            def __init__(self, retry_config: RetryConfig | None = None):
                super().__init__("mock-model", retry_config=retry_config)

            async def complete(self, messages, tools=None, temperature=0.7, max_tokens=None):
                return CompletionResponse(content="mock")

        return MockProvider

    @pytest.mark.asyncio
    async def test_retry_on_rate_limit(self, mock_provider):
        provider = mock_provider(RetryConfig(max_retries=3, base_delay=0.01))
        call_count = 0

        async def fail_twice_then_succeed():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise Exception("Rate limit")
            return "success"

        def is_rate_limit(e):
            return "Rate limit" in str(e), None

        result = await provider._with_retry(fail_twice_then_succeed, is_rate_limit)
        assert result == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_retry_exhausted_raises_rate_limit_error(self, mock_provider):
        provider = mock_provider(RetryConfig(max_retries=2, base_delay=0.01))

        async def always_fail():
            raise Exception("Rate limit")

        with pytest.raises(RateLimitError) as exc_info:
            await provider._with_retry(always_fail, lambda e: (True, 5.0))

        assert exc_info.value.attempts == 3
        assert exc_info.value.retry_after == 5.0

    @pytest.mark.asyncio
    async def test_non_rate_limit_error_not_retried(self, mock_provider):
        provider = mock_provider(RetryConfig(max_retries=3, base_delay=0.01))
        call_count = 0

        async def fail_with_other_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("Some other error")

        with pytest.raises(ValueError, match="Some other error"):
            await provider._with_retry(fail_with_other_error, lambda e: (False, None))

        assert call_count == 1


def _completion(message: dict, usage: dict | None = None) -> dict:
    return {
        "model": "llama-test",
        "choices": [{"message": message, "finish_reason": "stop"}],
        "usage": usage or {"prompt_tokens": 7, "completion_tokens": 3},
    }


class TestChatCompletionsProvider:
    @pytest.mark.asyncio
    async def test_request_and_response(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=_completion(
                    {
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "lookup", "arguments": '{"q": "x"}'},
                            }
                        ],
                    }
                ),
            )

        provider = ChatCompletionsProvider(
            model="llama-test",
            base_url="https://llm.test/v1/",
            api_key="key",
            transport=httpx.MockTransport(handler),
        )
        async with provider:
            response = await provider.complete(
                [
                    Message(role="system", content="Be brief"),
                    Message(
                        role="assistant",
                        content="",
                        tool_calls=[ToolCall(id="call_0", name="lookup", arguments={"q": "y"})],
                    ),
                    Message(role="tool", content="found", tool_call_id="call_0"),
                ],
                tools=[ToolDefinition(name="lookup", description="Find things")],
                temperature=0.2,
            )

        request = seen[0]
        assert str(request.url) == "https://llm.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer key"
        body = json.loads(request.content)
        assert body["model"] == "llama-test"
        assert body["temperature"] == 0.2
        assert body["tool_choice"] == "auto"
        assert body["tools"][0]["function"]["name"] == "lookup"
        assert body["messages"][1]["tool_calls"] == [
            {
                "id": "call_0",
                "type": "function",
                "function": {"name": "lookup", "arguments": '{"q": "y"}'},
            }
        ]
        assert body["messages"][2] == {"role": "tool", "content": "found", "tool_call_id": "call_0"}

        assert response.content == ""
        assert response.tool_calls == [ToolCall(id="call_1", name="lookup", arguments={"q": "x"})]
        assert response.total_tokens == 10
        assert provider.total_tokens_used == 10

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(429, headers={"retry-after": "0"})
            return httpx.Response(200, json=_completion({"content": "ok"}))

        provider = ChatCompletionsProvider(
            model="m",
            base_url="https://llm.test/v1",
            transport=httpx.MockTransport(handler),
            retry_config=RetryConfig(base_delay=0.01),
        )
        response = await provider.complete([Message(role="user", content="hi")])
        await provider.close()

        assert response.content == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_server_error_is_raised(self):
        provider = ChatCompletionsProvider(
            model="m",
            base_url="https://llm.test/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await provider.complete([Message(role="user", content="hi")])
        await provider.close()

    def test_malformed_tool_arguments(self):
        calls = ChatCompletionsProvider._parse_tool_calls(
            [{"id": "1", "function": {"name": "f", "arguments": "{broken"}}]
        )
        assert calls == [ToolCall(id="1", name="f", arguments={})]


class TestGetProvider:
    def test_hosted_provider_needs_key(self):
        with pytest.raises(ValueError, match="No API key configured"):
            get_provider(ProviderConfig(name="groq"))

    @pytest.mark.asyncio
    async def test_ollama_without_key(self):
        provider = get_provider(
            ProviderConfig(name="ollama", base_url="http://localhost:11434/v1"), model="llama3.2"
        )
        assert isinstance(provider, ChatCompletionsProvider)
        assert provider.model == "llama3.2"
        await provider.close()
