"""OpenAI-compatible chat completions provider (Groq, OpenAI, Ollama /v1)."""

from __future__ import annotations

import json
from typing import Any

import httpx

from agentc2.providers.base import (
    CompletionResponse,
    LLMProvider,
    Message,
    ToolCall,
    ToolDefinition,
)


class ChatCompletionsProvider(LLMProvider):
    """Talks to any ``/chat/completions`` endpoint.

    Groq, OpenAI and Ollama (via its ``/v1`` compatibility layer) all speak
    this dialect, so one client covers the providers agents are configured
    with.
    """

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> CompletionResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [self._format_message(m) for m in messages],
            "temperature": temperature,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if tools:
            payload["tools"] = [self._format_tool(t) for t in tools]
            payload["tool_choice"] = "auto"

        async def post() -> httpx.Response:
            response = await self._client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
            return response

        response = await self._with_retry(post, self._is_rate_limit)
        data = response.json()

        choice = data["choices"][0]
        message = choice["message"]
        usage = data.get("usage") or {}

        result = CompletionResponse(
            content=message.get("content") or "",
            tool_calls=self._parse_tool_calls(message.get("tool_calls") or []),
            finish_reason=choice.get("finish_reason", "stop"),
            model=data.get("model", self.model),
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        )
        self._track_tokens(result)
        return result

    @staticmethod
    def _is_rate_limit(error: Exception) -> tuple[bool, float | None]:
        if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
            retry_after = error.response.headers.get("retry-after")
            try:
                return True, float(retry_after) if retry_after else None
            except ValueError:
                return True, None
        return False, None

    @staticmethod
    def _format_message(message: Message) -> dict[str, Any]:
        formatted: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_call_id:
            formatted["tool_call_id"] = message.tool_call_id
        if message.tool_calls:
            formatted["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ]
        return formatted

    @staticmethod
    def _format_tool(tool: ToolDefinition) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls = []
        for call in raw_calls:
            func = call.get("function", {})
            arguments = func.get("arguments", "{}")
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {}
            calls.append(
                ToolCall(
                    id=call.get("id", ""),
                    name=func.get("name", ""),
                    arguments=arguments,
                )
            )
        return calls

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatCompletionsProvider":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
