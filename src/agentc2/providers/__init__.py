"""LLM provider implementations."""

from __future__ import annotations

from agentc2.config import ProviderConfig
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


def get_provider(config: ProviderConfig, model: str | None = None) -> LLMProvider:
    """Create the provider an agent talks to.

    Args:
        config: Endpoint configuration
        model: Per-agent model override

    Raises:
        ValueError: If a hosted provider has no API key
    """
    if config.name != "ollama" and not config.api_key:
        raise ValueError(
            f"No API key configured for provider '{config.name}'. "
            "Set AGENTC2_API_KEY (or GROQ_API_KEY / OPENAI_API_KEY)."
        )
    return ChatCompletionsProvider(
        model=model or config.model,
        base_url=config.base_url,
        api_key=config.api_key,
        **config.extra,
    )


__all__ = [
    "ChatCompletionsProvider",
    "CompletionResponse",
    "LLMProvider",
    "Message",
    "RateLimitError",
    "RetryConfig",
    "ToolCall",
    "ToolDefinition",
    "get_provider",
]
