"""Configuration for AgentC2."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    """OpenAI-compatible chat completions endpoint used by agents."""

    name: str = "groq"
    model: str = "llama-3.3-70b-versatile"
    base_url: str = "https://api.groq.com/openai/v1"
    api_key: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class WebhookConfig(BaseModel):
    """Inbound webhook verification and throttling."""

    signature_header: str = "x-webhook-signature"
    timestamp_header: str = "x-webhook-timestamp"
    signature_tolerance_seconds: int = 300
    rate_limit_per_minute: int = 60
    max_payload_bytes: int = 64_000


class WorkflowConfig(BaseModel):
    """Workflow runtime limits."""

    max_nesting_depth: int = 5
    default_max_iterations: int = 10
    env_prefix: str = "WORKFLOW_"


class QueueConfig(BaseModel):
    """Background job queue sizing."""

    max_concurrent: int = 4
    max_completed_jobs: int = 100
    schedule_poll_seconds: float = 30.0


class StripeConfig(BaseModel):
    """Stripe billing webhook configuration."""

    secret_key: str = ""
    webhook_secret: str = ""
    api_base: str = "https://api.stripe.com/v1"

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key and self.webhook_secret)


class AgentC2Config(BaseModel):
    """Main configuration for AgentC2."""

    storage_dir: str = ".agentc2"
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    workflows: WorkflowConfig = Field(default_factory=WorkflowConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)

    @classmethod
    def from_env(cls) -> "AgentC2Config":
        """Load configuration from environment variables."""
        provider_name = os.getenv("AGENTC2_PROVIDER", "groq")
        model = os.getenv("AGENTC2_MODEL")
        api_key = os.getenv("AGENTC2_API_KEY")

        if provider_name == "ollama":
            base_url = os.getenv("OLLAMA_HOST", "http://localhost:11434") + "/v1"
            model = model or "llama3.2"
        elif provider_name == "openai":
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            base_url = os.getenv("OPENAI_API_BASE", "https://api.openai.com/v1")
            model = model or "gpt-4o-mini"
        else:
            api_key = api_key or os.getenv("GROQ_API_KEY")
            base_url = os.getenv("GROQ_API_BASE", "https://api.groq.com/openai/v1")
            model = model or "llama-3.3-70b-versatile"

        return cls(
            storage_dir=os.getenv("AGENTC2_STORAGE_DIR", ".agentc2"),
            provider=ProviderConfig(
                name=provider_name,
                model=model,
                base_url=base_url,
                api_key=api_key,
            ),
            webhooks=WebhookConfig(
                signature_tolerance_seconds=int(
                    os.getenv("AGENTC2_WEBHOOK_TOLERANCE", "300")
                ),
                rate_limit_per_minute=int(os.getenv("AGENTC2_WEBHOOK_RATE_LIMIT", "60")),
            ),
            workflows=WorkflowConfig(
                max_nesting_depth=int(os.getenv("AGENTC2_MAX_NESTING_DEPTH", "5")),
            ),
            queue=QueueConfig(
                max_concurrent=int(os.getenv("AGENTC2_MAX_CONCURRENT", "4")),
            ),
            stripe=StripeConfig(
                secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
                webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            ),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "AgentC2Config":
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        return cls(**data)


def get_default_config() -> AgentC2Config:
    """Get default configuration, checking config files before env vars."""
    config_paths = [
        Path("agentc2.json"),
        Path(".agentc2.json"),
        Path.home() / ".config" / "agentc2" / "config.json",
    ]

    for path in config_paths:
        if path.exists():
            return AgentC2Config.from_file(path)

    return AgentC2Config.from_env()
