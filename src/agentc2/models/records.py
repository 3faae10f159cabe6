"""Pydantic records persisted by the storage layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


class RunStatus(str, Enum):
    """Lifecycle of agent and workflow runs."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class TriggerEventStatus(str, Enum):
    """Outcome of an inbound trigger delivery."""

    RECEIVED = "RECEIVED"
    QUEUED = "QUEUED"
    SKIPPED = "SKIPPED"
    REJECTED = "REJECTED"


class Record(BaseModel):
    """Base for everything stored in a collection."""

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AgentRecord(Record):
    """An agent configuration owned by a tenant."""

    slug: str
    name: str = ""
    instructions: str = "You are a helpful assistant."
    model: str | None = None
    temperature: float = 0.7
    max_steps: int = 5
    tool_names: list[str] = Field(default_factory=list)
    is_active: bool = True
    organization_id: str | None = None
    workspace_id: str | None = None


class WorkflowRecord(Record):
    """A stored workflow definition."""

    slug: str
    name: str = ""
    definition: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    is_active: bool = True
    organization_id: str | None = None
    workspace_id: str | None = None


class TriggerRecord(Record):
    """An event-based trigger (webhook, event, api, manual, test, mcp).

    Exactly one of ``agent_id`` / ``workflow_id`` is set.
    """

    name: str
    description: str | None = None
    trigger_type: str
    agent_id: str | None = None
    workflow_id: str | None = None
    organization_id: str | None = None
    workspace_id: str | None = None
    event_name: str | None = None
    webhook_path: str | None = None
    webhook_secret: str | None = None
    filter: dict[str, Any] | None = None
    input_mapping: dict[str, Any] | None = None
    is_active: bool = True
    is_archived: bool = False
    archived_at: datetime | None = None
    last_triggered_at: datetime | None = None
    trigger_count: int = 0


class ScheduleRecord(Record):
    """A cron schedule that fires an agent or workflow."""

    name: str
    description: str | None = None
    agent_id: str | None = None
    workflow_id: str | None = None
    organization_id: str | None = None
    workspace_id: str | None = None
    cron_expr: str
    timezone: str = "UTC"
    input_defaults: dict[str, Any] | None = None
    is_active: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = 0


class TriggerEventRecord(Record):
    """Audit record of one inbound trigger delivery."""

    trigger_id: str | None = None
    webhook_path: str | None = None
    event_name: str | None = None
    status: TriggerEventStatus = TriggerEventStatus.RECEIVED
    reason: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    run_id: str | None = None


class AgentRunRecord(Record):
    """A single agent invocation."""

    agent_id: str
    agent_slug: str
    input: str
    context: dict[str, Any] = Field(default_factory=dict)
    max_steps: int | None = None
    source: str = "api"
    trigger_type: str | None = None
    trigger_id: str | None = None
    status: RunStatus = RunStatus.QUEUED
    output: str | None = None
    error: str | None = None
    total_tokens: int | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None


class WorkflowRunRecord(Record):
    """A workflow execution, possibly suspended awaiting human input."""

    workflow_id: str
    workflow_slug: str
    status: RunStatus = RunStatus.RUNNING
    input: Any = None
    output: Any = None
    error: str | None = None
    steps: list[dict[str, Any]] = Field(default_factory=list)
    suspended_step: str | None = None
    suspend_data: dict[str, Any] | None = None
    source: str = "api"
    trigger_id: str | None = None
    organization_id: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"
    PAUSED = "paused"


class OrgSubscription(Record):
    """Billing state of an organization. ``id`` is the organization id."""

    plan_id: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    billing_cycle: str = "monthly"
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    credits_used: int = 0
    canceled_at: datetime | None = None


class ChangelogEntry(Record):
    """A recorded change to an entity's configuration."""

    entity_type: str
    entity_id: str
    version: int | None = None
    actor: str | None = None
    changes: list[dict[str, Any]] = Field(default_factory=list)
