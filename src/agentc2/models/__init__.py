"""Persisted record models."""

from agentc2.models.records import (
    AgentRecord,
    AgentRunRecord,
    ChangelogEntry,
    OrgSubscription,
    Record,
    RunStatus,
    ScheduleRecord,
    SubscriptionStatus,
    TriggerEventRecord,
    TriggerEventStatus,
    TriggerRecord,
    WorkflowRecord,
    WorkflowRunRecord,
    new_id,
    utcnow,
)

__all__ = [
    "AgentRecord",
    "AgentRunRecord",
    "ChangelogEntry",
    "OrgSubscription",
    "Record",
    "RunStatus",
    "ScheduleRecord",
    "SubscriptionStatus",
    "TriggerEventRecord",
    "TriggerEventStatus",
    "TriggerRecord",
    "WorkflowRecord",
    "WorkflowRunRecord",
    "new_id",
    "utcnow",
]
