"""Trigger fabric: webhooks, events, schedules and on-demand execution."""

from agentc2.triggers.dispatch import DispatchResult, TriggerDispatcher
from agentc2.triggers.events import TriggerEventRecorder, build_trigger_payload_snapshot
from agentc2.triggers.rate_limit import (
    RATE_LIMIT_POLICIES,
    RateLimiter,
    RateLimitPolicy,
    RateLimitResult,
)
from agentc2.triggers.schedules import ScheduleRunner, get_next_run_at
from agentc2.triggers.security import (
    SignatureError,
    compute_signature,
    generate_webhook_credentials,
    verify_webhook_signature,
)

__all__ = [
    "DispatchResult",
    "RATE_LIMIT_POLICIES",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimiter",
    "ScheduleRunner",
    "SignatureError",
    "TriggerDispatcher",
    "TriggerEventRecorder",
    "build_trigger_payload_snapshot",
    "compute_signature",
    "generate_webhook_credentials",
    "get_next_run_at",
    "verify_webhook_signature",
]
