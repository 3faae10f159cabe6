"""Audit trail of inbound trigger deliveries."""

from __future__ import annotations

import json
import logging
from typing import Any

from agentc2.models.records import TriggerEventRecord, TriggerEventStatus
from agentc2.storage.json_store import Database

logger = logging.getLogger(__name__)

SENSITIVE_HEADER_MARKERS = (
    "authorization",
    "cookie",
    "signature",
    "secret",
    "token",
    "api-key",
    "apikey",
    "x-api-key",
)
REDACTED = "[redacted]"


def _is_sensitive(header: str) -> bool:
    lowered = header.lower()
    return any(marker in lowered for marker in SENSITIVE_HEADER_MARKERS)


def build_trigger_payload_snapshot(
    payload: Any,
    headers: dict[str, str] | None = None,
    max_bytes: int = 64_000,
) -> dict[str, Any]:
    """Normalize a delivery for storage.

    Returns:
        ``{"normalized_payload", "payload", "headers", "truncated"}``. The
        stored payload is replaced by a preview when it exceeds
        ``max_bytes`` once serialized.
    """
    normalized = payload if isinstance(payload, dict) else {"value": payload}
    if payload is None:
        normalized = {}

    safe_headers = {
        key: (REDACTED if _is_sensitive(key) else str(value))
        for key, value in (headers or {}).items()
    }

    serialized = json.dumps(normalized, default=str)
    truncated = len(serialized.encode("utf-8")) > max_bytes
    stored = (
        {"_truncated": True, "_preview": serialized[: max_bytes // 2]} if truncated else normalized
    )

    return {
        "normalized_payload": normalized,
        "payload": stored,
        "headers": safe_headers,
        "truncated": truncated,
    }


class TriggerEventRecorder:
    """Creates and updates ``TriggerEventRecord`` entries."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        trigger_id: str | None = None,
        webhook_path: str | None = None,
        event_name: str | None = None,
        status: TriggerEventStatus = TriggerEventStatus.RECEIVED,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        reason: str | None = None,
    ) -> TriggerEventRecord:
        return self.db.trigger_events.save(
            TriggerEventRecord(
                trigger_id=trigger_id,
                webhook_path=webhook_path,
                event_name=event_name,
                status=status,
                payload=payload or {},
                headers=headers or {},
                reason=reason,
            )
        )

    def update(
        self,
        event_id: str,
        status: TriggerEventStatus,
        reason: str | None = None,
        run_id: str | None = None,
    ) -> TriggerEventRecord | None:
        event = self.db.trigger_events.get(event_id)
        if event is None:
            logger.warning("Trigger event %s vanished before update", event_id)
            return None
        event.status = status
        if reason is not None:
            event.reason = reason
        if run_id is not None:
            event.run_id = run_id
        return self.db.trigger_events.save(event)

    def list_for_trigger(self, trigger_id: str, limit: int = 50) -> list[TriggerEventRecord]:
        return self.db.trigger_events.list(lambda e: e.trigger_id == trigger_id, limit=limit)
