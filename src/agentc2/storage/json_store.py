"""JSON-file backed record collections.

Each record is stored as ``<collection_dir>/<id>.json``. Reads go to disk
every time so several processes sharing a storage directory see each
other's writes.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, TypeVar

from agentc2.models.records import (
    AgentRecord,
    AgentRunRecord,
    ChangelogEntry,
    OrgSubscription,
    Record,
    ScheduleRecord,
    TriggerEventRecord,
    TriggerRecord,
    WorkflowRecord,
    WorkflowRunRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


class JsonCollection(Generic[R]):
    """A directory of pydantic records keyed by id."""

    def __init__(self, directory: Path | str, model: type[R]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.model = model

    def _path(self, record_id: str) -> Path:
        # Sanitize id for filesystem
        safe_id = "".join(c for c in record_id if c.isalnum() or c in "-_")[:96]
        return self.directory / f"{safe_id}.json"

    def get(self, record_id: str | None) -> R | None:
        """Load a record by id, None if missing or unreadable."""
        if not record_id:
            return None
        path = self._path(record_id)
        if not path.exists():
            return None
        try:
            return self.model.model_validate_json(path.read_text())
        except (json.JSONDecodeError, ValueError) as e:
            logger.error("Failed to load %s %s: %s", self.model.__name__, record_id, e)
            return None

    def save(self, record: R, touch: bool = True) -> R:
        """Write a record to disk, bumping ``updated_at``."""
        if touch:
            record.updated_at = utcnow()
        self._path(record.id).write_text(record.model_dump_json(indent=2))
        return record

    def delete(self, record_id: str) -> bool:
        path = self._path(record_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def __iter__(self) -> Iterator[R]:
        for path in sorted(self.directory.glob("*.json")):
            try:
                yield self.model.model_validate_json(path.read_text())
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Skipping unreadable record %s: %s", path.name, e)

    def list(
        self,
        predicate: Callable[[R], bool] | None = None,
        newest_first: bool = True,
        limit: int | None = None,
    ) -> list[R]:
        """List records, optionally filtered, ordered by ``created_at``."""
        records = [r for r in self if predicate is None or predicate(r)]
        records.sort(key=lambda r: r.created_at, reverse=newest_first)
        if limit is not None:
            records = records[:limit]
        return records

    def find(self, **fields: Any) -> list[R]:
        """Records whose attributes equal all given values."""
        return self.list(
            lambda r: all(getattr(r, k, None) == v for k, v in fields.items())
        )

    def find_one(self, **fields: Any) -> R | None:
        matches = self.find(**fields)
        return matches[0] if matches else None


class Database:
    """All collections under one storage directory.

    Usage:
        db = Database(".agentc2")
        agent = db.agents.save(AgentRecord(slug="support"))
        db.agents.find_one(slug="support")
    """

    def __init__(self, storage_dir: Path | str) -> None:
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.agents = self._collection("agents", AgentRecord)
        self.workflows = self._collection("workflows", WorkflowRecord)
        self.triggers = self._collection("triggers", TriggerRecord)
        self.schedules = self._collection("schedules", ScheduleRecord)
        self.trigger_events = self._collection("trigger_events", TriggerEventRecord)
        self.agent_runs = self._collection("agent_runs", AgentRunRecord)
        self.workflow_runs = self._collection("workflow_runs", WorkflowRunRecord)
        self.subscriptions = self._collection("subscriptions", OrgSubscription)
        self.changelog = self._collection("changelog", ChangelogEntry)

    def _collection(self, name: str, model: type[R]) -> JsonCollection[R]:
        return JsonCollection(self.storage_dir / name, model)

    def find_agent(self, id_or_slug: str) -> AgentRecord | None:
        """Look up an agent by id first, then by slug."""
        return self.agents.get(id_or_slug) or self.agents.find_one(slug=id_or_slug)

    def find_workflow(self, id_or_slug: str) -> WorkflowRecord | None:
        """Look up a workflow by id first, then by slug."""
        return self.workflows.get(id_or_slug) or self.workflows.find_one(slug=id_or_slug)
