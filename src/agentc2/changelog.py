"""Structural JSON diffs and the change history built from them."""

from __future__ import annotations

import logging
from typing import Any

from agentc2.models.records import ChangelogEntry
from agentc2.storage.json_store import Database

logger = logging.getLogger(__name__)

_MISSING = object()


def _join(path: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return f"{path}.{key}" if path else str(key)


def _keyed_by_id(items: list[Any]) -> dict[Any, Any] | None:
    """Map id to item if every item is a dict with a unique ``id``."""
    if not items or not all(isinstance(i, dict) and "id" in i for i in items):
        return None
    keyed = {i["id"]: i for i in items}
    return keyed if len(keyed) == len(items) else None


def compute_json_diff(before: Any, after: Any, path: str = "") -> list[dict[str, Any]]:
    """List the leaf-level differences between two JSON documents.

    Each change is ``{"path", "op", "before"?, "after"?}`` with ``op`` one of
    ``added``, ``removed`` or ``changed``. Lists of objects carrying ``id``
    fields are matched by id, other lists by index.
    """
    if before is _MISSING:
        return [{"path": path, "op": "added", "after": after}]
    if after is _MISSING:
        return [{"path": path, "op": "removed", "before": before}]

    if isinstance(before, dict) and isinstance(after, dict):
        changes: list[dict[str, Any]] = []
        for key in list(before) + [k for k in after if k not in before]:
            changes.extend(
                compute_json_diff(
                    before.get(key, _MISSING), after.get(key, _MISSING), _join(path, key)
                )
            )
        return changes

    if isinstance(before, list) and isinstance(after, list):
        old_keyed, new_keyed = _keyed_by_id(before), _keyed_by_id(after)
        changes = []
        if old_keyed is not None and new_keyed is not None:
            for key in list(old_keyed) + [k for k in new_keyed if k not in old_keyed]:
                changes.extend(
                    compute_json_diff(
                        old_keyed.get(key, _MISSING),
                        new_keyed.get(key, _MISSING),
                        f"{path}[id={key}]",
                    )
                )
            return changes

        for i in range(max(len(before), len(after))):
            changes.extend(
                compute_json_diff(
                    before[i] if i < len(before) else _MISSING,
                    after[i] if i < len(after) else _MISSING,
                    _join(path, i),
                )
            )
        return changes

    if before != after or type(before) is not type(after):
        return [{"path": path, "op": "changed", "before": before, "after": after}]
    return []


class ChangelogRecorder:
    """Persists a changelog entry whenever an entity's configuration changes."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def record(
        self,
        entity_type: str,
        entity_id: str,
        before: Any,
        after: Any,
        actor: str | None = None,
        version: int | None = None,
    ) -> ChangelogEntry | None:
        """Store the diff between ``before`` and ``after``.

        Returns:
            The new entry, or None when nothing changed
        """
        changes = compute_json_diff(before, after)
        if not changes:
            return None

        entry = self.db.changelog.save(
            ChangelogEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                version=version,
                actor=actor,
                changes=changes,
            )
        )
        logger.info(
            "Recorded %d change(s) to %s %s", len(changes), entity_type, entity_id
        )
        return entry

    def list(self, entity_type: str, entity_id: str, limit: int | None = None) -> list[ChangelogEntry]:
        return self.db.changelog.list(
            lambda e: e.entity_type == entity_type and e.entity_id == entity_id,
            limit=limit,
        )
