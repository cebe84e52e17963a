"""Audit logger -- append-only record of who changed what.

Writes never raise: an audit failure is logged and reported as False so
the business operation that triggered it still completes.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Literal

from pydantic import BaseModel, Field

from core.data.store import Store, dump_json

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "key",
    "credential",
)
REDACTED = "[REDACTED]"

UserType = Literal["admin", "client", "system"]


class AuditEntry(BaseModel):
    user_email: str = "system"
    user_type: UserType = "system"
    action: str
    entity_type: str
    entity_id: str | None = None
    entity_name: str | None = None
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _is_sensitive(field: str) -> bool:
    lowered = field.lower()
    return any(marker in lowered for marker in SENSITIVE_FIELDS)


def sanitize(data: dict[str, Any] | None) -> dict[str, Any] | None:
    if data is None:
        return None
    return {k: (REDACTED if _is_sensitive(k) else v) for k, v in data.items()}


def calculate_changes(
    old: dict[str, Any] | None,
    new: dict[str, Any] | None,
) -> dict[str, dict[str, Any]] | None:
    """Field-level {from, to} diff; None when either side is missing or nothing changed."""
    if not old or not new:
        return None

    changes: dict[str, dict[str, Any]] = {}
    for key in {*old.keys(), *new.keys()}:
        before, after = old.get(key), new.get(key)
        if json.dumps(before, default=str, sort_keys=True) == json.dumps(after, default=str, sort_keys=True):
            continue
        if _is_sensitive(key):
            changes[key] = {"from": REDACTED, "to": REDACTED}
        else:
            changes[key] = {"from": before, "to": after}
    return changes or None


class AuditLogger:
    def __init__(self, store: Store) -> None:
        self._store = store

    def log(self, entry: AuditEntry) -> bool:
        try:
            self._store.execute(
                """INSERT INTO audit_logs
                   (user_email, user_type, action, entity_type, entity_id, entity_name,
                    old_value, new_value, changes, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.user_email,
                    entry.user_type,
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    entry.entity_name,
                    dump_json(sanitize(entry.old_value)),
                    dump_json(sanitize(entry.new_value)),
                    dump_json(calculate_changes(entry.old_value, entry.new_value)),
                    dump_json(entry.metadata or None),
                ),
            )
        except sqlite3.Error:
            logger.exception("Failed to write audit entry %s %s", entry.action, entry.entity_type)
            return False
        return True

    def log_create(self, entity_type: str, entity_id: int | str, entity_name: str | None = None,
                   new_value: dict | None = None, **metadata: Any) -> bool:
        return self.log(AuditEntry(
            action="create", entity_type=entity_type, entity_id=str(entity_id),
            entity_name=entity_name, new_value=new_value, metadata=metadata,
        ))

    def log_update(self, entity_type: str, entity_id: int | str, entity_name: str | None = None,
                   old_value: dict | None = None, new_value: dict | None = None, **metadata: Any) -> bool:
        return self.log(AuditEntry(
            action="update", entity_type=entity_type, entity_id=str(entity_id),
            entity_name=entity_name, old_value=old_value, new_value=new_value, metadata=metadata,
        ))

    def log_delete(self, entity_type: str, entity_id: int | str, entity_name: str | None = None,
                   old_value: dict | None = None, **metadata: Any) -> bool:
        # Deletes record what was removed; there is no new value
        return self.log(AuditEntry(
            action="delete", entity_type=entity_type, entity_id=str(entity_id),
            entity_name=entity_name, old_value=old_value, new_value=None, metadata=metadata,
        ))

    def log_status_change(self, entity_type: str, entity_id: int | str, entity_name: str | None,
                          old_status: str | None, new_status: str, **metadata: Any) -> bool:
        return self.log(AuditEntry(
            action="status_change", entity_type=entity_type, entity_id=str(entity_id),
            entity_name=entity_name, old_value={"status": old_status},
            new_value={"status": new_status}, metadata=metadata,
        ))

    def entries_for(self, entity_type: str, entity_id: int | str) -> list[dict]:
        return self._store.fetch_all(
            "SELECT * FROM audit_logs WHERE entity_type = ? AND entity_id = ? ORDER BY id",
            (entity_type, str(entity_id)),
        )
