"""Permanent removal of soft-deleted rows past their retention window."""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta

from core.clock import utc_now
from core.data.store import Store
from core.models.results import DeletedItemStats, SoftDeleteResult

logger = logging.getLogger(__name__)

# Children first so cascades never remove rows we are about to count
PURGE_ORDER: tuple[tuple[str, str], ...] = (
    ("proposals", "proposal_requests"),
    ("invoices", "invoices"),
    ("projects", "projects"),
    ("clients", "clients"),
)


class SoftDeleteService:
    def __init__(self, store: Store) -> None:
        self._store = store

    def permanently_delete_expired(self, retention_days: int = 30) -> SoftDeleteResult:
        cutoff = (utc_now() - timedelta(days=retention_days)).isoformat()
        result = SoftDeleteResult()
        counts: dict[str, int] = {}

        for label, table in PURGE_ORDER:
            try:
                cursor = self._store.execute(
                    f"DELETE FROM {table} WHERE deleted_at IS NOT NULL AND deleted_at < ?",
                    (cutoff,),
                )
                counts[label] = cursor.rowcount
            except sqlite3.Error as exc:
                logger.exception("Failed to purge soft-deleted %s", label)
                result.errors.append(f"{label}: {exc}")

        result.deleted = DeletedItemStats(**counts)
        if result.deleted.total:
            logger.info(
                "Purged %d soft-deleted row(s) older than %d days: %s",
                result.deleted.total,
                retention_days,
                result.deleted.model_dump(),
            )
        return result
