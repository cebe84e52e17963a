"""SQLite storage layer.

One connection per process, owned by the Store. Services issue plain SQL
through the small helper surface below; rows come back as dicts.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from core.data.schema import SCHEMA

logger = logging.getLogger(__name__)

Params = Sequence[Any] | dict[str, Any]


class Store:
    """Unified storage layer over a single SQLite database file."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db: sqlite3.Connection | None = None
        self._tx_depth = 0
        self._init_sqlite()

    # ------------------------------------------------------------------
    # SQLite
    # ------------------------------------------------------------------

    def _init_sqlite(self) -> None:
        """Initialize SQLite database and create tables if needed."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(self._db_path))
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.executescript(SCHEMA)
        self._db.commit()
        logger.info("SQLite initialized at %s", self._db_path)

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized")
        return self._db

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the SQLite connection."""
        if self._db:
            self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: Params = ()) -> sqlite3.Cursor:
        """Run a statement; commits immediately unless inside `transaction()`."""
        cursor = self.db.execute(sql, params)
        if self._tx_depth == 0:
            self.db.commit()
        return cursor

    def insert(self, sql: str, params: Params = ()) -> int:
        """Run an INSERT and return the new row id."""
        cursor = self.execute(sql, params)
        return int(cursor.lastrowid)

    def fetch_all(self, sql: str, params: Params = ()) -> list[dict[str, Any]]:
        return [dict(row) for row in self.db.execute(sql, params).fetchall()]

    def fetch_one(self, sql: str, params: Params = ()) -> dict[str, Any] | None:
        row = self.db.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def fetch_value(self, sql: str, params: Params = (), default: Any = None) -> Any:
        row = self.db.execute(sql, params).fetchone()
        if row is None or row[0] is None:
            return default
        return row[0]

    @contextmanager
    def transaction(self) -> Iterator[Store]:
        """Group statements into one commit; rolls back on error.

        Nested calls join the outermost transaction.
        """
        self._tx_depth += 1
        try:
            yield self
        except Exception:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.db.rollback()
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.db.commit()


def dump_json(value: Any) -> str | None:
    """Serialize a value for a *_json / TEXT column (None stays NULL)."""
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_json(value: str | None, default: Any = None) -> Any:
    """Parse a JSON TEXT column, logging and returning `default` on bad data."""
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Could not decode JSON column value: %.80r", value)
        return default
