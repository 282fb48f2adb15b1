"""Graph store access — the narrow relational contract the self-healing core needs.

Three calls only: a point query (at most one row), a set query (all rows) and
a mutation (affected rows + inserted id). No implicit retries.

SQLiteGraphStore is the bundled implementation. Each call opens its own
connection so it is safe to use from the executor threads the monitor and
repair engine run store calls on; every mutation is its own committed unit.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

Params = Sequence[Any]


@dataclass
class RunResult:
    """Outcome of a mutation."""

    changes: int
    last_row_id: int | None = None


class GraphStore(Protocol):
    """What the monitor, repair engine and report sink need from the database."""

    def get(self, sql: str, params: Params = ()) -> dict[str, Any] | None: ...

    def all(self, sql: str, params: Params = ()) -> list[dict[str, Any]]: ...

    def run(self, sql: str, params: Params = ()) -> RunResult: ...


# ── SQLite implementation ────────────────────────────────────────────────────

# Foreign keys are declared but not enforced (SQLite default), so broken
# states can exist on disk and be detected by the integrity scan.
SCHEMA = """
    CREATE TABLE IF NOT EXISTS functions_nodes (
        id          TEXT PRIMARY KEY,
        title       TEXT,
        kind        TEXT NOT NULL DEFAULT 'item',
        path_json   TEXT NOT NULL DEFAULT '[]',
        weight      INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT DEFAULT (datetime('now')),
        updated_at  TEXT
    );

    CREATE TABLE IF NOT EXISTS functions_edges (
        parent_id          TEXT NOT NULL,
        child_id           TEXT NOT NULL,
        weight             INTEGER DEFAULT 1,
        relationship_type  TEXT DEFAULT 'contains',
        created_at         TEXT DEFAULT (datetime('now')),
        PRIMARY KEY (parent_id, child_id),
        FOREIGN KEY (parent_id) REFERENCES functions_nodes(id),
        FOREIGN KEY (child_id)  REFERENCES functions_nodes(id)
    );

    CREATE INDEX IF NOT EXISTS idx_edges_child
        ON functions_edges (child_id);

    CREATE TABLE IF NOT EXISTS audit_log (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        entity      TEXT NOT NULL,
        entity_id   TEXT,
        action      TEXT NOT NULL,
        details     TEXT,
        created_at  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_audit_entity
        ON audit_log (entity, created_at DESC);
"""


class SQLiteGraphStore:
    """SQLite-backed GraphStore with schema bootstrap."""

    def __init__(self, db_path: Path | str, init_schema: bool = True) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        if init_schema:
            self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self) -> None:
        with closing(self._conn()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.debug("Graph store schema ready at %s", self._db_path)

    def get(self, sql: str, params: Params = ()) -> dict[str, Any] | None:
        """Return the first matching row, or None."""
        with closing(self._conn()) as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        return dict(row) if row else None

    def all(self, sql: str, params: Params = ()) -> list[dict[str, Any]]:
        """Return every matching row."""
        with closing(self._conn()) as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [dict(r) for r in rows]

    def run(self, sql: str, params: Params = ()) -> RunResult:
        """Execute a single mutation in its own transaction."""
        with closing(self._conn()) as conn:
            with conn:
                cursor = conn.execute(sql, tuple(params))
        return RunResult(changes=cursor.rowcount, last_row_id=cursor.lastrowid)
