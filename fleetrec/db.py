from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .events import Event


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If a bind-mounted *file* path does not exist, Docker creates a *directory*
    at that location and sqlite then fails with "unable to open database
    file". When the configured path is a directory we place the DB file
    inside it.
    """

    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, "fleet.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


class SqliteEventSink:
    """Persists structured events in an `events` table."""

    def __init__(self, path: str) -> None:
        self.path = _resolve_db_path(path)
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  lineage TEXT,
                  unit TEXT,
                  version TEXT,
                  message TEXT NOT NULL,
                  data TEXT NOT NULL DEFAULT '{}'
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_events_lineage ON events(lineage);
                """
            )

    def emit(self, event: Event) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO events (ts, level, kind, lineage, unit, version, message, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.ts,
                    event.level.upper(),
                    event.kind,
                    event.lineage,
                    event.unit,
                    event.version,
                    event.message,
                    json.dumps(event.data, default=str),
                ),
            )

    def latest(self, limit: int = 100, lineage: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if lineage:
                rows = conn.execute(
                    "SELECT * FROM events WHERE lineage=? ORDER BY id DESC LIMIT ?", (lineage, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        out: list[dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["data"] = json.loads(d["data"] or "{}")
            out.append(d)
        return out
