from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any


logger = logging.getLogger("mcfleet")

_db_path: str | None = None


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If a bind-mounted file path did not exist when the container started,
    Docker creates a directory there instead. In that case the journal goes
    inside the directory.
    """
    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, "mcfleet.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    if _db_path is None:
        raise RuntimeError("Event journal not initialized; call init_db() first.")
    conn = sqlite3.connect(_db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str) -> None:
    """Point the journal at ``path`` and create the table if missing."""
    global _db_path
    _db_path = _resolve_db_path(path)
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              workload_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_workload ON events(workload_id);
            """
        )


def log_event(level: str, message: str, workload_id: str | None = None) -> None:
    level = level.upper()
    py_level = logging.WARNING if level == "WARN" else getattr(logging, level, logging.INFO)
    logger.log(py_level, "%s%s", f"[{workload_id}] " if workload_id else "", message)
    if _db_path is None:
        return
    try:
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, workload_id, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level, workload_id, message),
            )
    except sqlite3.Error as e:
        logger.warning("Event journal write failed: %s", e)


def latest_events(limit: int = 100, workload_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if workload_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE workload_id=? ORDER BY id DESC LIMIT ?", (workload_id, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
