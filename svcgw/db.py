from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime
from threading import Lock
from typing import Any

from .settings import settings

logger = logging.getLogger("svcgw")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_init_lock = Lock()
_initialized: set[str] = set()


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file does not exist yet), the journal lives inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "svcgw.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    path = _resolve_db_path()
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if path not in _initialized:
        with _init_lock:
            if path not in _initialized:
                _create_tables(conn)
                _initialized.add(path)
    return conn


def _create_tables(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts TEXT NOT NULL,
          level TEXT NOT NULL,
          service_name TEXT,
          message TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
        CREATE INDEX IF NOT EXISTS idx_events_service ON events(service_name);
        """
    )


def init_db() -> None:
    """Create the journal tables if they do not exist."""
    with connect():
        pass


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    level = level.upper()
    logger.log(
        _LEVELS.get(level, logging.INFO),
        "%s%s",
        f"[{service_name}] " if service_name else "",
        message,
    )
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level, service_name, message),
        )


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?",
                (service_name, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
