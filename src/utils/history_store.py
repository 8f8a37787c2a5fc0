from __future__ import annotations

import json
import logging
import sqlite3
import threading
from functools import wraps
from pathlib import Path
from typing import Any, Callable, ParamSpec, TypeVar

import pandas as pd

from src.domain.models import AuditEntry

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for database read functions that returns a default value on error.
    Keeps the API and the orchestrator alive when the database is locked or unavailable.
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                logger.warning(f"Database read failed ({func.__name__}): {e}")
                return default_factory()
            except sqlite3.DatabaseError as e:
                logger.error(f"Database error ({func.__name__}): {e}")
                return default_factory()
            except (ValueError, KeyError) as e:
                logger.error(f"Corrupt history row in {func.__name__}: {type(e).__name__}: {e}")
                return default_factory()
        return wrapper
    return decorator


class HistoryStore:
    """
    Append-only sqlite store for audit entries and position snapshots.

    Writes go through one shared connection under a lock; reads open their own
    connection and come back through pandas.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=10000")
        self.init_db()

    def init_db(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL,
                    next_stage TEXT,
                    error TEXT,
                    payload TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_audit_log_ts ON audit_log(timestamp);

                CREATE TABLE IF NOT EXISTS position_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    symbol TEXT,
                    event TEXT,
                    snapshot TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def _connect_ro(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=10)

    # ----- audit log -----

    def append(self, entry: AuditEntry) -> None:
        d = entry.to_dict()
        with self._lock:
            self._conn.execute(
                "INSERT INTO audit_log (timestamp, stage, status, next_stage, error, payload) VALUES (?, ?, ?, ?, ?, ?)",
                (d["timestamp"], d["stage"], d["status"], d["next_stage"], d["error"],
                 json.dumps(d["payload"], default=str)),
            )
            self._conn.commit()

    @safe_db_read(default_factory=pd.DataFrame)
    def get_audit_frame(self, limit: int | None = None) -> pd.DataFrame:
        conn = self._connect_ro()
        try:
            sql = "SELECT * FROM audit_log ORDER BY timestamp DESC, id DESC"
            if limit:
                return pd.read_sql_query(sql + " LIMIT ?", conn, params=(int(limit),))
            return pd.read_sql_query(sql, conn)
        finally:
            conn.close()

    @safe_db_read(default_factory=list)
    def read_all(self) -> list[AuditEntry]:
        df = self.get_audit_frame()
        if df.empty:
            return []
        out: list[AuditEntry] = []
        for row in df.to_dict("records"):
            out.append(AuditEntry.from_dict({
                "timestamp": row["timestamp"],
                "stage": row["stage"],
                "status": row["status"],
                "next_stage": row["next_stage"] if isinstance(row["next_stage"], str) else None,
                "error": row["error"] if isinstance(row["error"], str) else None,
                "payload": json.loads(row["payload"]) if isinstance(row["payload"], str) else None,
            }))
        return out

    # ----- position snapshots -----

    def append_position(self, snapshot: dict[str, Any]) -> None:
        position = snapshot.get("position") or {}
        with self._lock:
            self._conn.execute(
                "INSERT INTO position_history (timestamp, symbol, event, snapshot) VALUES (?, ?, ?, ?)",
                (
                    str(snapshot.get("timestamp") or position.get("updated_at") or ""),
                    position.get("symbol"),
                    snapshot.get("event"),
                    json.dumps(snapshot, default=str),
                ),
            )
            self._conn.commit()

    @safe_db_read(default_factory=list)
    def read_positions(self) -> list[dict[str, Any]]:
        conn = self._connect_ro()
        try:
            df = pd.read_sql_query("SELECT snapshot FROM position_history ORDER BY timestamp DESC, id DESC", conn)
        finally:
            conn.close()
        return [json.loads(s) for s in df["snapshot"].tolist()]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
