"""ConvoFlow execution stores — durable state of in-flight and finished executions.

Contract
--------
    create(execution)            insert a new record
    save(execution)              update status / cursor / variables and append
                                 new log entries, atomically
    get(execution_id)            → Execution  (ExecutionNotFound if absent)
    find_waiting(subject_key)    → the WAITING_INPUT execution of a subject, or None
    list_due(now)                → ids of waiting executions whose deadline passed
    list(status=None, limit=100) → most recently updated first

Every read returns a fresh Execution rebuilt from the serialised record, so
callers never alias another thread's object.  Records are never deleted.

Two implementations:

    MemoryExecutionStore   — dict of serialised records, for tests and the CLI
    SQLiteExecutionStore   — single SQLite file, WAL mode, one connection per call

SQLite schema
-------------
    cf_executions   — one row per execution (status, cursor, variables JSON)
    cf_log_entries  — ordered, append-only log (seq per execution)
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from convoflow.errors import ExecutionNotFound
from convoflow.execution import Execution, ExecutionStatus, LogEntry
from convoflow.logging import get_logger

_log = get_logger("db")


class ExecutionStore(ABC):
    @abstractmethod
    def create(self, execution: Execution) -> None: ...

    @abstractmethod
    def save(self, execution: Execution) -> None: ...

    @abstractmethod
    def get(self, execution_id: str) -> Execution: ...

    @abstractmethod
    def find_waiting(self, subject_key: str) -> Execution | None: ...

    @abstractmethod
    def list_due(self, now: datetime) -> list[str]: ...

    @abstractmethod
    def list(self, status: ExecutionStatus | None = None, limit: int = 100) -> list[Execution]: ...


# ── In memory ─────────────────────────────────────────────────────────────────

class MemoryExecutionStore(ExecutionStore):
    """Process-local store keeping each execution as its serialised dict."""

    def __init__(self):
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, execution: Execution) -> None:
        with self._lock:
            if execution.id in self._records:
                raise ValueError(f"Execution '{execution.id}' already exists")
            self._records[execution.id] = execution.to_dict()
        _log.debug("Execution created  id=%s  subject=%s", execution.id, execution.subject_key)

    def save(self, execution: Execution) -> None:
        record = execution.to_dict()
        with self._lock:
            if execution.id not in self._records:
                raise ExecutionNotFound(execution.id)
            self._records[execution.id] = record

    def get(self, execution_id: str) -> Execution:
        with self._lock:
            record = self._records.get(execution_id)
            if record is None:
                raise ExecutionNotFound(execution_id)
            record = copy.deepcopy(record)
        return Execution.from_dict(record)

    def find_waiting(self, subject_key: str) -> Execution | None:
        with self._lock:
            for record in self._records.values():
                if (record["subject_key"] == subject_key
                        and record["status"] == ExecutionStatus.WAITING_INPUT.value):
                    return Execution.from_dict(copy.deepcopy(record))
        return None

    def list_due(self, now: datetime) -> list[str]:
        due = []
        with self._lock:
            for record in self._records.values():
                if record["status"] != ExecutionStatus.WAITING_INPUT.value:
                    continue
                deadline = record.get("wait_deadline")
                if deadline and datetime.fromisoformat(deadline) <= now:
                    due.append((deadline, record["id"]))
        return [execution_id for _, execution_id in sorted(due)]

    def list(self, status: ExecutionStatus | None = None, limit: int = 100) -> list[Execution]:
        with self._lock:
            records = [
                copy.deepcopy(r) for r in self._records.values()
                if status is None or r["status"] == ExecutionStatus(status).value
            ]
        records.sort(key=lambda r: r["updated_at"], reverse=True)
        return [Execution.from_dict(r) for r in records[:limit]]


# ── SQLite ────────────────────────────────────────────────────────────────────

_DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS cf_executions (
    id                 TEXT PRIMARY KEY,
    flow_id            TEXT NOT NULL,
    flow_version       INTEGER NOT NULL DEFAULT 1,
    subject_key        TEXT NOT NULL,
    status             TEXT NOT NULL
        CHECK(status IN ('RUNNING','WAITING_INPUT','COMPLETED','FAILED','CANCELLED')),
    current_node_id    TEXT,
    variables_json     TEXT NOT NULL DEFAULT '{}',
    wait_deadline      TEXT,
    expected_keywords  TEXT NOT NULL DEFAULT '[]',
    error              TEXT,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS cf_executions_subject
    ON cf_executions (subject_key, status);
CREATE INDEX IF NOT EXISTS cf_executions_deadline
    ON cf_executions (status, wait_deadline);

CREATE TABLE IF NOT EXISTS cf_log_entries (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id  TEXT NOT NULL,
    seq           INTEGER NOT NULL,
    node_id       TEXT NOT NULL,
    event         TEXT NOT NULL
        CHECK(event IN ('node_start','node_end','node_error','suspended','resumed')),
    ts            TEXT NOT NULL,
    payload_json  TEXT,
    UNIQUE(execution_id, seq),
    FOREIGN KEY (execution_id) REFERENCES cf_executions(id)
);
"""


def _utc_text(ts: datetime | None) -> str | None:
    # Fixed-width UTC text so deadlines compare correctly as strings.
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteExecutionStore(ExecutionStore):
    """SQLite-backed execution store.

    Parameters
    ----------
    db_path :
        Path to the SQLite file.  Created (with parent directories) if it does
        not exist.

    Thread-safety: each method opens its own connection, so the Runner's
    worker threads and the scheduler thread never share connection state.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ── Internal helpers ──────────────────────────────────────────────────────

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_DDL)
        _log.debug("SQLiteExecutionStore ready  path=%s", self.db_path)

    @staticmethod
    def _row_values(execution: Execution) -> dict[str, Any]:
        return {
            "id": execution.id,
            "flow_id": execution.flow_id,
            "flow_version": execution.flow_version,
            "subject_key": execution.subject_key,
            "status": execution.status.value,
            "current_node_id": execution.current_node_id,
            "variables_json": json.dumps(execution.variables.snapshot(), ensure_ascii=False),
            "wait_deadline": _utc_text(execution.wait_deadline),
            "expected_keywords": json.dumps(list(execution.expected_keywords), ensure_ascii=False),
            "error": execution.error,
            "created_at": execution.created_at.isoformat(),
            "updated_at": execution.updated_at.isoformat(),
        }

    @staticmethod
    def _append_log(conn: sqlite3.Connection, execution_id: str,
                    entries: list[LogEntry], first_seq: int) -> None:
        conn.executemany(
            """INSERT INTO cf_log_entries
               (execution_id, seq, node_id, event, ts, payload_json)
               VALUES (?,?,?,?,?,?)""",
            [
                (
                    execution_id, first_seq + i, e.node_id, e.event.value, e.timestamp,
                    json.dumps(e.payload, ensure_ascii=False) if e.payload is not None else None,
                )
                for i, e in enumerate(entries)
            ],
        )

    def _load(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Execution:
        log_rows = conn.execute(
            "SELECT node_id, event, ts, payload_json FROM cf_log_entries "
            "WHERE execution_id=? ORDER BY seq",
            (row["id"],),
        ).fetchall()
        return Execution.from_dict({
            "id": row["id"],
            "flow_id": row["flow_id"],
            "flow_version": row["flow_version"],
            "subject_key": row["subject_key"],
            "status": row["status"],
            "current_node_id": row["current_node_id"],
            "variables": json.loads(row["variables_json"]),
            "wait_deadline": row["wait_deadline"],
            "expected_keywords": json.loads(row["expected_keywords"]),
            "error": row["error"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "log": [
                {
                    "node_id": r["node_id"],
                    "event": r["event"],
                    "timestamp": r["ts"],
                    "payload": json.loads(r["payload_json"]) if r["payload_json"] else None,
                }
                for r in log_rows
            ],
        })

    # ── Contract ──────────────────────────────────────────────────────────────

    def create(self, execution: Execution) -> None:
        values = self._row_values(execution)
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        with self._conn() as conn:
            conn.execute(f"INSERT INTO cf_executions ({cols}) VALUES ({marks})",
                         tuple(values.values()))
            self._append_log(conn, execution.id, execution.log, 0)
        _log.debug("Execution created  id=%s  subject=%s", execution.id, execution.subject_key)

    def save(self, execution: Execution) -> None:
        values = self._row_values(execution)
        execution_id = values.pop("id")
        set_clause = ", ".join(f"{k} = ?" for k in values)
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE cf_executions SET {set_clause} WHERE id = ?",
                (*values.values(), execution_id),
            )
            if cur.rowcount == 0:
                raise ExecutionNotFound(execution_id)
            stored = conn.execute(
                "SELECT COUNT(*) FROM cf_log_entries WHERE execution_id=?",
                (execution_id,),
            ).fetchone()[0]
            self._append_log(conn, execution_id, execution.log[stored:], stored)

    def get(self, execution_id: str) -> Execution:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM cf_executions WHERE id = ?", (execution_id,)
            ).fetchone()
            if row is None:
                raise ExecutionNotFound(execution_id)
            return self._load(conn, row)

    def find_waiting(self, subject_key: str) -> Execution | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM cf_executions WHERE subject_key=? AND status=? "
                "ORDER BY updated_at DESC LIMIT 1",
                (subject_key, ExecutionStatus.WAITING_INPUT.value),
            ).fetchone()
            return self._load(conn, row) if row else None

    def list_due(self, now: datetime) -> list[str]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT id FROM cf_executions WHERE status=? AND wait_deadline IS NOT NULL "
                "AND wait_deadline <= ? ORDER BY wait_deadline",
                (ExecutionStatus.WAITING_INPUT.value, _utc_text(now)),
            ).fetchall()
        return [r["id"] for r in rows]

    def list(self, status: ExecutionStatus | None = None, limit: int = 100) -> list[Execution]:
        with self._conn() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM cf_executions ORDER BY updated_at DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM cf_executions WHERE status=? "
                    "ORDER BY updated_at DESC LIMIT ?",
                    (ExecutionStatus(status).value, limit),
                ).fetchall()
            return [self._load(conn, r) for r in rows]
