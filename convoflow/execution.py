"""ConvoFlow Execution — one run of a flow for one subject.

An Execution exclusively owns its variables and its log.  It is mutated only
by the Step Interpreter while the Runner holds the execution's lock, and it is
never deleted: terminal records stay for audit.

Status transitions
------------------
    RUNNING        → WAITING_INPUT | COMPLETED | FAILED | CANCELLED
    WAITING_INPUT  → RUNNING (resume) | CANCELLED

COMPLETED, FAILED and CANCELLED are final; ``transition()`` raises
InvalidTransition for anything else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from convoflow.errors import InvalidTransition
from convoflow.store import VariableStore


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    WAITING_INPUT = "WAITING_INPUT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.WAITING_INPUT,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.WAITING_INPUT: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class LogEvent(str, Enum):
    NODE_START = "node_start"
    NODE_END = "node_end"
    NODE_ERROR = "node_error"
    SUSPENDED = "suspended"
    RESUMED = "resumed"


@dataclass(frozen=True)
class LogEntry:
    node_id: str
    event: LogEvent
    timestamp: str
    payload: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "node_id": self.node_id,
            "event": self.event.value,
            "timestamp": self.timestamp,
        }
        if self.payload is not None:
            out["payload"] = self.payload
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "LogEntry":
        return cls(
            node_id=raw["node_id"],
            event=LogEvent(raw["event"]),
            timestamp=raw["timestamp"],
            payload=raw.get("payload"),
        )


@dataclass
class Execution:
    """Durable state of a single flow run.

    Attributes
    ----------
    current_node_id :
        The cursor.  While WAITING_INPUT it is the suspended ``wait`` node;
        terminal executions have none.
    wait_deadline :
        When the pending wait times out (UTC); only set while WAITING_INPUT.
    expected_keywords :
        Lower-cased keywords the pending wait accepts; empty accepts any reply.
    error :
        Short reason recorded when the execution FAILED.
    """

    flow_id: str
    subject_key: str
    id: str = field(default_factory=lambda: uuid4().hex)
    flow_version: int = 1
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_node_id: str | None = None
    variables: VariableStore = field(default_factory=VariableStore)
    wait_deadline: datetime | None = None
    expected_keywords: tuple[str, ...] = ()
    log: list[LogEntry] = field(default_factory=list)
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # ── State machine ─────────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: ExecutionStatus, now: datetime | None = None) -> None:
        """Move to *status*; raises InvalidTransition if the move is illegal."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.status.value, status.value)
        self.status = status
        self.updated_at = now or utcnow()
        if status is not ExecutionStatus.WAITING_INPUT:
            self.wait_deadline = None
            self.expected_keywords = ()
        if status.is_terminal:
            self.current_node_id = None

    def append_log(
        self,
        node_id: str,
        event: LogEvent,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> LogEntry:
        entry = LogEntry(
            node_id=node_id,
            event=event,
            timestamp=(now or utcnow()).isoformat(),
            payload=payload,
        )
        self.log.append(entry)
        return entry

    # ── Serialisation ─────────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "flow_version": self.flow_version,
            "subject_key": self.subject_key,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "variables": self.variables.snapshot(),
            "wait_deadline": _iso(self.wait_deadline),
            "expected_keywords": list(self.expected_keywords),
            "log": [e.to_dict() for e in self.log],
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Execution":
        return cls(
            id=raw["id"],
            flow_id=raw["flow_id"],
            flow_version=int(raw.get("flow_version") or 1),
            subject_key=raw["subject_key"],
            status=ExecutionStatus(raw["status"]),
            current_node_id=raw.get("current_node_id"),
            variables=VariableStore.restore(raw.get("variables") or {}, name=raw["id"]),
            wait_deadline=_parse_ts(raw.get("wait_deadline")),
            expected_keywords=tuple(raw.get("expected_keywords") or ()),
            log=[LogEntry.from_dict(e) for e in raw.get("log") or []],
            error=raw.get("error"),
            created_at=_parse_ts(raw.get("created_at")) or utcnow(),
            updated_at=_parse_ts(raw.get("updated_at")) or utcnow(),
        )

