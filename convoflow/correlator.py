"""ConvoFlow Resume Correlator — matches inbound events to suspended executions.

A subject (contact) has at most one WAITING_INPUT execution.  An inbound
message for that subject is routed like this:

    keyword matched            → resume down ``yes``       reason "keyword"
    no keywords configured     → resume down ``yes``       reason "reply"
    no match                   → resume down ``no``        reason "mismatch"
    no match, holdOnMismatch   → stay WAITING_INPUT, only ``last_message`` changes

A wait deadline that passes resumes down ``no`` with reason "timeout" and sets
``timeout_triggered``.

The correlator takes the execution lock itself; callers hold the subject lock
when they need arrival order per subject.
"""

from __future__ import annotations

import re
import threading
from datetime import datetime
from typing import Callable

from convoflow.errors import ResumeMismatch
from convoflow.execution import Execution, ExecutionStatus
from convoflow.graph import NO, YES, FlowGraph, FlowRegistry
from convoflow.interpreter import StepInterpreter
from convoflow.locks import KeyedLocks
from convoflow.logging import get_logger
from convoflow.store import LAST_MESSAGE, TIMEOUT_TRIGGERED

_log = get_logger("correlator")

_PHONE_RE = re.compile(r"^[\d\s+\-().]+$")


def normalize_subject(subject_key: str) -> str:
    """Canonical form of a subject key.

    Phone-like keys (``+55 (11) 99999-0000``) are reduced to their digits so
    the same contact always correlates; anything else is only stripped.
    """
    key = str(subject_key).strip()
    if _PHONE_RE.match(key) and any(c.isdigit() for c in key):
        return re.sub(r"\D", "", key)
    return key


def match_keywords(keywords, text: str) -> str | None:
    """Return the first keyword contained in *text* (case-insensitive), else None."""
    folded = (text or "").casefold()
    for keyword in keywords:
        if keyword and keyword.casefold() in folded:
            return keyword
    return None


class ResumeCorrelator:
    """Find the waiting execution for a subject and re-enter the interpreter.

    Parameters
    ----------
    store :
        ExecutionStore holding the executions.
    interpreter :
        StepInterpreter used to continue the execution after the wait node.
    flows :
        Registry resolving an execution's (flow_id, flow_version).
    locks :
        Per-execution lock registry shared with the Runner.
    cancel_event :
        Returns the cancellation Event of an execution id.
    guard :
        ``guard(execution, step)`` runs the interpreter call *step* for
        *execution*; the Runner passes one that turns crashes into FAILED.
    """

    def __init__(
        self,
        store,
        interpreter: StepInterpreter,
        flows: FlowRegistry,
        locks: KeyedLocks | None = None,
        cancel_event: Callable[[str], threading.Event] | None = None,
        guard: Callable[[Execution, Callable[[], object]], None] | None = None,
    ):
        self.store = store
        self.interpreter = interpreter
        self.flows = flows
        self.locks = locks or KeyedLocks("executions")
        self.cancel_event = cancel_event
        self.guard = guard or (lambda execution, step: step())

    def _graph_for(self, execution: Execution) -> FlowGraph:
        return self.flows.get(execution.flow_id, execution.flow_version)

    def _cancel_for(self, execution_id: str) -> threading.Event | None:
        return self.cancel_event(execution_id) if self.cancel_event else None

    def _persist(self, execution: Execution) -> None:
        execution.updated_at = self.interpreter.clock()
        self.store.save(execution)

    # ── Inbound messages ──────────────────────────────────────────────────────

    def resume(self, subject_key: str, text: str) -> str | None:
        """Deliver *text* to the subject's waiting execution.

        Returns
        -------
        The execution id when the execution was re-entered, None when the
        message was recorded but the wait is still pending.

        Raises
        ------
        ResumeMismatch
            If the subject has no WAITING_INPUT execution.
        """
        subject_key = normalize_subject(subject_key)
        waiting = self.store.find_waiting(subject_key)
        if waiting is None:
            raise ResumeMismatch(subject_key)

        with self.locks.hold(waiting.id):
            # Re-read under the lock: a timeout or cancel may have won the race.
            execution = self.store.get(waiting.id)
            if execution.status is not ExecutionStatus.WAITING_INPUT:
                raise ResumeMismatch(subject_key)

            graph = self._graph_for(execution)
            wait_node = graph.node(execution.current_node_id)
            execution.variables[LAST_MESSAGE] = text

            keywords = execution.expected_keywords
            if not keywords:
                label, reason = YES, "reply"
            elif match_keywords(keywords, text) is not None:
                label, reason = YES, "keyword"
            elif getattr(wait_node.data, "hold_on_mismatch", False):
                _log.info("Inbound did not match  execution=%s  keywords=%s",
                          execution.id, ",".join(keywords))
                self._persist(execution)
                return None
            else:
                label, reason = NO, "mismatch"

            _log.info("Resuming execution=%s  reason=%s  edge=%s",
                      execution.id, reason, label)
            cancel = self._cancel_for(execution.id)
            self.guard(execution, lambda: self.interpreter.resume(
                execution, graph, label, reason, text=text, cancel=cancel,
            ))
            return execution.id

    # ── Wait expiry ───────────────────────────────────────────────────────────

    def resume_timeout(self, execution_id: str, now: datetime) -> str | None:
        """Resume *execution_id* down ``no`` if its wait deadline has passed.

        Returns the id when the execution was resumed, None if it was no longer
        waiting or not yet due.
        """
        with self.locks.hold(execution_id):
            execution = self.store.get(execution_id)
            if (execution.status is not ExecutionStatus.WAITING_INPUT
                    or execution.wait_deadline is None
                    or execution.wait_deadline > now):
                return None

            graph = self._graph_for(execution)
            execution.variables[TIMEOUT_TRIGGERED] = True
            _log.info("Wait expired  execution=%s  node=%s",
                      execution.id, execution.current_node_id)
            cancel = self._cancel_for(execution.id)
            self.guard(execution, lambda: self.interpreter.resume(
                execution, graph, NO, "timeout", cancel=cancel,
            ))
            return execution.id
