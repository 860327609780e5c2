"""ConvoFlow StepInterpreter — advances one execution through its flow graph.

Design
------
A *tick* runs the execution from RUNNING until it suspends or terminates:

  1. Resolve the node under the cursor and its handler
  2. Append ``node_start``, run the handler, append ``node_end``
  3. Turn the handler's action into the next cursor position
  4. Persist the execution (``on_step`` callback) and repeat

The tick stops when
  • a ``wait`` node suspends      → WAITING_INPUT (plus a ``suspended`` entry)
  • there is no edge to follow    → COMPLETED (dead ends are valid terminals)
  • a node fails                  → ``node_error`` entry, then FAILED, unless
                                    the node names an ``onError`` fallback
  • the step budget is exhausted  → ``node_error`` StepBudgetExceeded, FAILED
  • cancellation was requested    → CANCELLED, checked between nodes only

The graph format allows arbitrary back-edges through ``goTo``; the step budget
is what guarantees a tick always ends.

Hooks (observability)
---------------------
    interp.on("node_start", lambda execution, node: ...)
    interp.on("node_end",   lambda execution, node, action, elapsed_s: ...)
    interp.on("node_error", lambda execution, node, exc: ...)
    interp.on("status",     lambda execution, old, new: ...)

Hook errors are logged and otherwise ignored.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Executor
from datetime import datetime, timezone
from typing import Any, Callable

from convoflow.config import EngineConfig
from convoflow.errors import StepBudgetExceeded
from convoflow.execution import Execution, ExecutionStatus, LogEvent
from convoflow.graph import FlowGraph, Node
from convoflow.logging import get_logger
from convoflow.nodes import (
    DEFAULT_ACTION,
    END,
    SUSPEND,
    Jump,
    NodeContext,
    get_handler,
)

_log = get_logger("interpreter")

_VALID_HOOKS = {"node_start", "node_end", "node_error", "status"}


class StepInterpreter:
    """Run executions node by node.

    Parameters
    ----------
    sender :
        Message sender capability (``send(subject_key, text)``).
    generator :
        Generation capability for ``aiKnowledge`` nodes.
    knowledge :
        Optional knowledge base providing context to ``aiKnowledge`` nodes.
    config :
        Engine limits (step budget, AI retry policy, default wait timeout).
    clock :
        Returns the current UTC time; injectable for tests.
    sleep :
        Used for retry backoff; injectable for tests.
    on_step :
        Called with the execution after every state change so it can be
        persisted atomically per step.
    executor :
        Runs capability calls that have an overall timeout (``aiKnowledge``).
        Owned by the caller; without one the timeout is only checked
        between attempts.
    """

    def __init__(
        self,
        sender: Any,
        generator: Any = None,
        knowledge: Any = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
        on_step: Callable[[Execution], None] | None = None,
        executor: Executor | None = None,
    ):
        self.sender = sender
        self.generator = generator
        self.knowledge = knowledge
        self.config = config or EngineConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep or time.sleep
        self.on_step = on_step
        self.executor = executor
        self._hooks: dict[str, list[Callable]] = {k: [] for k in _VALID_HOOKS}

    # ── Hook registration ─────────────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> "StepInterpreter":
        """Register *callback* for *event*.  Returns self for chaining."""
        if event not in _VALID_HOOKS:
            raise ValueError(f"Unknown hook event '{event}'. Valid: {_VALID_HOOKS}")
        self._hooks[event].append(callback)
        return self

    def _fire(self, event: str, *args) -> None:
        for cb in self._hooks[event]:
            try:
                cb(*args)
            except Exception as e:
                _log.warning("Hook '%s' raised: %s", event, e)

    # ── State helpers ─────────────────────────────────────────────────────────

    def _persist(self, execution: Execution) -> None:
        execution.updated_at = self.clock()
        if self.on_step is not None:
            self.on_step(execution)

    def _set_status(self, execution: Execution, status: ExecutionStatus) -> None:
        old = execution.status
        execution.transition(status, now=self.clock())
        _log.info("Execution %s  %s → %s", execution.id, old.value, status.value)
        self._fire("status", execution, old, status)

    def _fail(self, execution: Execution, reason: str) -> None:
        execution.error = reason
        self._set_status(execution, ExecutionStatus.FAILED)
        self._persist(execution)

    def _complete(self, execution: Execution) -> None:
        self._set_status(execution, ExecutionStatus.COMPLETED)
        self._persist(execution)

    def _log_entry(self, execution: Execution, node_id: str, event: LogEvent,
                   payload: dict | None = None) -> None:
        execution.append_log(node_id, event, payload, now=self.clock())

    # ── Entry points ──────────────────────────────────────────────────────────

    def start(
        self,
        execution: Execution,
        graph: FlowGraph,
        cancel: threading.Event | None = None,
    ) -> ExecutionStatus:
        """Place the cursor on the start node and run the first tick."""
        execution.current_node_id = graph.start_node_id
        self._persist(execution)
        return self.tick(execution, graph, cancel)

    def resume(
        self,
        execution: Execution,
        graph: FlowGraph,
        label: str,
        reason: str,
        text: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionStatus:
        """Re-enter a WAITING_INPUT execution through its wait node's *label* edge.

        A wait node without the labeled edge falls back to its unlabeled edge;
        without either the execution completes at the wait node.
        """
        wait_id = execution.current_node_id
        payload: dict[str, Any] = {"reason": reason, "edge": label}
        if text is not None:
            payload["message"] = text
        self._log_entry(execution, wait_id, LogEvent.RESUMED, payload)
        self._set_status(execution, ExecutionStatus.RUNNING)

        target = graph.successor(wait_id, label) or graph.successor(wait_id, None)
        if target is None:
            _log.info("Execution %s: wait '%s' has no '%s' edge, completing",
                      execution.id, wait_id, label)
            self._complete(execution)
            return execution.status

        execution.current_node_id = target
        self._persist(execution)
        return self.tick(execution, graph, cancel)

    def tick(
        self,
        execution: Execution,
        graph: FlowGraph,
        cancel: threading.Event | None = None,
    ) -> ExecutionStatus:
        """Run *execution* until it suspends or reaches a terminal status."""
        if execution.status is not ExecutionStatus.RUNNING:
            _log.debug("Execution %s not RUNNING (%s); nothing to do",
                       execution.id, execution.status.value)
            return execution.status

        budget = self.config.step_budget
        steps = 0
        tick_t0 = time.time()

        while True:
            # ── Cancel check ──────────────────────────────────────────────────
            if cancel is not None and cancel.is_set():
                _log.info("Execution %s cancelled before node '%s'",
                          execution.id, execution.current_node_id)
                self._set_status(execution, ExecutionStatus.CANCELLED)
                self._persist(execution)
                break

            node_id = execution.current_node_id
            if steps >= budget:
                exc = StepBudgetExceeded(budget, node_id)
                _log.error("Execution %s: %s", execution.id, exc)
                self._log_entry(execution, node_id, LogEvent.NODE_ERROR, {
                    "error": type(exc).__name__,
                    "message": str(exc),
                    "budget": budget,
                })
                self._fail(execution, f"{type(exc).__name__}: {exc}")
                break
            steps += 1

            node = graph.node(node_id)
            if not self._step(execution, graph, node):
                break

        _log.info("Execution %s tick done  status=%s  steps=%d  %.2fs",
                  execution.id, execution.status.value, steps, time.time() - tick_t0)
        return execution.status

    # ── One node ──────────────────────────────────────────────────────────────

    def _step(self, execution: Execution, graph: FlowGraph, node: Node) -> bool:
        """Run *node*; return True while the tick should continue."""
        ctx = NodeContext(
            execution=execution,
            graph=graph,
            config=self.config,
            sender=self.sender,
            generator=self.generator,
            knowledge=self.knowledge,
            clock=self.clock,
            sleep=self.sleep,
            executor=self.executor,
        )

        _log.info("→ Node '%s' (%s) starting  execution=%s", node.id, node.type, execution.id)
        self._log_entry(execution, node.id, LogEvent.NODE_START, {"type": node.type})
        self._fire("node_start", execution, node)
        node_t0 = time.time()

        try:
            action = get_handler(node.type).run(ctx, node)
        except Exception as exc:
            payload = {"error": type(exc).__name__, "message": str(exc)}
            attempts = getattr(exc, "attempts", None)
            if attempts is not None:
                payload["attempts"] = attempts
            self._log_entry(execution, node.id, LogEvent.NODE_ERROR, payload)
            self._fire("node_error", execution, node, exc)

            fallback = node.data.on_error
            if fallback is not None:
                _log.warning("Node '%s' failed (%s); continuing at onError node '%s'",
                             node.id, exc, fallback)
                execution.current_node_id = fallback
                self._persist(execution)
                return True

            _log.error("Execution %s aborted at node '%s': %s", execution.id, node.id, exc)
            self._fail(execution, f"{type(exc).__name__} at node '{node.id}': {exc}")
            return False

        elapsed = time.time() - node_t0
        end_payload = dict(ctx.payload)
        end_payload["elapsed_ms"] = round(elapsed * 1000, 3)
        self._log_entry(execution, node.id, LogEvent.NODE_END, end_payload)
        self._fire("node_end", execution, node, action, elapsed)
        _log.info("← Node '%s' done  action='%s'  %.2fs", node.id, action, elapsed)

        if action == SUSPEND:
            self._set_status(execution, ExecutionStatus.WAITING_INPUT)
            # transition() leaves deadline/keywords in place for WAITING_INPUT
            self._log_entry(execution, node.id, LogEvent.SUSPENDED, {
                "wait_deadline": execution.wait_deadline.isoformat()
                if execution.wait_deadline else None,
                "expected_keywords": list(execution.expected_keywords),
            })
            self._persist(execution)
            return False

        if action == END:
            self._complete(execution)
            return False

        if isinstance(action, Jump):
            target = action.target
        else:
            label = None if action == DEFAULT_ACTION else action
            target = graph.successor(node.id, label)

        if target is None:
            _log.info("Execution %s: node '%s' has no edge for action '%s', completing",
                      execution.id, node.id, action)
            self._complete(execution)
            return False

        execution.current_node_id = target
        self._persist(execution)
        return True
