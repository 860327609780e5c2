"""ConvoFlow Runner — public entry points and the wait-expiry scheduler.

Usage
-----
    runner = Runner(SQLiteExecutionStore("convoflow.db"), sender=my_sender)
    runner.register_flow(load_flow_file("welcome.yaml"))

    execution_id = runner.start_execution("welcome", "+55 11 99999-0000",
                                          {"nome": "Ana"})
    runner.on_inbound_message("5511999990000", "sim, quero")
    print(runner.get_execution(execution_id)["status"])

    # poll wait deadlines in a daemon thread
    handle = runner.run_background(interval=5)
    ...
    handle.stop()
    handle.wait(timeout=10)

Concurrency
-----------
Calls may come from any thread.  Executions of different subjects run in
parallel; one execution is only ever advanced by the thread holding its lock.
Lock order is subject first, then execution.  Cancellation of a RUNNING
execution is cooperative: a flag checked between nodes.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from convoflow.config import EngineConfig
from convoflow.correlator import ResumeCorrelator, normalize_subject
from convoflow.errors import ExecutionAlreadyActive, FlowEngineError, ResumeMismatch
from convoflow.execution import Execution, ExecutionStatus, LogEvent
from convoflow.graph import FlowGraph, FlowRegistry
from convoflow.interpreter import StepInterpreter
from convoflow.locks import KeyedLocks
from convoflow.logging import get_logger
from convoflow.store import VariableStore

_log = get_logger("runner")

_CAPABILITY_WORKERS = 8


class Runner:
    """Owns the flows, the store and the locks; drives the interpreter.

    Parameters
    ----------
    store :
        ExecutionStore (``MemoryExecutionStore`` or ``SQLiteExecutionStore``).
    sender :
        Message sender capability.
    generator :
        Generation capability for ``aiKnowledge`` nodes.
    knowledge :
        Knowledge base capability for ``aiKnowledge`` context.
    flows :
        A FlowRegistry, or an iterable of FlowGraph / flow dicts to register.
    config :
        Engine limits; defaults to ``EngineConfig()``.
    clock :
        Returns the current UTC datetime; injectable for tests.
    sleep :
        Used for retry backoff; injectable for tests.
    """

    def __init__(
        self,
        store,
        sender,
        generator=None,
        knowledge=None,
        flows: FlowRegistry | Iterable[FlowGraph | dict] | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        if isinstance(flows, FlowRegistry):
            self.flows = flows
        else:
            self.flows = FlowRegistry()
            for flow in flows or ():
                self.flows.register(flow)

        self._subject_locks = KeyedLocks("subjects")
        self._execution_locks = KeyedLocks("executions")
        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_guard = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=_CAPABILITY_WORKERS, thread_name_prefix="convoflow-capability"
        )

        self.interpreter = StepInterpreter(
            sender,
            generator=generator,
            knowledge=knowledge,
            config=self.config,
            clock=self.clock,
            sleep=sleep,
            on_step=self.store.save,
            executor=self._executor,
        )
        self.correlator = ResumeCorrelator(
            store,
            self.interpreter,
            self.flows,
            locks=self._execution_locks,
            cancel_event=self._cancel_event,
            guard=self._guarded,
        )

    # ── Cancellation flags ────────────────────────────────────────────────────

    def _cancel_event(self, execution_id: str) -> threading.Event:
        with self._cancel_guard:
            event = self._cancel_events.get(execution_id)
            if event is None:
                event = self._cancel_events[execution_id] = threading.Event()
            return event

    def _release(self, execution_id: str) -> None:
        with self._cancel_guard:
            self._cancel_events.pop(execution_id, None)

    # ── Hooks ─────────────────────────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> "Runner":
        """Register an interpreter lifecycle hook (see StepInterpreter.on)."""
        self.interpreter.on(event, callback)
        return self

    # ── Flows ─────────────────────────────────────────────────────────────────

    def register_flow(self, flow: FlowGraph | dict[str, Any]) -> int:
        """Register (or re-register) a flow; returns its version."""
        return self.flows.register(flow)

    # ── Trigger API ───────────────────────────────────────────────────────────

    def start_execution(
        self,
        flow_id: str,
        subject_key: str,
        initial_vars: dict[str, Any] | None = None,
    ) -> str:
        """Create an execution of *flow_id* for *subject_key* and run it.

        Runs synchronously until the execution suspends or terminates.

        Raises
        ------
        FlowNotFound
            If no flow with *flow_id* is registered.
        ExecutionAlreadyActive
            If the subject already has a WAITING_INPUT execution.
        """
        graph, version = self.flows.latest(flow_id)
        subject_key = normalize_subject(subject_key)

        with self._subject_locks.hold(subject_key):
            active = self.store.find_waiting(subject_key)
            if active is not None:
                raise ExecutionAlreadyActive(subject_key, active.id)

            now = self.clock()
            execution = Execution(
                flow_id=graph.id,
                subject_key=subject_key,
                flow_version=version,
                created_at=now,
                updated_at=now,
            )
            execution.variables = VariableStore(initial_vars, name=execution.id)
            self.store.create(execution)
            _log.info("Execution started  id=%s  flow=%s@v%d  subject=%s",
                      execution.id, graph.id, version, subject_key)

            with self._execution_locks.hold(execution.id):
                cancel = self._cancel_event(execution.id)
                self._guarded(execution, lambda: self.interpreter.start(execution, graph, cancel))
        return execution.id

    def _guarded(self, execution: Execution, step: Callable[[], Any]) -> None:
        # Unexpected failures (store errors, bugs in custom handlers) end the
        # execution as FAILED instead of reaching the caller.  Caller holds
        # the execution lock.
        try:
            step()
        except Exception as exc:
            _log.exception("Execution %s crashed: %s", execution.id, exc)
            self._fail_stored(execution.id, exc)
        self._release_if_terminal(execution.id)

    def _fail_stored(self, execution_id: str, exc: Exception) -> None:
        # The in-memory copy may be ahead of what was saved, so the stored
        # record decides: a RUNNING one would otherwise never move again.
        try:
            stored = self.store.get(execution_id)
            if stored.status is not ExecutionStatus.RUNNING:
                return
            now = self.clock()
            if stored.current_node_id is not None:
                stored.append_log(stored.current_node_id, LogEvent.NODE_ERROR, {
                    "error": type(exc).__name__,
                    "message": str(exc),
                }, now=now)
            stored.error = f"{type(exc).__name__}: {exc}"
            stored.transition(ExecutionStatus.FAILED, now=now)
            self.store.save(stored)
            _log.info("Execution %s → FAILED after crash", execution_id)
        except Exception as save_exc:
            _log.error("Could not record failure of %s: %s", execution_id, save_exc)

    # ── Webhook intake ────────────────────────────────────────────────────────

    def on_inbound_message(self, subject_key: str, text: str) -> str | None:
        """Route an inbound message to the subject's waiting execution.

        Returns the execution id if the execution was re-entered, otherwise
        None (no waiting execution, or a held mismatch).  Never
        raises for runtime problems; they are logged.
        """
        subject_key = normalize_subject(subject_key)
        with self._subject_locks.hold(subject_key):
            try:
                execution_id = self.correlator.resume(subject_key, text)
            except ResumeMismatch as exc:
                _log.info("Inbound dropped: %s", exc)
                return None
            except FlowEngineError as exc:
                _log.error("Inbound for subject %s failed: %s", subject_key, exc)
                return None
            except Exception as exc:
                _log.exception("Inbound for subject %s crashed: %s", subject_key, exc)
                return None
        return execution_id

    def _release_if_terminal(self, execution_id: str) -> None:
        try:
            terminal = self.store.get(execution_id).is_terminal
        except Exception as exc:
            _log.warning("Could not read execution %s: %s", execution_id, exc)
            return
        if terminal:
            self._release(execution_id)

    # ── Status query ──────────────────────────────────────────────────────────

    def get_execution(self, execution_id: str) -> dict[str, Any]:
        """Serialised view of an execution; raises ExecutionNotFound."""
        return self.store.get(execution_id).to_dict()

    def list_executions(
        self, status: ExecutionStatus | str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Most recently updated executions first, optionally filtered by status."""
        wanted = ExecutionStatus(status) if status is not None else None
        return [e.to_dict() for e in self.store.list(wanted, limit=limit)]

    # ── Cancellation ──────────────────────────────────────────────────────────

    def cancel(self, execution_id: str) -> bool:
        """Cancel an execution that is RUNNING or WAITING_INPUT.

        A waiting execution is cancelled at once; a running one stops before
        its next node.  Returns True if the execution ends up CANCELLED by
        this request, False if it had already terminated.

        Raises
        ------
        ExecutionNotFound
            If *execution_id* is unknown.
        """
        execution = self.store.get(execution_id)
        if execution.is_terminal:
            return False

        self._cancel_event(execution_id).set()
        _log.info("Cancel requested for execution '%s'", execution_id)

        with self._execution_locks.hold(execution_id):
            execution = self.store.get(execution_id)
            if not execution.is_terminal:
                # No stepper holds the lock, so this is a safe point.
                execution.transition(ExecutionStatus.CANCELLED, now=self.clock())
                self.store.save(execution)
                _log.info("Execution %s → CANCELLED", execution_id)
            self._release(execution_id)
            return execution.status is ExecutionStatus.CANCELLED

    # ── Wait expiry ───────────────────────────────────────────────────────────

    def expire_waits(self, now: datetime | None = None) -> list[str]:
        """Resume every waiting execution whose deadline is at or before *now*.

        Returns the ids that were resumed.
        """
        now = now or self.clock()
        resumed = []
        for execution_id in self.store.list_due(now):
            try:
                if self.correlator.resume_timeout(execution_id, now) is not None:
                    resumed.append(execution_id)
            except FlowEngineError as exc:
                _log.error("Wait expiry for %s failed: %s", execution_id, exc)
            except Exception as exc:
                _log.exception("Wait expiry for %s crashed: %s", execution_id, exc)
        if resumed:
            _log.info("Expired %d wait(s)", len(resumed))
        return resumed

    def run_background(self, interval: float | None = None) -> "SchedulerHandle":
        """Poll wait deadlines every *interval* seconds in a daemon thread."""
        interval = self.config.poll_interval if interval is None else interval
        handle = SchedulerHandle(self, interval)
        handle.start()
        return handle

    # ── Shutdown ──────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Shut down the capability worker pool.  Stop schedulers first."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        _log.debug("Runner closed")

    def __enter__(self) -> "Runner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class SchedulerHandle:
    """Handle for the background wait-expiry loop.

    Returned by :meth:`Runner.run_background`.  Do not instantiate directly.

    Attributes
    ----------
    passes :
        Number of completed polling passes.
    resumed :
        Total executions resumed by this scheduler.
    """

    def __init__(self, runner: Runner, interval: float):
        self.runner = runner
        self.interval = interval
        self.passes = 0
        self.resumed = 0
        self._stop = threading.Event()
        self._done = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, name="convoflow-scheduler", daemon=True
        )

    def start(self) -> None:
        _log.info("Scheduler starting  interval=%.1fs", self.interval)
        self._thread.start()

    def _loop(self) -> None:
        try:
            while not self._stop.is_set():
                t0 = time.time()
                try:
                    self.resumed += len(self.runner.expire_waits())
                except Exception as exc:
                    _log.exception("Scheduler pass failed: %s", exc)
                self.passes += 1
                _log.debug("Scheduler pass %d  %.3fs", self.passes, time.time() - t0)
                self._stop.wait(self.interval)
        finally:
            self._done.set()
            _log.info("Scheduler stopped after %d pass(es)", self.passes)

    # ── Status ────────────────────────────────────────────────────────────────

    @property
    def status(self) -> str:
        """``"running"``, ``"stopping"`` or ``"stopped"``."""
        if self._done.is_set():
            return "stopped"
        return "stopping" if self._stop.is_set() else "running"

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._done.is_set()

    # ── Control ───────────────────────────────────────────────────────────────

    def stop(self) -> None:
        """Ask the loop to exit after the current pass."""
        self._stop.set()

    def wait(self, timeout: float | None = None) -> None:
        """Block until the loop has exited.

        Raises
        ------
        TimeoutError
            If *timeout* elapses first.
        """
        if not self._done.wait(timeout=timeout):
            raise TimeoutError(f"Scheduler did not stop within {timeout}s")
