"""Runner end to end: welcome scenarios, timeouts, cancel, concurrency."""

import threading
import time

import pytest

from conftest import SUBJECT, FakeGenerator, ai_flow, loop_flow, welcome_flow
from convoflow import (
    EngineConfig,
    ExecutionAlreadyActive,
    ExecutionNotFound,
    ExecutionStatus,
    FlowNotFound,
    MemoryExecutionStore,
    SQLiteExecutionStore,
)
from convoflow.execution import ALLOWED_TRANSITIONS


def _node_starts(view):
    return [e["node_id"] for e in view["log"] if e["event"] == "node_start"]


def _events(view, event):
    return [e for e in view["log"] if e["event"] == event]


# ── Welcome scenarios ─────────────────────────────────────────────────────────

def test_start_reaches_wait(make_runner, sender):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT, {"contact_name": "Tester"})
    view = runner.get_execution(execution_id)
    assert view["status"] == "WAITING_INPUT"
    assert view["current_node_id"] == "3"
    assert view["variables"]["contact_name"] == "Tester"
    assert sender.texts(SUBJECT) == ["Hello Tester"]


def test_keyword_reply_takes_yes_edge(make_runner, sender):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT, {"contact_name": "Tester"})
    assert runner.on_inbound_message(SUBJECT, "Sim, eu quero!") == execution_id

    view = runner.get_execution(execution_id)
    assert view["status"] == "COMPLETED"
    assert "4" in _node_starts(view)
    assert not [e for e in view["log"] if e["node_id"] == "5"]
    assert view["variables"]["last_message"] == "Sim, eu quero!"
    assert sender.texts() == ["Hello Tester", "You said YES!"]


def test_unmatched_reply_takes_no_edge(make_runner, sender):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT, {"contact_name": "Tester"})
    assert runner.on_inbound_message(SUBJECT, "não") == execution_id

    view = runner.get_execution(execution_id)
    assert view["status"] == "COMPLETED"
    assert "5" in _node_starts(view)
    assert "4" not in _node_starts(view)
    assert view["variables"]["last_message"] == "não"
    resumed = _events(view, "resumed")[0]["payload"]
    assert resumed == {"reason": "mismatch", "edge": "no", "message": "não"}
    assert sender.texts() == ["Hello Tester", "You said NO..."]


def test_hold_on_mismatch_waits_then_times_out_down_no(make_runner, sender, clock):
    runner = make_runner(flows=[welcome_flow(holdOnMismatch=True)])
    execution_id = runner.start_execution("welcome", SUBJECT, {"contact_name": "Tester"})

    assert runner.on_inbound_message(SUBJECT, "não") is None
    view = runner.get_execution(execution_id)
    assert view["status"] == "WAITING_INPUT"
    assert view["variables"]["last_message"] == "não"

    assert runner.expire_waits() == []
    clock.advance(61)
    assert runner.expire_waits() == [execution_id]

    view = runner.get_execution(execution_id)
    assert view["status"] == "COMPLETED"
    assert "5" in _node_starts(view)
    assert "4" not in _node_starts(view)
    assert view["variables"]["timeout_triggered"] is True
    assert _events(view, "resumed")[0]["payload"]["reason"] == "timeout"
    assert sender.texts()[-1] == "You said NO..."


def test_second_start_for_waiting_subject_rejected(make_runner):
    runner = make_runner()
    first = runner.start_execution("welcome", SUBJECT)
    with pytest.raises(ExecutionAlreadyActive) as info:
        runner.start_execution("welcome", SUBJECT)
    assert info.value.execution_id == first
    assert runner.get_execution(first)["status"] == "WAITING_INPUT"


def test_new_start_allowed_after_completion(make_runner):
    runner = make_runner()
    first = runner.start_execution("welcome", SUBJECT)
    runner.on_inbound_message(SUBJECT, "yes")
    second = runner.start_execution("welcome", SUBJECT)
    assert second != first
    assert runner.get_execution(second)["status"] == "WAITING_INPUT"


def test_wait_without_keywords_accepts_any_reply(make_runner):
    runner = make_runner(flows=[welcome_flow(keywords=[])])
    execution_id = runner.start_execution("welcome", SUBJECT)
    runner.on_inbound_message(SUBJECT, "qualquer coisa")
    view = runner.get_execution(execution_id)
    assert view["status"] == "COMPLETED"
    assert _events(view, "resumed")[0]["payload"]["reason"] == "reply"


# ── Correlation edge cases ────────────────────────────────────────────────────

def test_same_message_twice_is_noop(make_runner, sender):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT)
    assert runner.on_inbound_message(SUBJECT, "sim") == execution_id
    before = runner.get_execution(execution_id)

    assert runner.on_inbound_message(SUBJECT, "sim") is None
    after = runner.get_execution(execution_id)
    assert after == before
    assert sender.texts().count("You said YES!") == 1


def test_inbound_without_execution_is_dropped(make_runner):
    runner = make_runner()
    assert runner.on_inbound_message("5500000000000", "oi") is None


def test_subject_key_is_normalised(make_runner):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", "+55 (11) 99999-9999")
    assert runner.get_execution(execution_id)["subject_key"] == SUBJECT
    assert runner.on_inbound_message(SUBJECT, "yes") == execution_id


def test_concurrent_duplicate_inbound_advances_once(make_runner, sender):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT)
    results = []
    threads = [
        threading.Thread(target=lambda: results.append(runner.on_inbound_message(SUBJECT, "sim")))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(execution_id) == 1
    assert results.count(None) == 7
    view = runner.get_execution(execution_id)
    assert len(_events(view, "resumed")) == 1
    assert sender.texts().count("You said YES!") == 1


# ── Errors and limits ─────────────────────────────────────────────────────────

def test_unknown_flow(make_runner):
    with pytest.raises(FlowNotFound):
        make_runner().start_execution("nope", SUBJECT)


def test_unknown_execution(make_runner):
    runner = make_runner()
    with pytest.raises(ExecutionNotFound):
        runner.get_execution("missing")
    with pytest.raises(ExecutionNotFound):
        runner.cancel("missing")


def test_goto_loop_fails_without_raising(make_runner):
    runner = make_runner(flows=[loop_flow()])
    execution_id = runner.start_execution("loop", SUBJECT)
    view = runner.get_execution(execution_id)
    assert view["status"] == "FAILED"
    assert view["log"][-1]["payload"]["error"] == "StepBudgetExceeded"


def test_ai_failure_recorded_in_log(make_runner, sleeps):
    runner = make_runner(flows=[ai_flow()], generator=FakeGenerator(failures=99))
    execution_id = runner.start_execution("ai", SUBJECT, {"last_message": "oi"})
    view = runner.get_execution(execution_id)
    assert view["status"] == "FAILED"
    error = _events(view, "node_error")[0]
    assert error["node_id"] == "ask"
    assert error["payload"]["attempts"] == 3
    assert sleeps == [1.0, 2.0]


def test_sender_failure_fails_execution_only(make_runner):
    class FlakySender:
        def send(self, subject_key, text):
            raise ConnectionError("gateway down")

    runner = make_runner()
    runner.interpreter.sender = FlakySender()
    execution_id = runner.start_execution("welcome", SUBJECT)
    view = runner.get_execution(execution_id)
    assert view["status"] == "FAILED"
    assert "gateway down" in view["error"]
    assert runner.on_inbound_message(SUBJECT, "sim") is None


class FailsOnCompleteStore(MemoryExecutionStore):
    """Refuses to persist the COMPLETED state once."""

    def __init__(self):
        super().__init__()
        self.refused = 0

    def save(self, execution):
        if execution.status is ExecutionStatus.COMPLETED and not self.refused:
            self.refused += 1
            raise OSError("disk full")
        super().save(execution)


def test_store_error_during_reply_fails_execution(make_runner, sender):
    store = FailsOnCompleteStore()
    runner = make_runner(store=store)
    execution_id = runner.start_execution("welcome", SUBJECT)

    assert runner.on_inbound_message(SUBJECT, "sim") == execution_id
    view = runner.get_execution(execution_id)
    assert store.refused == 1
    assert view["status"] == "FAILED"
    assert view["current_node_id"] is None
    assert "OSError: disk full" in view["error"]
    assert _events(view, "node_error")[-1]["payload"]["error"] == "OSError"
    assert sender.texts()[-1] == "You said YES!"

    # The subject is free again.
    assert runner.start_execution("welcome", SUBJECT) != execution_id


def test_store_error_during_timeout_fails_execution(make_runner, clock):
    store = FailsOnCompleteStore()
    runner = make_runner(store=store)
    execution_id = runner.start_execution("welcome", SUBJECT)

    clock.advance(61)
    assert runner.expire_waits() == [execution_id]
    view = runner.get_execution(execution_id)
    assert view["status"] == "FAILED"
    assert "disk full" in view["error"]
    assert runner.expire_waits() == []


# ── Cancellation ──────────────────────────────────────────────────────────────

def test_cancel_waiting_execution(make_runner, clock):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT)
    assert runner.cancel(execution_id) is True

    view = runner.get_execution(execution_id)
    assert view["status"] == "CANCELLED"
    assert view["wait_deadline"] is None
    clock.advance(3600)
    assert runner.expire_waits() == []
    assert runner.on_inbound_message(SUBJECT, "sim") is None
    assert runner.get_execution(execution_id)["status"] == "CANCELLED"


def test_cancel_terminal_execution_is_refused(make_runner):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT)
    runner.on_inbound_message(SUBJECT, "sim")
    assert runner.cancel(execution_id) is False
    assert runner.get_execution(execution_id)["status"] == "COMPLETED"


def test_cancel_running_execution_stops_between_nodes(make_runner, sender):
    runner = make_runner()
    entered, release = threading.Event(), threading.Event()

    class BlockingSender:
        def send(self, subject_key, text):
            entered.set()
            release.wait(5)
            sender.send(subject_key, text)

    runner.interpreter.sender = BlockingSender()
    ids = []
    worker = threading.Thread(target=lambda: ids.append(runner.start_execution("welcome", SUBJECT)))
    worker.start()
    assert entered.wait(5)

    execution_id = runner.list_executions()[0]["id"]
    cancelled = []
    canceller = threading.Thread(target=lambda: cancelled.append(runner.cancel(execution_id)))
    canceller.start()
    deadline = time.time() + 5
    while not runner._cancel_event(execution_id).is_set():
        assert time.time() < deadline, "cancel flag never raised"
        time.sleep(0.005)
    release.set()
    worker.join(5)
    canceller.join(5)

    assert cancelled == [True]
    view = runner.get_execution(execution_id)
    assert view["status"] == "CANCELLED"
    assert _node_starts(view) == ["1", "2"]
    assert "3" not in [e["node_id"] for e in view["log"]]


# ── Status transitions ────────────────────────────────────────────────────────

def test_only_allowed_transitions_observed(make_runner, clock):
    runner = make_runner()
    seen = []
    runner.on("status", lambda ex, old, new: seen.append((old, new)))

    runner.start_execution("welcome", SUBJECT)
    runner.on_inbound_message(SUBJECT, "talvez")
    clock.advance(120)
    runner.expire_waits()
    other = runner.start_execution("welcome", "5511888888888")
    runner.cancel(other)

    assert seen
    for old, new in seen:
        assert new in ALLOWED_TRANSITIONS[old]
    statuses = {e["status"] for e in runner.list_executions()}
    assert statuses == {"COMPLETED", "CANCELLED"}


def test_list_executions_filters_by_status(make_runner):
    runner = make_runner()
    waiting = runner.start_execution("welcome", "5511000000001")
    done = runner.start_execution("welcome", "5511000000002")
    runner.on_inbound_message("5511000000002", "sim")

    assert [e["id"] for e in runner.list_executions("WAITING_INPUT")] == [waiting]
    assert [e["id"] for e in runner.list_executions(ExecutionStatus.COMPLETED)] == [done]


# ── Flow versions ─────────────────────────────────────────────────────────────

def test_running_execution_keeps_its_flow_version(make_runner, sender):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT)

    changed = welcome_flow()
    changed["nodes"][3]["data"]["text"] = "Versão nova!"
    assert runner.register_flow(changed) == 2

    runner.on_inbound_message(SUBJECT, "sim")
    view = runner.get_execution(execution_id)
    assert view["flow_version"] == 1
    assert sender.texts()[-1] == "You said YES!"


# ── Concurrency and persistence ───────────────────────────────────────────────

def test_parallel_subjects_on_sqlite(make_runner, tmp_path):
    runner = make_runner(store=SQLiteExecutionStore(tmp_path / "cf.db"))
    subjects = [f"55119000000{i:02d}" for i in range(12)]
    ids = {}
    errors = []

    def converse(subject):
        try:
            ids[subject] = runner.start_execution("welcome", subject, {"contact_name": subject})
            runner.on_inbound_message(subject, "yes please")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=converse, args=(s,)) for s in subjects]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert errors == []
    for subject, execution_id in ids.items():
        view = runner.get_execution(execution_id)
        assert view["status"] == "COMPLETED"
        assert view["subject_key"] == subject
        assert _node_starts(view) == ["1", "2", "3", "4"]


def test_waiting_execution_survives_restart(make_runner, tmp_path, sender):
    db = tmp_path / "cf.db"
    first = make_runner(store=SQLiteExecutionStore(db))
    execution_id = first.start_execution("welcome", SUBJECT)

    second = make_runner(store=SQLiteExecutionStore(db))
    assert second.on_inbound_message(SUBJECT, "SIM") == execution_id
    assert second.get_execution(execution_id)["status"] == "COMPLETED"


def test_lock_registries_drain_after_conversations(make_runner):
    runner = make_runner()
    for i in range(50):
        subject = f"5511{i:09d}"
        runner.start_execution("welcome", subject)
        runner.on_inbound_message(subject, "sim")

    assert len(runner._subject_locks) == 0
    assert len(runner._execution_locks) == 0
    assert runner._cancel_events == {}
    assert {e["status"] for e in runner.list_executions(limit=100)} == {"COMPLETED"}


# ── Capability pool ───────────────────────────────────────────────────────────

def test_ai_timeout_uses_runner_pool(make_runner):
    release = threading.Event()

    class SlowGenerator:
        def generate(self, prompt, context):
            release.wait(5)
            return "late"

    runner = make_runner(
        flows=[ai_flow()], generator=SlowGenerator(),
        config=EngineConfig(step_budget=50, ai_base_delay=0, ai_timeout=0.1),
    )
    try:
        execution_id = runner.start_execution("ai", SUBJECT)
    finally:
        release.set()
    view = runner.get_execution(execution_id)
    assert view["status"] == "FAILED"
    assert "no result within" in _events(view, "node_error")[0]["payload"]["message"]


def test_close_shuts_down_pool(make_runner):
    with make_runner() as runner:
        runner.start_execution("welcome", SUBJECT)
    with pytest.raises(RuntimeError):
        runner.interpreter.executor.submit(print)


# ── Background scheduler ──────────────────────────────────────────────────────

def test_background_scheduler_expires_waits(make_runner, clock):
    runner = make_runner()
    execution_id = runner.start_execution("welcome", SUBJECT)
    clock.advance(61)

    handle = runner.run_background(interval=0.01)
    try:
        deadline = time.time() + 5
        while runner.get_execution(execution_id)["status"] != "COMPLETED":
            assert time.time() < deadline, "scheduler never expired the wait"
            time.sleep(0.01)
        assert handle.status == "running"
        assert handle.is_running
    finally:
        handle.stop()
        handle.wait(timeout=5)

    assert handle.status == "stopped"
    assert not handle.is_running
    assert handle.resumed == 1
    assert handle.passes >= 1


def test_scheduler_wait_times_out_while_running(make_runner):
    handle = make_runner().run_background(interval=0.01)
    try:
        with pytest.raises(TimeoutError):
            handle.wait(timeout=0.05)
    finally:
        handle.stop()
        handle.wait(timeout=5)
