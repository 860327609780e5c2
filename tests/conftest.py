"""Shared fixtures: a controllable clock, fake capabilities, sample flows."""

from datetime import datetime, timedelta, timezone

import pytest

from convoflow import EngineConfig, MemoryExecutionStore, OutboxSender, Runner
from convoflow.logging import disable_logging

disable_logging()

SUBJECT = "5511999999999"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeGenerator:
    """Fails *failures* times, then answers with *reply*."""

    def __init__(self, reply="Resposta da IA", failures=0, exc=ConnectionError):
        self.reply = reply
        self.failures = failures
        self.exc = exc
        self.calls = []

    def generate(self, prompt, context):
        self.calls.append((prompt, context))
        if len(self.calls) <= self.failures:
            raise self.exc(f"provider down (call {len(self.calls)})")
        return self.reply


class FakeKnowledge:
    def __init__(self, context="Plano Pro custa R$ 99"):
        self.context = context
        self.queries = []

    def retrieve(self, subject_key, query):
        self.queries.append((subject_key, query))
        return self.context


def welcome_flow(flow_id="welcome", **wait_data):
    """start → greet → wait(yes/sim) → yes: 4 / no: 5."""
    data = {"timeout": 60, "keywords": ["yes", "sim"]}
    data.update(wait_data)
    return {
        "id": flow_id,
        "name": "Welcome",
        "nodes": [
            {"id": "1", "type": "start"},
            {"id": "2", "type": "message", "data": {"text": "Hello {{contact_name}}"}},
            {"id": "3", "type": "wait", "data": data},
            {"id": "4", "type": "message", "data": {"text": "You said YES!"}},
            {"id": "5", "type": "message", "data": {"text": "You said NO..."}},
        ],
        "edges": [
            {"source": "1", "target": "2"},
            {"source": "2", "target": "3"},
            {"source": "3", "target": "4", "label": "yes"},
            {"source": "3", "target": "5", "label": "no"},
        ],
    }


def loop_flow():
    """start → ping → goTo ping, forever."""
    return {
        "id": "loop",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "ping", "type": "message", "data": {"text": "ping"}},
            {"id": "again", "type": "goTo", "data": {"targetNodeId": "ping"}},
        ],
        "edges": [
            {"source": "start", "target": "ping"},
            {"source": "ping", "target": "again"},
        ],
    }


def ai_flow(**ai_data):
    data = {"prompt": "Responda: {{last_message}}", "outputVariable": "answer"}
    data.update(ai_data)
    return {
        "id": "ai",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "ask", "type": "aiKnowledge", "data": data},
            {"id": "reply", "type": "message", "data": {"text": "{{answer}}"}},
            {"id": "sorry", "type": "message", "data": {"text": "Um atendente vai responder."}},
        ],
        "edges": [
            {"source": "start", "target": "ask"},
            {"source": "ask", "target": "reply"},
        ],
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return OutboxSender()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def config():
    return EngineConfig(step_budget=50, ai_base_delay=1.0, ai_timeout=30.0)


@pytest.fixture
def make_runner(clock, sender, sleeps, config):
    runners = []

    def _make(store=None, flows=None, **kwargs):
        kwargs.setdefault("config", config)
        runner = Runner(
            store if store is not None else MemoryExecutionStore(),
            sender,
            flows=flows if flows is not None else [welcome_flow()],
            clock=clock,
            sleep=sleeps.append,
            **kwargs,
        )
        runners.append(runner)
        return runner

    yield _make
    for runner in runners:
        runner.close()
