"""Subject normalisation, keyword matching, keyed locks and the in-process capabilities."""

import threading
import time

import pytest

from convoflow import OutboxSender, StaticKnowledgeBase
from convoflow.correlator import match_keywords, normalize_subject
from convoflow.locks import KeyedLocks


# ── Subjects ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw, expected", [
    ("5511999999999", "5511999999999"),
    ("+55 (11) 99999-9999", "5511999999999"),
    (" 55.11.99999.9999 ", "5511999999999"),
    ("lead-42@crm", "lead-42@crm"),
    ("  ana@example.com ", "ana@example.com"),
    ("---", "---"),
])
def test_normalize_subject(raw, expected):
    assert normalize_subject(raw) == expected


# ── Keywords ──────────────────────────────────────────────────────────────────

def test_match_keywords_case_insensitive_substring():
    assert match_keywords(("yes", "sim"), "Sim, eu quero!") == "sim"
    assert match_keywords(("yes", "sim"), "YES!!") == "yes"
    assert match_keywords(("yes", "sim"), "não") is None
    assert match_keywords(("quero",), "") is None
    assert match_keywords((), "qualquer") is None


# ── Capabilities ──────────────────────────────────────────────────────────────

def test_outbox_sender_collects_and_echoes():
    echoed = []
    outbox = OutboxSender(echo=echoed.append)
    outbox.send("1", "oi")
    outbox.send("2", "olá")
    assert outbox.texts() == ["oi", "olá"]
    assert outbox.texts("2") == ["olá"]
    assert echoed == ["oi", "olá"]
    assert outbox.messages[0].subject_key == "1"


def test_static_knowledge_base_ranks_by_overlap():
    kb = StaticKnowledgeBase([
        "Entrega em todo o Brasil em até 5 dias.",
        "O plano Pro custa R$ 99 por mês.",
        "O plano Basic custa R$ 49 por mês e o plano Pro inclui suporte.",
    ], top_k=2)
    context = kb.retrieve("5511", "Quanto custa o plano Pro?")
    parts = context.split("\n\n")
    assert len(parts) == 2
    assert all("custa" in p for p in parts)
    assert kb.retrieve("5511", "") == ""
    assert kb.retrieve("5511", "xyz") == ""


# ── Keyed locks ───────────────────────────────────────────────────────────────

def test_keyed_locks_forget_released_keys():
    locks = KeyedLocks("test")
    with locks.hold("a"):
        with locks.hold("a"):
            assert len(locks) == 1
        with locks.hold("b"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0


def test_keyed_locks_waiter_gets_the_same_lock():
    locks = KeyedLocks("test")
    order = []

    def second():
        with locks.hold("k"):
            order.append("second")

    with locks.hold("k"):
        worker = threading.Thread(target=second)
        worker.start()
        deadline = time.time() + 5
        while locks._slots["k"].users < 2:
            assert time.time() < deadline, "waiter never queued"
            time.sleep(0.005)
        order.append("first")
    worker.join(5)

    assert order == ["first", "second"]
    assert len(locks) == 0
