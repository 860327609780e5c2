"""EngineConfig from the environment, LLM generator prompt assembly, Mermaid output."""

from types import SimpleNamespace

import pytest

from conftest import welcome_flow
from convoflow import EngineConfig, load_flow
from convoflow.llm import INJECTION_NOTICE, LLMGenerator, build_system_prompt
from convoflow.visualize import build_mermaid


# ── EngineConfig ──────────────────────────────────────────────────────────────

def test_defaults():
    cfg = EngineConfig()
    assert cfg.step_budget == 1000
    assert cfg.ai_max_attempts == 3
    assert cfg.default_wait_timeout == 3600.0
    assert cfg.db_path is None


def test_from_env(monkeypatch):
    monkeypatch.setenv("CONVOFLOW_STEP_BUDGET", "25")
    monkeypatch.setenv("CONVOFLOW_AI_BASE_DELAY", "0.5")
    monkeypatch.setenv("CONVOFLOW_DB_PATH", "/tmp/cf.db")
    monkeypatch.setenv("CONVOFLOW_LOG_LEVEL", "debug")
    cfg = EngineConfig.from_env(load_env_file=False)
    assert cfg.step_budget == 25
    assert cfg.ai_base_delay == 0.5
    assert cfg.db_path == "/tmp/cf.db"
    assert cfg.log_level == "debug"


@pytest.mark.parametrize("kwargs", [
    {"step_budget": 0},
    {"ai_max_attempts": 0},
    {"ai_base_delay": -1},
    {"ai_timeout": 0},
])
def test_invalid_config(kwargs):
    with pytest.raises(ValueError):
        EngineConfig(**kwargs)


# ── LLM generator ─────────────────────────────────────────────────────────────

def test_system_prompt_includes_context_and_notice():
    prompt = build_system_prompt("Plano Pro custa R$ 99", base="Você vende planos.")
    assert prompt.startswith("Você vende planos.")
    assert "Knowledge base (context):\nPlano Pro custa R$ 99" in prompt
    assert prompt.endswith(INJECTION_NOTICE)
    assert "Knowledge base" not in build_system_prompt("")


def test_unknown_provider_rejected():
    with pytest.raises(ValueError, match="Unknown LLM provider"):
        LLMGenerator(provider="carrier-pigeon")


def test_openai_request_shape(monkeypatch):
    monkeypatch.delenv("LLM_MODEL", raising=False)
    monkeypatch.delenv("LLM_MODEL_OPENAI", raising=False)
    sent = {}

    def create(**kwargs):
        sent.update(kwargs)
        message = SimpleNamespace(content="Custa R$ 99.")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    gen = LLMGenerator(provider="openai", max_input_chars=10)
    gen._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    assert gen.generate("quanto custa o plano?", "Plano Pro custa R$ 99") == "Custa R$ 99."
    assert sent["model"] == "gpt-4o"
    system, user = sent["messages"]
    assert system["role"] == "system" and "Plano Pro custa R$ 99" in system["content"]
    assert user == {"role": "user", "content": "quanto cus"}


def test_anthropic_request_shape(monkeypatch):
    monkeypatch.setenv("LLM_MODEL_ANTHROPIC", "claude-test")
    sent = {}

    def create(**kwargs):
        sent.update(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(text="Olá!")])

    gen = LLMGenerator(provider="anthropic")
    gen._client = SimpleNamespace(messages=SimpleNamespace(create=create))

    assert gen.generate("oi", "") == "Olá!"
    assert sent["model"] == "claude-test"
    assert sent["system"].endswith(INJECTION_NOTICE)
    assert sent["messages"] == [{"role": "user", "content": "oi"}]


# ── Mermaid ───────────────────────────────────────────────────────────────────

def test_mermaid_marks_goto_and_on_error():
    flow = {
        "id": "m",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "ask-ai", "type": "aiKnowledge", "data": {"prompt": "x", "onError": "start"}},
            {"id": "back", "type": "goTo", "data": {"targetNodeId": "start"}},
        ],
        "edges": [{"source": "start", "target": "ask-ai"}, {"source": "ask-ai", "target": "back"}],
    }
    out = build_mermaid(load_flow(flow), details=False)
    assert 'n_ask_ai["ask-ai: aiKnowledge"]' in out
    assert "n_back -.->|goTo| n_start" in out
    assert "n_ask_ai -.->|error| n_start" in out


def test_mermaid_details_and_colors():
    out = build_mermaid(load_flow(welcome_flow()))
    assert 'n_3["3: wait\\nkeywords: yes, sim"]' in out
    assert "style n_1 fill:#c8e6c9" in out
