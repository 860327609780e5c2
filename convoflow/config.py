"""ConvoFlow configuration.

Environment variables
---------------------
CONVOFLOW_STEP_BUDGET          Max node visits per tick (default: 1000).
CONVOFLOW_AI_MAX_ATTEMPTS      Attempts for aiKnowledge calls (default: 3).
CONVOFLOW_AI_BASE_DELAY        First backoff delay in seconds (default: 1).
CONVOFLOW_AI_TIMEOUT           Overall seconds per aiKnowledge node (default: 60).
CONVOFLOW_DEFAULT_WAIT_TIMEOUT Wait timeout when a node sets none (default: 3600).
CONVOFLOW_POLL_INTERVAL        Seconds between wait-deadline scans (default: 5).
CONVOFLOW_DB_PATH              SQLite file for the execution store.
CONVOFLOW_LOG_LEVEL            debug | info | warning | error (default: info).

Values are read after ``load_dotenv()`` so a local ``.env`` file works too.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class EngineConfig:
    step_budget: int = 1000
    ai_max_attempts: int = 3
    ai_base_delay: float = 1.0
    ai_timeout: float = 60.0
    default_wait_timeout: float = 3600.0
    poll_interval: float = 5.0
    db_path: str | None = None
    log_level: str = "info"

    def __post_init__(self):
        if self.step_budget < 1:
            raise ValueError(f"step_budget must be >= 1, got {self.step_budget}")
        if self.ai_max_attempts < 1:
            raise ValueError(f"ai_max_attempts must be >= 1, got {self.ai_max_attempts}")
        if self.ai_base_delay < 0 or self.ai_timeout <= 0:
            raise ValueError("ai_base_delay must be >= 0 and ai_timeout > 0")

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "EngineConfig":
        """Build a config from ``CONVOFLOW_*`` environment variables."""
        if load_env_file:
            load_dotenv()
        env = os.environ
        return cls(
            step_budget=int(env.get("CONVOFLOW_STEP_BUDGET", "1000")),
            ai_max_attempts=int(env.get("CONVOFLOW_AI_MAX_ATTEMPTS", "3")),
            ai_base_delay=float(env.get("CONVOFLOW_AI_BASE_DELAY", "1")),
            ai_timeout=float(env.get("CONVOFLOW_AI_TIMEOUT", "60")),
            default_wait_timeout=float(env.get("CONVOFLOW_DEFAULT_WAIT_TIMEOUT", "3600")),
            poll_interval=float(env.get("CONVOFLOW_POLL_INTERVAL", "5")),
            db_path=env.get("CONVOFLOW_DB_PATH") or None,
            log_level=env.get("CONVOFLOW_LOG_LEVEL", "info"),
        )
