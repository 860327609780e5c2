"""ConvoFlow VariableStore — per-execution variables with template rendering.

Design
------
VariableStore wraps a plain dict but adds:
  • get       — missing variables read as "" instead of raising
  • render    — replace every ``{{name}}`` in a template with the variable
  • observers — callbacks fired on every write  (for logging / tracing)
  • snapshot  — JSON-safe copy of the current state  (for persistence)
  • restore   — rebuild a store from a snapshot

Each execution owns exactly one store; nothing is shared between executions.
The store stays dict-like:  ``store["key"] = value``  and  ``"key" in store``
still work.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

from convoflow.logging import get_logger

_log = get_logger("store")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")

# Updated with the inbound text on every resume.
LAST_MESSAGE = "last_message"
TIMEOUT_TRIGGERED = "timeout_triggered"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class VariableStore:
    """Variable scope of a single execution.

    Parameters
    ----------
    data :
        Initial key-value pairs (the caller's ``initial_vars``).
    name :
        Human-readable label shown in log messages, usually the execution id.

    Examples
    --------
    >>> store = VariableStore({"contact_name": "Ana"})
    >>> store.render("Hello {{contact_name}}{{missing}}!")
    'Hello Ana!'
    """

    def __init__(self, data: dict[str, Any] | None = None, name: str = "vars"):
        self._data: dict[str, Any] = dict(data or {})
        self._name = name
        self._observers: list[Callable[[str, Any, Any], None]] = []

    # ── dict-like access ──────────────────────────────────────────────────────

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, VariableStore):
            return self._data == other._data
        if isinstance(other, dict):
            return self._data == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"VariableStore(name={self._name!r}, keys={list(self._data.keys())})"

    def set(self, name: str, value: Any) -> None:
        old = self._data.get(name)
        self._data[name] = value
        for obs in self._observers:
            try:
                obs(name, old, value)
            except Exception as e:
                _log.warning("VariableStore observer error: %s", e)

    def get(self, name: str, default: Any = "") -> Any:
        """Return the variable, or *default* (empty string) when unset."""
        return self._data.get(name, default)

    def update(self, mapping: dict[str, Any]) -> None:
        for k, v in mapping.items():
            self.set(k, v)

    def keys(self):
        return self._data.keys()

    def items(self):
        return self._data.items()

    # ── templates ─────────────────────────────────────────────────────────────

    def render(self, template: str | None) -> str:
        """Replace every ``{{name}}`` with the variable's string form.

        Unknown variables render as the empty string; this never raises.
        """
        if not template:
            return ""
        return _PLACEHOLDER_RE.sub(
            lambda m: _as_text(self._data.get(m.group(1))), str(template)
        )

    # ── observers (for logging / tracing) ─────────────────────────────────────

    def add_observer(self, callback: Callable[[str, Any, Any], None]) -> None:
        """Register callback(name, old_value, new_value) fired on every write."""
        self._observers.append(callback)

    def remove_observer(self, callback: Callable) -> None:
        self._observers = [o for o in self._observers if o is not callback]

    # ── persistence ───────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-safe copy of the variables."""
        safe: dict[str, Any] = {}
        for k, v in self._data.items():
            try:
                safe[k] = json.loads(json.dumps(v))
            except (TypeError, ValueError):
                safe[k] = f"<non-serialisable: {type(v).__name__}>"
                _log.debug("Snapshot of %s: '%s' is not JSON-serialisable, stored as string",
                           self._name, k)
        return safe

    @classmethod
    def restore(cls, data: dict[str, Any], name: str = "vars") -> "VariableStore":
        return cls(data=data, name=name)

    def as_dict(self) -> dict[str, Any]:
        """Return the underlying dict (no copy — modifications are reflected)."""
        return self._data
