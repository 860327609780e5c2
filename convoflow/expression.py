"""ConvoFlow expressions — predicates evaluated by ``condition`` nodes.

Grammar
-------
Only one predicate is supported:

    contains(<variable>, '<literal>')

It is true when the variable's string form contains *literal*, ignoring case.
The literal may be quoted with single or double quotes.  ``last_message`` is
the reserved variable holding the latest inbound text.

Expressions are parsed once, when the flow is loaded, so a typo rejects the
flow instead of failing a conversation half-way through.  New predicates are
added by extending ``parse_expression``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from convoflow.errors import InvalidExpression

_CONTAINS_RE = re.compile(
    r"""^\s*contains\s*\(\s*
        (?P<var>[A-Za-z_][\w.]*)\s*,\s*
        (?P<quote>['"])(?P<literal>(?:(?!(?P=quote)).)*)(?P=quote)\s*
        \)\s*$""",
    re.VERBOSE | re.DOTALL,
)


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring test against a variable."""

    variable: str
    literal: str

    def evaluate(self, variables: Any) -> bool:
        """*variables* is anything with ``get(name)`` returning "" when unset."""
        value = variables.get(self.variable)
        text = "" if value is None else str(value)
        return self.literal.casefold() in text.casefold()

    def __str__(self) -> str:
        return f"contains({self.variable}, '{self.literal}')"


Expression = Contains


def parse_expression(source: str, node_id: str | None = None) -> Expression:
    """Parse *source* into an Expression or raise InvalidExpression."""
    if not isinstance(source, str):
        raise InvalidExpression(repr(source), node_id)
    m = _CONTAINS_RE.match(source)
    if m is None:
        raise InvalidExpression(source, node_id)
    return Contains(variable=m.group("var"), literal=m.group("literal"))
