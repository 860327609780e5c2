"""ConvoFlow capabilities — the external collaborators the engine calls.

The engine never delivers messages or talks to a model itself.  It is handed
objects implementing these interfaces when the Runner is built:

    MessageSender.send(subject_key, text)          message nodes
    Generator.generate(prompt, context) → text     aiKnowledge nodes
    KnowledgeBase.retrieve(subject_key, query)     context for aiKnowledge

Any object with the right method works; subclassing the ABCs is optional.
``OutboxSender`` and ``StaticKnowledgeBase`` are small in-process
implementations used by the CLI simulator and the tests.
"""

from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

from convoflow.logging import get_logger

_log = get_logger("capabilities")


class MessageSender(ABC):
    @abstractmethod
    def send(self, subject_key: str, text: str) -> None:
        """Hand *text* to the delivery channel.  Delivery retries are not ours."""


class Generator(ABC):
    @abstractmethod
    def generate(self, prompt: str, context: str) -> str:
        """Return generated text for *prompt*, grounded on *context*."""


class KnowledgeBase(ABC):
    @abstractmethod
    def retrieve(self, subject_key: str, query: str) -> str:
        """Return context relevant to *query*, or "" if nothing matches."""


# ── In-process implementations ────────────────────────────────────────────────

@dataclass(frozen=True)
class OutboundMessage:
    subject_key: str
    text: str


class OutboxSender(MessageSender):
    """Collects outbound messages in memory instead of delivering them.

    An optional *echo* callable is invoked for each message, e.g.
    ``click.echo`` in the chat simulator.
    """

    def __init__(self, echo=None):
        self._messages: list[OutboundMessage] = []
        self._lock = threading.Lock()
        self._echo = echo

    def send(self, subject_key: str, text: str) -> None:
        with self._lock:
            self._messages.append(OutboundMessage(subject_key, text))
        _log.debug("Outbound queued  subject=%s  chars=%d", subject_key, len(text))
        if self._echo is not None:
            self._echo(text)

    @property
    def messages(self) -> list[OutboundMessage]:
        with self._lock:
            return list(self._messages)

    def texts(self, subject_key: str | None = None) -> list[str]:
        return [m.text for m in self.messages
                if subject_key is None or m.subject_key == subject_key]


_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _words(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(text.casefold()) if len(w) > 2}


class StaticKnowledgeBase(KnowledgeBase):
    """Keyword-overlap retrieval over a fixed list of documents.

    Documents sharing the most words with the query come first; at most
    *top_k* are joined into the returned context.
    """

    def __init__(self, documents: list[str], top_k: int = 3):
        self.documents = list(documents)
        self.top_k = top_k

    def retrieve(self, subject_key: str, query: str) -> str:
        wanted = _words(query or "")
        if not wanted:
            return ""
        scored = [
            (len(wanted & _words(doc)), i, doc)
            for i, doc in enumerate(self.documents)
        ]
        best = sorted((s for s in scored if s[0] > 0), key=lambda s: (-s[0], s[1]))
        return "\n\n".join(doc for _, _, doc in best[: self.top_k])
