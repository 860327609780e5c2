"""ConvoFlow node handlers — what each node type does when the cursor reaches it.

Design
------
Every handler is a three-phase unit, like an ETL step:

    prep(ctx, node)                → read what the node needs (render templates)
    exec(prep_result)              → the external effect (send, generate, ...)
    post(ctx, node, prep, result)  → write variables back, return an action

Only exec() is retried.  Handlers are stateless and shared by every execution;
all per-run state lives in the NodeContext.

Actions returned by post()
--------------------------
    DEFAULT_ACTION    follow the unlabeled edge
    "yes" / "no"      follow the labeled edge
    Jump(target)      move the cursor without traversing an edge (goTo)
    SUSPEND           park the execution in WAITING_INPUT (wait)
    END               complete the execution (end)

A missing edge for the returned action ends the execution as COMPLETED.

Adding a node type
------------------
    register_node_type("tag", TagData, TagHandler())

``TagData`` is a NodeData subclass parsed when flows are loaded, so unknown
fields are rejected before anything runs.
"""

from __future__ import annotations

import time
from abc import ABC
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

from convoflow.errors import NodeCapabilityFailure
from convoflow.graph import (
    NO,
    NODE_DATA_TYPES,
    YES,
    AIKnowledgeData,
    ConditionData,
    GoToData,
    MessageData,
    Node,
    NodeData,
    WaitData,
)
from convoflow.logging import get_logger
from convoflow.store import LAST_MESSAGE

if TYPE_CHECKING:
    from convoflow.config import EngineConfig
    from convoflow.execution import Execution
    from convoflow.graph import FlowGraph

_log = get_logger("nodes")

DEFAULT_ACTION = "default"
SUSPEND = "suspend"
END = "end"


@dataclass(frozen=True)
class Jump:
    target: str


@dataclass
class NodeContext:
    """Everything a handler may touch while running one node."""

    execution: "Execution"
    graph: "FlowGraph"
    config: "EngineConfig"
    sender: Any
    generator: Any = None
    knowledge: Any = None
    clock: Callable[[], datetime] | None = None
    sleep: Callable[[float], None] = time.sleep
    executor: Executor | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def variables(self):
        return self.execution.variables

    def now(self) -> datetime:
        return self.clock() if self.clock is not None else datetime.now(timezone.utc)


class _DeadlineReached(Exception):
    pass


class NodeHandler(ABC):
    """Base class for node behaviour.

    Attributes
    ----------
    max_attempts :
        How many times to attempt exec() before giving up.  Default 1.
    retry_delay :
        Seconds before the first retry; doubles on every further retry.
    """

    max_attempts: int = 1
    retry_delay: float = 0.0

    def prep(self, ctx: NodeContext, node: Node) -> Any:
        return None

    def exec(self, prep_result: Any) -> Any:
        return None

    def post(self, ctx: NodeContext, node: Node, prep_result: Any, exec_result: Any):
        return DEFAULT_ACTION

    def retry_policy(self, ctx: NodeContext) -> tuple[int, float, float | None]:
        """(attempts, first delay, overall timeout in seconds or None)."""
        return self.max_attempts, self.retry_delay, None

    # ── Internal runner (called by the interpreter) ───────────────────────────

    def run(self, ctx: NodeContext, node: Node):
        """Execute prep → exec (with retries) → post.  Return the action."""
        prep_result = self.prep(ctx, node)
        exec_result = self._exec_with_retry(ctx, node, prep_result)
        return self.post(ctx, node, prep_result, exec_result)

    def _exec_with_retry(self, ctx: NodeContext, node: Node, prep_result: Any) -> Any:
        attempts, delay, timeout = self.retry_policy(ctx)
        deadline = time.monotonic() + timeout if timeout is not None else None
        last_exc: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                return self._call_exec(ctx, prep_result, deadline)
            except _DeadlineReached:
                last_exc = TimeoutError(f"no result within {timeout:.1f}s")
                _log.error("Node '%s' exec timed out after %d attempt(s)", node.id, attempt)
                raise NodeCapabilityFailure(node.id, attempt, last_exc) from None
            except Exception as exc:
                last_exc = exc
                if attempt >= attempts:
                    _log.error("Node '%s' exec failed after %d attempt(s): %s",
                               node.id, attempts, exc)
                    break
                if deadline is not None and time.monotonic() + delay >= deadline:
                    _log.error("Node '%s' out of time after %d attempt(s): %s",
                               node.id, attempt, exc)
                    raise NodeCapabilityFailure(node.id, attempt, exc) from exc
                _log.warning("Node '%s' exec attempt %d/%d failed: %s; retrying in %.1fs",
                             node.id, attempt, attempts, exc, delay)
                if delay > 0:
                    ctx.sleep(delay)
                delay *= 2

        raise NodeCapabilityFailure(node.id, attempts, last_exc) from last_exc

    def _call_exec(self, ctx: NodeContext, prep_result: Any, deadline: float | None) -> Any:
        # Without an executor the deadline is only checked between attempts.
        if deadline is None or ctx.executor is None:
            return self.exec(prep_result)
        remaining = max(deadline - time.monotonic(), 0.0)
        future = ctx.executor.submit(self.exec, prep_result)
        try:
            return future.result(timeout=remaining)
        except FutureTimeout:
            if future.done():
                raise
            future.cancel()
            raise _DeadlineReached() from None


# ── Built-in handlers ─────────────────────────────────────────────────────────

class StartHandler(NodeHandler):
    pass


class EndHandler(NodeHandler):
    def post(self, ctx, node, prep_result, exec_result):
        return END


class MessageHandler(NodeHandler):
    def prep(self, ctx, node):
        data: MessageData = node.data
        text = ctx.variables.render(data.text)
        return ctx.sender, ctx.execution.subject_key, text

    def exec(self, prep_result):
        sender, subject_key, text = prep_result
        sender.send(subject_key, text)
        return text

    def post(self, ctx, node, prep_result, exec_result):
        ctx.payload["text"] = exec_result
        return DEFAULT_ACTION


class ConditionHandler(NodeHandler):
    def prep(self, ctx, node):
        data: ConditionData = node.data
        return data.expression, ctx.variables

    def exec(self, prep_result):
        expression, variables = prep_result
        return expression.evaluate(variables)

    def post(self, ctx, node, prep_result, exec_result):
        ctx.payload["expression"] = str(prep_result[0])
        ctx.payload["result"] = bool(exec_result)
        return YES if exec_result else NO


class WaitHandler(NodeHandler):
    def post(self, ctx, node, prep_result, exec_result):
        data: WaitData = node.data
        timeout = data.timeout if data.timeout is not None else ctx.config.default_wait_timeout
        execution = ctx.execution
        execution.wait_deadline = ctx.now() + timedelta(seconds=timeout)
        execution.expected_keywords = data.keywords
        ctx.payload["timeout"] = timeout
        return SUSPEND


class AIKnowledgeHandler(NodeHandler):
    def retry_policy(self, ctx):
        cfg = ctx.config
        return cfg.ai_max_attempts, cfg.ai_base_delay, cfg.ai_timeout

    def prep(self, ctx, node):
        data: AIKnowledgeData = node.data
        if ctx.generator is None:
            raise NodeCapabilityFailure(
                node.id, 0, RuntimeError("no generator capability configured")
            )
        prompt = ctx.variables.render(data.prompt)
        context = ""
        if data.use_knowledge and ctx.knowledge is not None:
            query = str(ctx.variables.get(LAST_MESSAGE))
            try:
                context = ctx.knowledge.retrieve(ctx.execution.subject_key, query) or ""
            except Exception as exc:
                # Answer without context rather than failing the conversation.
                _log.warning("Knowledge retrieval failed  node=%s  error=%s", node.id, exc)
        return ctx.generator, prompt, context

    def exec(self, prep_result):
        generator, prompt, context = prep_result
        return generator.generate(prompt, context)

    def post(self, ctx, node, prep_result, exec_result):
        data: AIKnowledgeData = node.data
        text = "" if exec_result is None else str(exec_result)
        ctx.variables[data.output_variable] = text
        ctx.payload["output_variable"] = data.output_variable
        ctx.payload["context_used"] = bool(prep_result[2])
        return DEFAULT_ACTION


class GoToHandler(NodeHandler):
    def post(self, ctx, node, prep_result, exec_result):
        data: GoToData = node.data
        return Jump(data.target_node_id)


HANDLERS: dict[str, NodeHandler] = {
    "start": StartHandler(),
    "end": EndHandler(),
    "message": MessageHandler(),
    "condition": ConditionHandler(),
    "wait": WaitHandler(),
    "aiKnowledge": AIKnowledgeHandler(),
    "goTo": GoToHandler(),
}


def get_handler(node_type: str) -> NodeHandler:
    try:
        return HANDLERS[node_type]
    except KeyError:
        raise KeyError(f"No handler registered for node type '{node_type}'") from None


def register_node_type(
    type_name: str, data_cls: type[NodeData], handler: NodeHandler
) -> None:
    """Make *type_name* loadable and runnable."""
    if type_name in HANDLERS:
        _log.warning("Overwriting handler for node type '%s'", type_name)
    NODE_DATA_TYPES[type_name] = data_cls
    HANDLERS[type_name] = handler
