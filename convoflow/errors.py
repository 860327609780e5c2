"""ConvoFlow error taxonomy.

Load-time errors (``InvalidGraph``, ``InvalidExpression``) reject a flow before
any execution can reference it.  Caller errors (``FlowNotFound``,
``ExecutionNotFound``, ``ExecutionAlreadyActive``) surface synchronously.
Runtime errors (``StepBudgetExceeded``, ``NodeCapabilityFailure``) are
recorded in the execution log and move the execution to FAILED; they never
escape the Runner.
"""

from __future__ import annotations


class FlowEngineError(Exception):
    """Base class for every error raised by convoflow."""


# ── Load time ─────────────────────────────────────────────────────────────────

class InvalidGraph(FlowEngineError):
    """The flow definition is structurally invalid."""


class InvalidExpression(FlowEngineError):
    """A condition expression does not match the supported grammar."""

    def __init__(self, expression: str, node_id: str | None = None):
        self.expression = expression
        self.node_id = node_id
        where = f" in node '{node_id}'" if node_id else ""
        super().__init__(f"Unrecognised expression{where}: {expression!r}")


# ── Caller errors ─────────────────────────────────────────────────────────────

class FlowNotFound(FlowEngineError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' is not registered")


class ExecutionNotFound(FlowEngineError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' does not exist")


class ExecutionAlreadyActive(FlowEngineError):
    """A subject already has an execution waiting for input."""

    def __init__(self, subject_key: str, execution_id: str):
        self.subject_key = subject_key
        self.execution_id = execution_id
        super().__init__(
            f"Subject '{subject_key}' already has execution '{execution_id}' "
            "waiting for input; cancel it or let it finish first"
        )


# ── Runtime ───────────────────────────────────────────────────────────────────

class StepBudgetExceeded(FlowEngineError):
    def __init__(self, budget: int, node_id: str):
        self.budget = budget
        self.node_id = node_id
        super().__init__(
            f"Step budget of {budget} node visits exceeded at node '{node_id}'"
        )


class NodeCapabilityFailure(FlowEngineError):
    """An external capability kept failing after all retry attempts."""

    def __init__(self, node_id: str, attempts: int, cause: BaseException | None):
        self.node_id = node_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Node '{node_id}' capability failed after {attempts} attempt(s): {cause}"
        )


class ResumeMismatch(FlowEngineError):
    """An inbound event arrived for a subject with no waiting execution."""

    def __init__(self, subject_key: str):
        self.subject_key = subject_key
        super().__init__(f"No execution waiting for input from '{subject_key}'")


class InvalidTransition(FlowEngineError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal status transition {current} → {requested}")
