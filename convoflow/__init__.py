"""ConvoFlow — conversational flow engine for WhatsApp sales automation.

A flow is a directed graph of nodes drawn in a visual editor:
  every node runs as prep | exec | post  →  retries wrap only the external call
  a wait node suspends the execution  →  no thread is parked while a human types
  inbound messages and deadlines resume it  →  down the wait node's yes / no edges

Public API
----------
from convoflow import Runner, load_flow_file, SQLiteExecutionStore
"""

from convoflow.capabilities import (
    Generator,
    KnowledgeBase,
    MessageSender,
    OutboxSender,
    StaticKnowledgeBase,
)
from convoflow.config      import EngineConfig
from convoflow.db          import ExecutionStore, MemoryExecutionStore, SQLiteExecutionStore
from convoflow.errors      import (
    ExecutionAlreadyActive,
    ExecutionNotFound,
    FlowEngineError,
    FlowNotFound,
    InvalidExpression,
    InvalidGraph,
    InvalidTransition,
    NodeCapabilityFailure,
    ResumeMismatch,
    StepBudgetExceeded,
)
from convoflow.execution   import Execution, ExecutionStatus, LogEntry, LogEvent
from convoflow.graph       import FlowGraph, FlowRegistry, load_flow, load_flow_file
from convoflow.nodes       import NodeHandler, register_node_type
from convoflow.runner      import Runner, SchedulerHandle
from convoflow.store       import VariableStore

__all__ = [
    "Runner", "SchedulerHandle",
    "FlowGraph", "FlowRegistry", "load_flow", "load_flow_file",
    "Execution", "ExecutionStatus", "LogEntry", "LogEvent",
    "ExecutionStore", "MemoryExecutionStore", "SQLiteExecutionStore",
    "VariableStore", "EngineConfig",
    "MessageSender", "Generator", "KnowledgeBase", "OutboxSender", "StaticKnowledgeBase",
    "NodeHandler", "register_node_type",
    "FlowEngineError", "InvalidGraph", "InvalidExpression", "FlowNotFound",
    "ExecutionNotFound", "ExecutionAlreadyActive", "StepBudgetExceeded",
    "NodeCapabilityFailure", "ResumeMismatch", "InvalidTransition",
]
__version__ = "0.1.0"
