"""ConvoFlow graph model — immutable flows made of typed nodes and labeled edges.

Design
------
A flow is the static definition a tenant authors in the editor:

    nodes  — ``{"id", "type", "data"}``; ``data`` is parsed into a typed
             variant per node type (MessageData, WaitData, ...)
    edges  — ``{"id", "source", "target", "label"}`` with label "yes", "no"
             or none

Edges are indexed per source node so ``successor(node_id, label)`` costs
O(outdegree).  Validation runs once, in the constructor; an invalid flow never
becomes runnable:

    • node ids are unique and node types are known
    • exactly one ``start`` node
    • every edge endpoint, ``goTo`` target and ``onError`` target exists
    • at most one edge per (source, label), so one unlabeled edge at most
    • condition expressions parse

A missing ``yes``/``no`` edge is *not* a validation error: at run time it is a
dead end and the execution completes there.

Registering a new version of a flow id never touches executions already
running an older version (see FlowRegistry).
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

import yaml

from convoflow.errors import FlowNotFound, InvalidGraph
from convoflow.expression import Expression, parse_expression
from convoflow.logging import get_logger

_log = get_logger("graph")

YES = "yes"
NO = "no"
_VALID_LABELS = {None, YES, NO}

# Branch handles written by the condition/wait widgets of the editor.
_LABEL_ALIASES = {"true": YES, "false": NO}

# Node type names used by older editor versions.
_TYPE_ALIASES = {
    "startNode": "start",
    "messageNode": "message",
    "waitNode": "wait",
    "wait_response": "wait",
    "aiNode": "aiKnowledge",
    "aiKbNode": "aiKnowledge",
    "gptNode": "aiKnowledge",
    "goToNode": "goTo",
    "gotoNode": "goTo",
    "endNode": "end",
}


def _word(value: Any) -> str:
    # YAML 1.1 reads bare yes/no as booleans.
    if value is True:
        return YES
    if value is False:
        return NO
    return str(value)


def _pick(raw: dict, *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return default


# ── Node data variants ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NodeData:
    """Fields shared by every node type.

    Subclasses declare ``type_name`` and override ``_parse`` to read their own
    fields from the raw editor payload.
    """

    type_name: ClassVar[str] = ""

    on_error: str | None = None

    @classmethod
    def from_raw(cls, raw: dict | None, node_id: str) -> "NodeData":
        raw = dict(raw or {})
        kwargs = cls._parse(raw, node_id)
        kwargs["on_error"] = _pick(raw, "onError", "on_error")
        return cls(**kwargs)

    @classmethod
    def _parse(cls, raw: dict, node_id: str) -> dict[str, Any]:
        return {}

    def to_raw(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "on_error":
                out["onError"] = value
            elif isinstance(value, tuple):
                out[f.name] = list(value)
            else:
                out[f.name] = str(value) if f.name == "expression" else value
        return out


@dataclass(frozen=True)
class StartData(NodeData):
    type_name: ClassVar[str] = "start"


@dataclass(frozen=True)
class EndData(NodeData):
    type_name: ClassVar[str] = "end"


@dataclass(frozen=True)
class MessageData(NodeData):
    type_name: ClassVar[str] = "message"

    text: str = ""

    @classmethod
    def _parse(cls, raw, node_id):
        return {"text": str(_pick(raw, "text", "message", default=""))}


@dataclass(frozen=True)
class ConditionData(NodeData):
    type_name: ClassVar[str] = "condition"

    expression: Expression | None = None

    @classmethod
    def _parse(cls, raw, node_id):
        source = _pick(raw, "expression", "condition")
        if source is None:
            raise InvalidGraph(f"Condition node '{node_id}' has no expression")
        return {"expression": parse_expression(source, node_id)}


@dataclass(frozen=True)
class WaitData(NodeData):
    type_name: ClassVar[str] = "wait"

    timeout: float | None = None
    keywords: tuple[str, ...] = ()
    hold_on_mismatch: bool = False

    @classmethod
    def _parse(cls, raw, node_id):
        timeout = _pick(raw, "timeout", "timeoutSeconds", "timeout_seconds")
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                raise InvalidGraph(
                    f"Wait node '{node_id}' has a non-numeric timeout: {timeout!r}"
                ) from None
            if timeout < 0:
                raise InvalidGraph(f"Wait node '{node_id}' has a negative timeout")

        keywords = _pick(raw, "keywords", "expectedKeywords", "expected_keywords", default=())
        if isinstance(keywords, str):
            keywords = keywords.split(",")
        cleaned = tuple(
            dict.fromkeys(_word(k).strip().lower() for k in keywords if _word(k).strip())
        )
        return {
            "timeout": timeout,
            "keywords": cleaned,
            "hold_on_mismatch": bool(
                _pick(raw, "holdOnMismatch", "hold_on_mismatch", default=False)
            ),
        }


@dataclass(frozen=True)
class AIKnowledgeData(NodeData):
    type_name: ClassVar[str] = "aiKnowledge"

    prompt: str = ""
    output_variable: str = "ai_response"
    use_knowledge: bool = True

    @classmethod
    def _parse(cls, raw, node_id):
        return {
            "prompt": str(_pick(raw, "prompt", "systemPrompt", default="")),
            "output_variable": str(
                _pick(raw, "outputVariable", "output_variable", default="ai_response")
            ),
            "use_knowledge": bool(_pick(raw, "useKnowledge", "use_knowledge", default=True)),
        }


@dataclass(frozen=True)
class GoToData(NodeData):
    type_name: ClassVar[str] = "goTo"

    target_node_id: str = ""

    @classmethod
    def _parse(cls, raw, node_id):
        target = _pick(raw, "targetNodeId", "targetId", "target_node_id")
        if not target:
            raise InvalidGraph(f"goTo node '{node_id}' has no targetNodeId")
        return {"target_node_id": str(target)}


NODE_DATA_TYPES: dict[str, type[NodeData]] = {
    cls.type_name: cls
    for cls in (StartData, EndData, MessageData, ConditionData, WaitData,
                AIKnowledgeData, GoToData)
}


# ── Nodes and edges ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Node:
    id: str
    type: str
    data: NodeData = field(default_factory=NodeData)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "data": self.data.to_raw()}


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = {"id": self.id, "source": self.source, "target": self.target}
        if self.label is not None:
            out["label"] = self.label
        return out


class FlowGraph:
    """A validated, read-only flow definition.

    Parameters
    ----------
    flow_id :
        Identifier used by ``Runner.start_execution``.
    nodes :
        Nodes in authoring order.
    edges :
        Edges between those nodes.
    name :
        Human-readable label shown in logs and diagrams.

    Raises
    ------
    InvalidGraph
        If any structural rule is violated.
    """

    def __init__(
        self,
        flow_id: str,
        nodes: list[Node] | tuple[Node, ...],
        edges: list[Edge] | tuple[Edge, ...] = (),
        name: str = "",
    ):
        if not flow_id:
            raise InvalidGraph("Flow has no id")
        self.id = str(flow_id)
        self.name = name or self.id
        self.nodes: tuple[Node, ...] = tuple(nodes)
        self.edges: tuple[Edge, ...] = tuple(edges)

        self._by_id: dict[str, Node] = {}
        for node in self.nodes:
            if node.id in self._by_id:
                raise InvalidGraph(f"Flow '{self.id}': duplicate node id '{node.id}'")
            if node.type not in NODE_DATA_TYPES:
                raise InvalidGraph(
                    f"Flow '{self.id}': node '{node.id}' has unknown type '{node.type}'"
                )
            self._by_id[node.id] = node

        self._out: dict[str, dict[str | None, Edge]] = {nid: {} for nid in self._by_id}
        for edge in self.edges:
            self._index_edge(edge)

        starts = [n.id for n in self.nodes if n.type == "start"]
        if len(starts) != 1:
            raise InvalidGraph(
                f"Flow '{self.id}' must have exactly one start node, found {len(starts)}"
            )
        self.start_node_id = starts[0]

        for node in self.nodes:
            if isinstance(node.data, GoToData) and node.data.target_node_id not in self._by_id:
                raise InvalidGraph(
                    f"Flow '{self.id}': goTo node '{node.id}' targets unknown node "
                    f"'{node.data.target_node_id}'"
                )
            if node.data.on_error is not None and node.data.on_error not in self._by_id:
                raise InvalidGraph(
                    f"Flow '{self.id}': node '{node.id}' onError targets unknown node "
                    f"'{node.data.on_error}'"
                )

        _log.debug("Flow loaded  id=%s  nodes=%d  edges=%d",
                   self.id, len(self.nodes), len(self.edges))

    def _index_edge(self, edge: Edge) -> None:
        for end in (edge.source, edge.target):
            if end not in self._by_id:
                raise InvalidGraph(
                    f"Flow '{self.id}': edge '{edge.id}' references unknown node '{end}'"
                )
        if edge.label not in _VALID_LABELS:
            raise InvalidGraph(
                f"Flow '{self.id}': edge '{edge.id}' has invalid label '{edge.label}'"
            )
        out = self._out[edge.source]
        if edge.label in out:
            kind = f"'{edge.label}'" if edge.label else "unlabeled"
            raise InvalidGraph(
                f"Flow '{self.id}': node '{edge.source}' has more than one {kind} edge"
            )
        out[edge.label] = edge

    # ── Lookup ────────────────────────────────────────────────────────────────

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._by_id

    def __repr__(self) -> str:
        return f"FlowGraph(id={self.id!r}, nodes={len(self.nodes)}, edges={len(self.edges)})"

    def node(self, node_id: str) -> Node:
        """Return the node with *node_id*; raises KeyError if absent."""
        try:
            return self._by_id[node_id]
        except KeyError:
            raise KeyError(f"Flow '{self.id}' has no node '{node_id}'") from None

    @property
    def start_node(self) -> Node:
        return self._by_id[self.start_node_id]

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._out.get(node_id, {}).values())

    def successor(self, node_id: str, label: str | None = None) -> str | None:
        """Target of the edge leaving *node_id* with *label*, or None."""
        edge = self._out.get(node_id, {}).get(label)
        return edge.target if edge else None

    # ── Serialisation ─────────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


# ── Loading ───────────────────────────────────────────────────────────────────

def _build_node(raw: Any) -> Node:
    if not isinstance(raw, dict) or "id" not in raw:
        raise InvalidGraph(f"Node definition must be a mapping with an id: {raw!r}")
    node_id = str(raw["id"])
    node_type = _TYPE_ALIASES.get(raw.get("type"), raw.get("type"))
    data_cls = NODE_DATA_TYPES.get(node_type)
    if data_cls is None:
        raise InvalidGraph(f"Node '{node_id}' has unknown type '{raw.get('type')}'")
    return Node(id=node_id, type=node_type, data=data_cls.from_raw(raw.get("data"), node_id))


def _build_edge(raw: Any, index: int) -> Edge:
    if not isinstance(raw, dict) or "source" not in raw or "target" not in raw:
        raise InvalidGraph(f"Edge definition must have source and target: {raw!r}")
    source, target = str(raw["source"]), str(raw["target"])
    # The visual editor stores the branch in sourceHandle.
    label = raw.get("label")
    if label is None or label == "":
        label = raw.get("sourceHandle") or None
    if label is not None:
        label = _word(label).strip().lower()
        label = _LABEL_ALIASES.get(label, label) or None
    return Edge(
        id=str(raw.get("id") or f"e{index}-{source}-{target}"),
        source=source,
        target=target,
        label=label,
    )


def load_flow(raw: dict[str, Any]) -> FlowGraph:
    """Build and validate a FlowGraph from its dict representation.

    Raises
    ------
    InvalidGraph
        If the definition is malformed or violates a graph rule.
    InvalidExpression
        If a condition expression cannot be parsed.
    """
    if not isinstance(raw, dict):
        raise InvalidGraph(f"Flow definition must be a mapping, got {type(raw).__name__}")
    nodes = [_build_node(n) for n in raw.get("nodes") or []]
    edges = [_build_edge(e, i) for i, e in enumerate(raw.get("edges") or [])]
    return FlowGraph(
        flow_id=str(raw.get("id") or ""),
        nodes=nodes,
        edges=edges,
        name=str(raw.get("name") or ""),
    )


def load_flow_file(path: str | Path) -> FlowGraph:
    """Load a flow from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if isinstance(raw, dict) and not raw.get("id"):
        raw = {**raw, "id": path.stem}
    return load_flow(raw)


# ── Registry ──────────────────────────────────────────────────────────────────

class FlowRegistry:
    """Versioned, thread-safe collection of runnable flows.

    Registering the same flow id again adds a new version; executions keep
    running the version they started on.
    """

    def __init__(self):
        self._versions: dict[str, list[FlowGraph]] = {}
        self._lock = threading.Lock()

    def register(self, flow: FlowGraph | dict[str, Any]) -> int:
        """Validate (if needed) and store *flow*; return its version (1-based)."""
        graph = flow if isinstance(flow, FlowGraph) else load_flow(flow)
        with self._lock:
            versions = self._versions.setdefault(graph.id, [])
            versions.append(graph)
            version = len(versions)
        _log.info("Flow registered  id=%s  version=%d", graph.id, version)
        return version

    def get(self, flow_id: str, version: int | None = None) -> FlowGraph:
        with self._lock:
            versions = self._versions.get(flow_id)
            if not versions:
                raise FlowNotFound(flow_id)
            if version is None:
                return versions[-1]
            if not 1 <= version <= len(versions):
                raise FlowNotFound(f"{flow_id}@v{version}")
            return versions[version - 1]

    def latest(self, flow_id: str) -> tuple[FlowGraph, int]:
        """Newest graph of *flow_id* together with its version, read atomically."""
        with self._lock:
            versions = self._versions.get(flow_id)
            if not versions:
                raise FlowNotFound(flow_id)
            return versions[-1], len(versions)

    def latest_version(self, flow_id: str) -> int:
        return self.latest(flow_id)[1]

    def __contains__(self, flow_id: str) -> bool:
        with self._lock:
            return flow_id in self._versions

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._versions)
