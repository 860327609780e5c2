"""Mermaid diagrams of flow graphs."""

from __future__ import annotations

import re

from convoflow.graph import FlowGraph, GoToData, Node

NODE_COLORS = {
    "start": "#c8e6c9",
    "end": "#ffcdd2",
    "message": "#e1f5fe",
    "condition": "#fff3e0",
    "wait": "#f3e5f5",
    "aiKnowledge": "#ede7f6",
    "goTo": "#f0f0f0",
}

_SAFE_ID = re.compile(r"[^A-Za-z0-9_]")


def _mermaid_id(node_id: str) -> str:
    return "n_" + _SAFE_ID.sub("_", node_id)


def _label(node: Node, with_details: bool) -> str:
    text = f"{node.id}: {node.type}"
    if with_details:
        data = node.data
        detail = (getattr(data, "text", None) or getattr(data, "prompt", None)
                  or getattr(data, "expression", None))
        keywords = getattr(data, "keywords", None)
        if keywords:
            detail = "keywords: " + ", ".join(keywords)
        if detail:
            detail = str(detail)
            if len(detail) > 40:
                detail = detail[:37] + "..."
            text += f"\\n{detail}"
    return text.replace('"', "'")


def build_mermaid(graph: FlowGraph, *, direction: str = "TD", details: bool = True) -> str:
    """Return a Mermaid ``flowchart`` string for *graph*.

    Parameters
    ----------
    graph :
        The flow to draw.
    direction :
        Mermaid direction (``TD``, ``LR``, ...).
    details :
        Include message text, prompts, expressions and keywords in node labels.
    """
    lines = [f"flowchart {direction}"]
    for node in graph.nodes:
        mid = _mermaid_id(node.id)
        shape = '{{"%s"}}' if node.type == "condition" else '["%s"]'
        lines.append(f"    {mid}{shape % _label(node, details)}")
        lines.append(f"    style {mid} fill:{NODE_COLORS.get(node.type, '#f0f0f0')}")

    for edge in graph.edges:
        src, tgt = _mermaid_id(edge.source), _mermaid_id(edge.target)
        if edge.label:
            lines.append(f"    {src} -->|{edge.label}| {tgt}")
        else:
            lines.append(f"    {src} --> {tgt}")

    for node in graph.nodes:
        if isinstance(node.data, GoToData):
            lines.append(f"    {_mermaid_id(node.id)} -.->|goTo| "
                         f"{_mermaid_id(node.data.target_node_id)}")
        if node.data.on_error:
            lines.append(f"    {_mermaid_id(node.id)} -.->|error| "
                         f"{_mermaid_id(node.data.on_error)}")
    return "\n".join(lines)
