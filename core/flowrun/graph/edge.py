"""
Edge Protocol - How nodes connect in a graph.

Dependencies come from two places:
1. Input bindings: a node that reads ``{"$ref": "fetch.body"}`` depends on
   ``fetch``. These edges carry data.
2. Explicit edges: ``EdgeSpec(source="setup", target="fetch")`` orders two
   nodes without passing data between them.

Both kinds feed the same dependency relation. Fan-out (one source, many
targets) and fan-in (many sources, one target) need no special edge types:
a target becomes ready only when every one of its sources has succeeded.
"""

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from flowrun.config import RunSettings, get_default_settings
from flowrun.graph.node import NodeSpec


class EdgeSpec(BaseModel):
    """
    Explicit ordering dependency between two nodes.

    Examples:
        EdgeSpec(id="setup-to-fetch", source="setup", target="fetch")
    """

    id: str = ""
    source: str = Field(description="Upstream node ID")
    target: str = Field(description="Downstream node ID")
    description: str = ""

    model_config = {"extra": "allow"}

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = f"{self.source}->{self.target}"


class GraphSpec(BaseModel):
    """
    Complete graph specification.

    Example:
        GraphSpec(
            id="research",
            nodes=[fetch_node, extract_node, summarize_node],
            edges=[EdgeSpec(source="login", target="fetch")],
            settings=RunSettings(concurrency_limit=8),
        )

    A GraphSpec is unchecked input. Pass it through validate_graph() to get
    a ValidatedGraph before running it.
    """

    id: str
    description: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    settings: RunSettings | None = Field(
        default=None,
        description="Run-level defaults; None falls back to the process configuration",
    )

    model_config = {"extra": "allow"}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphSpec":
        return cls.model_validate(data)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "GraphSpec":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def dependency_map(self) -> dict[str, set[str]]:
        """
        Direct predecessors of every node, from bindings and explicit edges.

        References to unknown nodes are kept; the validator reports them.
        """
        deps: dict[str, set[str]] = {node.id: set() for node in self.nodes}
        for node in self.nodes:
            deps[node.id].update(node.upstream_ids())
        for edge in self.edges:
            deps.setdefault(edge.target, set()).add(edge.source)
        return deps

    def detect_fan_out_nodes(self) -> dict[str, list[str]]:
        """Nodes feeding more than one downstream node: {source: [targets]}."""
        downstream: dict[str, list[str]] = {}
        for target, sources in self.dependency_map().items():
            for source in sources:
                downstream.setdefault(source, []).append(target)
        return {s: sorted(t) for s, t in downstream.items() if len(t) > 1}

    def detect_fan_in_nodes(self) -> dict[str, list[str]]:
        """Nodes with more than one predecessor: {target: [sources]}."""
        return {
            target: sorted(sources)
            for target, sources in self.dependency_map().items()
            if len(sources) > 1
        }

    def effective_settings(self) -> RunSettings:
        """Graph settings if declared, otherwise the configured defaults."""
        return self.settings or get_default_settings()
