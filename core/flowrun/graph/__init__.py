"""Graph structures: Nodes, Edges, and validation."""

from flowrun.graph.edge import EdgeSpec, GraphSpec
from flowrun.graph.node import NodeSpec, Ref, is_ref, ref
from flowrun.graph.validator import (
    ValidatedGraph,
    ValidationResult,
    find_cycle,
    validate_graph,
    validate_outputs,
)

__all__ = [
    # Nodes
    "NodeSpec",
    "Ref",
    "ref",
    "is_ref",
    # Edges
    "EdgeSpec",
    "GraphSpec",
    # Validation
    "ValidatedGraph",
    "ValidationResult",
    "validate_graph",
    "validate_outputs",
    "find_cycle",
]
