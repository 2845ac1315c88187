"""Graph and output validation.

Structural checks run once, before a run starts, and turn a GraphSpec into
a ValidatedGraph. Output checks run after every successful handler attempt
so that partial or stray outputs never reach the state store.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from flowrun.errors import ConfigError
from flowrun.graph.edge import GraphSpec
from flowrun.graph.node import REF_SEPARATOR, NodeSpec, is_ref

if TYPE_CHECKING:
    from flowrun.runner.handler_registry import HandlerRegistry

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating a handler's output."""

    success: bool
    errors: list[str]
    missing: list[str] = field(default_factory=list)
    undeclared: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


@dataclass(frozen=True)
class ValidatedGraph:
    """
    A GraphSpec that passed validation, plus precomputed structure.

    ``ranks`` is the longest distance from a root node. The scheduler uses it
    only to order equally-ready nodes; siblings of equal rank may still run
    concurrently.
    """

    graph: GraphSpec
    predecessors: dict[str, frozenset[str]]
    successors: dict[str, frozenset[str]]
    ranks: dict[str, int]
    order: tuple[str, ...]

    @property
    def id(self) -> str:
        return self.graph.id

    def node(self, node_id: str) -> NodeSpec:
        node = self.graph.get_node(node_id)
        if node is None:
            raise KeyError(node_id)
        return node

    def roots(self) -> list[str]:
        return [nid for nid in self.order if not self.predecessors[nid]]

    def ancestors(self, node_id: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self.predecessors[node_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.predecessors[current])
        return seen


def _check_ids(graph: GraphSpec) -> list[str]:
    errors = []
    seen: set[str] = set()
    reported: set[str] = set()
    for node in graph.nodes:
        if not node.id:
            errors.append("Node with empty id")
            continue
        if REF_SEPARATOR in node.id:
            errors.append(f"Node id '{node.id}' must not contain '{REF_SEPARATOR}'")
        if node.id in seen and node.id not in reported:
            errors.append(f"Duplicate node id: '{node.id}'")
            reported.add(node.id)
        seen.add(node.id)
    return errors


def _check_references(graph: GraphSpec) -> list[str]:
    errors = []
    for node in graph.nodes:
        for port, binding in node.inputs.items():
            if not is_ref(binding):
                continue
            if binding.node == node.id:
                errors.append(f"Node '{node.id}' input '{port}' references its own output")
                continue
            upstream = graph.get_node(binding.node)
            if upstream is None:
                errors.append(
                    f"Node '{node.id}' input '{port}' references missing node '{binding.node}'"
                )
            elif not upstream.declares_output(binding.port):
                declared = sorted(upstream.outputs) or "none"
                errors.append(
                    f"Node '{node.id}' input '{port}' references undeclared port "
                    f"'{binding}' (declared: {declared})"
                )
    return errors


def _check_edges(graph: GraphSpec) -> list[str]:
    errors = []
    for edge in graph.edges:
        if not graph.get_node(edge.source):
            errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
        if not graph.get_node(edge.target):
            errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")
        if edge.source == edge.target:
            errors.append(f"Edge '{edge.id}' is a self-loop on '{edge.source}'")
    return errors


def _check_handlers(graph: GraphSpec, registry: "HandlerRegistry") -> list[str]:
    missing: dict[str, list[str]] = {}
    for node in graph.nodes:
        if not registry.has(node.node_type):
            missing.setdefault(node.node_type, []).append(node.id)

    errors = []
    if missing:
        available = sorted(registry.list_types()) or "none"
        for type_name, node_ids in sorted(missing.items()):
            errors.append(
                f"No handler registered for type '{type_name}' "
                f"(used by {sorted(node_ids)}; available: {available})"
            )
    return errors


def find_cycle(predecessors: dict[str, set[str]]) -> list[str] | None:
    """
    Return one dependency cycle as a closed path, or None.

    Walks edges in dependency direction (upstream -> downstream) so that
    ``a -> b -> c -> a`` is reported as ``["a", "b", "c", "a"]``. Iterative,
    so deep graphs don't hit the recursion limit.
    """
    successors: dict[str, list[str]] = {nid: [] for nid in predecessors}
    for target, sources in predecessors.items():
        for source in sources:
            successors.setdefault(source, []).append(target)
    for targets in successors.values():
        targets.sort()

    WHITE, GRAY, BLACK = 0, 1, 2
    color = dict.fromkeys(successors, WHITE)

    for start in sorted(successors):
        if color[start] != WHITE:
            continue
        path = [start]
        iterators = [iter(successors[start])]
        color[start] = GRAY
        while iterators:
            child = next(iterators[-1], None)
            if child is None:
                color[path.pop()] = BLACK
                iterators.pop()
            elif color[child] == GRAY:
                return path[path.index(child) :] + [child]
            elif color[child] == WHITE:
                color[child] = GRAY
                path.append(child)
                iterators.append(iter(successors[child]))
    return None


def _rank(predecessors: dict[str, set[str]]) -> tuple[dict[str, int], tuple[str, ...]]:
    """Longest-path rank for every node and a deterministic topological order."""
    remaining = {nid: len(preds) for nid, preds in predecessors.items()}
    successors: dict[str, list[str]] = {nid: [] for nid in predecessors}
    for target, sources in predecessors.items():
        for source in sources:
            successors[source].append(target)

    ranks = {nid: 0 for nid in predecessors}
    frontier = [(0, nid) for nid, count in remaining.items() if count == 0]
    heapq.heapify(frontier)
    order: list[str] = []
    while frontier:
        _, current = heapq.heappop(frontier)
        order.append(current)
        for child in successors[current]:
            ranks[child] = max(ranks[child], ranks[current] + 1)
            remaining[child] -= 1
            if remaining[child] == 0:
                heapq.heappush(frontier, (ranks[child], child))
    return ranks, tuple(order)


def validate_graph(
    graph: "GraphSpec | ValidatedGraph",
    registry: "HandlerRegistry | None" = None,
) -> ValidatedGraph:
    """
    Validate a graph's structure and precompute scheduling data.

    Checks, in order: node id uniqueness; every reference names an existing
    node and one of its declared output ports; no self-references; explicit
    edges name existing nodes; every node type has a registered handler
    (when a registry is given); the dependency relation is acyclic.

    Validation has no side effects, so validating a ValidatedGraph again
    returns an equal ValidatedGraph.

    Raises:
        ConfigError: listing every structural problem, or naming the cycle.
    """
    if isinstance(graph, ValidatedGraph):
        graph = graph.graph

    errors = _check_ids(graph)
    errors += _check_references(graph)
    errors += _check_edges(graph)
    if registry is not None:
        errors += _check_handlers(graph, registry)

    if errors:
        logger.debug(f"Graph '{graph.id}' failed validation: {errors}")
        raise ConfigError(errors)

    predecessors = graph.dependency_map()
    cycle = find_cycle(predecessors)
    if cycle:
        raise ConfigError(
            [f"Dependency cycle detected: {' -> '.join(cycle)}"],
            cycle=cycle,
        )

    successors: dict[str, set[str]] = {nid: set() for nid in predecessors}
    for target, sources in predecessors.items():
        for source in sources:
            successors[source].add(target)

    ranks, order = _rank(predecessors)
    return ValidatedGraph(
        graph=graph,
        predecessors={nid: frozenset(p) for nid, p in predecessors.items()},
        successors={nid: frozenset(s) for nid, s in successors.items()},
        ranks=ranks,
        order=order,
    )


def validate_outputs(node: NodeSpec, output: Any) -> ValidationResult:
    """
    Check a handler's output against the node's declared ports.

    Every declared port must be present (None is a legitimate value);
    ports the node never declared are reported separately so the caller
    can classify them as store violations.
    """
    if not isinstance(output, dict):
        return ValidationResult(
            success=False,
            errors=[f"Handler output is not a dict, got {type(output).__name__}"],
            missing=sorted(node.outputs),
        )

    missing = [port for port in node.outputs if port not in output]
    undeclared = [port for port in output if port not in node.outputs]

    errors = [f"Missing required output port: '{port}'" for port in missing]
    errors += [f"Undeclared output port: '{port}'" for port in undeclared]
    return ValidationResult(
        success=not errors,
        errors=errors,
        missing=missing,
        undeclared=undeclared,
    )
