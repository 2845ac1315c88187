"""
State Store - Per-run values keyed by (node_id, port).

Rules:
- Write-once: each (node_id, port) is written exactly one time, by the node
  that declares the port, when that node succeeds.
- Declared ports only: writing a port the node never declared is a
  StoreViolation.
- Reads never wait: the scheduler only dispatches a node after every port
  it references has been written.

Locking is per key, so concurrent nodes writing disjoint ports never
contend with each other.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from flowrun.errors import ConfigError, StoreViolation
from flowrun.graph.node import NodeSpec, Ref, is_ref
from flowrun.graph.validator import ValidatedGraph

logger = logging.getLogger(__name__)

StoreKey = tuple[str, str]


@dataclass
class StateWrite:
    """Record of a port write."""

    node_id: str
    port: str
    timestamp: float = field(default_factory=time.time)


class StateStore:
    """
    Holds the outputs of one run and resolves node inputs from them.

    Example:
        store = StateStore(validated)
        store.seed({"fetch": {"url": "https://example.com"}})

        inputs = store.resolve_inputs(validated.node("fetch"))
        await store.write_outputs("fetch", {"body": "..."})
        store.read(ref("fetch.body"))
    """

    def __init__(self, graph: ValidatedGraph):
        self._graph = graph
        self._values: dict[StoreKey, Any] = {}
        self._bootstrap: dict[str, dict[str, Any]] = {}
        self._key_locks: dict[StoreKey, asyncio.Lock] = {}

        self._change_history: list[StateWrite] = []
        self._version = 0

    # === BOOTSTRAP ===

    def seed(self, bootstrap: dict[str, dict[str, Any]] | None) -> None:
        """
        Provide run inputs for nodes.

        A bootstrap value fills an input port that has no binding, or
        replaces a literal binding. Ports bound to an upstream reference
        can't be overridden.

        Raises:
            ConfigError: unknown node, or a port bound to a reference
        """
        if not bootstrap:
            return

        errors = []
        for node_id, values in bootstrap.items():
            node = self._graph.graph.get_node(node_id)
            if node is None:
                errors.append(f"Input given for unknown node '{node_id}'")
                continue
            if not isinstance(values, dict):
                errors.append(f"Inputs for node '{node_id}' must be a mapping of port -> value")
                continue
            for port in values:
                if is_ref(node.inputs.get(port)):
                    errors.append(
                        f"Input '{node_id}.{port}' is bound to '{node.inputs[port]}' "
                        "and can't be overridden"
                    )
        if errors:
            raise ConfigError(errors)

        for node_id, values in bootstrap.items():
            self._bootstrap.setdefault(node_id, {}).update(values)

    # === READ ===

    def read(self, binding: Any) -> Any:
        """
        Resolve a binding.

        Literals resolve to themselves; references resolve to the written
        port value.

        Raises:
            KeyError: the referenced port hasn't been written. The scheduler
                never dispatches a node in that state.
        """
        if not is_ref(binding):
            return binding
        key = (binding.node, binding.port)
        if key not in self._values:
            raise KeyError(f"Port '{binding}' has not been written")
        return self._values[key]

    def resolve_inputs(self, node: NodeSpec) -> dict[str, Any]:
        """Resolved input values for a node: bindings overlaid with bootstrap values."""
        resolved = {port: self.read(binding) for port, binding in node.inputs.items()}
        resolved.update(self._bootstrap.get(node.id, {}))
        return resolved

    def is_written(self, node_id: str, port: str) -> bool:
        return (node_id, port) in self._values

    def outputs_for(self, node_id: str) -> dict[str, Any]:
        """All written ports of one node."""
        return {port: value for (nid, port), value in self._values.items() if nid == node_id}

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Copy of every written value as {node_id: {port: value}}."""
        result: dict[str, dict[str, Any]] = {}
        for (node_id, port), value in self._values.items():
            result.setdefault(node_id, {})[port] = value
        return result

    # === WRITE ===

    def _check_declared(self, node_id: str, port: str) -> None:
        node = self._graph.graph.get_node(node_id)
        if node is None:
            raise StoreViolation(node_id, port, "unknown node")
        if not node.declares_output(port):
            raise StoreViolation(node_id, port, "port is not a declared output")

    def _get_lock(self, key: StoreKey) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def write(self, node_id: str, port: str, value: Any) -> None:
        """
        Write one output port.

        Raises:
            StoreViolation: undeclared port, or the port was already written
        """
        self._check_declared(node_id, port)
        key = (node_id, port)
        async with self._get_lock(key):
            if key in self._values:
                raise StoreViolation(node_id, port, "port was already written")
            self._values[key] = value
            self._version += 1
            self._record_change(StateWrite(node_id=node_id, port=port))

    async def write_outputs(self, node_id: str, outputs: dict[str, Any]) -> None:
        """
        Write a node's outputs all-or-nothing.

        Every port is checked before any is written, so a rejected output
        mapping leaves the store unchanged.
        """
        for port in outputs:
            self._check_declared(node_id, port)
            if self.is_written(node_id, port):
                raise StoreViolation(node_id, port, "port was already written")
        for port, value in outputs.items():
            await self.write(node_id, port, value)

    def _record_change(self, change: StateWrite) -> None:
        self._change_history.append(change)
        logger.debug(f"Stored {change.node_id}.{change.port}")

    # === UTILITY ===

    def get_stats(self) -> dict:
        return {
            "ports_written": len(self._values),
            "nodes_with_outputs": len({nid for nid, _ in self._values}),
            "bootstrapped_nodes": len(self._bootstrap),
            "version": self._version,
        }

    def get_recent_writes(self, limit: int = 10) -> list[StateWrite]:
        return self._change_history[-limit:]

    def __contains__(self, key: "StoreKey | Ref") -> bool:
        if is_ref(key):
            key = (key.node, key.port)
        return key in self._values
