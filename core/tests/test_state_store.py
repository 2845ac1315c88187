"""
Tests for the write-once state store.
"""

import asyncio

import pytest

from flowrun.errors import ConfigError, StoreViolation
from flowrun.graph import GraphSpec, NodeSpec, ref, validate_graph
from flowrun.runtime.state_store import StateStore


def build_store():
    graph = GraphSpec(
        id="g",
        nodes=[
            NodeSpec(
                id="fetch",
                node_type="fetch",
                inputs={"url": "https://a"},
                outputs={"body": "text", "status": "int"},
            ),
            NodeSpec(
                id="parse",
                node_type="parse",
                inputs={"body": ref("fetch.body"), "strict": True},
                outputs={"doc": "json"},
            ),
        ],
    )
    return StateStore(validate_graph(graph))


@pytest.mark.asyncio
async def test_write_then_read_reference():
    store = build_store()

    await store.write("fetch", "body", "<html>")

    assert store.read(ref("fetch.body")) == "<html>"
    assert store.is_written("fetch", "body")
    assert ("fetch", "body") in store
    assert ref("fetch.body") in store


def test_literal_binding_reads_as_itself():
    store = build_store()

    assert store.read(42) == 42
    assert store.read({"nested": [1, 2]}) == {"nested": [1, 2]}


def test_reading_unwritten_port_raises():
    store = build_store()

    with pytest.raises(KeyError):
        store.read(ref("fetch.body"))


@pytest.mark.asyncio
async def test_ports_are_write_once():
    store = build_store()
    await store.write("fetch", "body", "first")

    with pytest.raises(StoreViolation, match="already written"):
        await store.write("fetch", "body", "second")

    assert store.read(ref("fetch.body")) == "first"


@pytest.mark.asyncio
async def test_write_to_undeclared_port_rejected():
    store = build_store()

    with pytest.raises(StoreViolation, match="not a declared output"):
        await store.write("fetch", "headers", {})


@pytest.mark.asyncio
async def test_concurrent_writes_to_same_key_one_wins():
    store = build_store()

    results = await asyncio.gather(
        *(store.write("fetch", "status", i) for i in range(5)),
        return_exceptions=True,
    )

    violations = [r for r in results if isinstance(r, StoreViolation)]
    assert len(violations) == 4
    assert store.get_stats()["ports_written"] == 1


@pytest.mark.asyncio
async def test_write_outputs_is_all_or_nothing():
    store = build_store()

    with pytest.raises(StoreViolation):
        await store.write_outputs("fetch", {"body": "x", "bogus": 1})

    assert not store.is_written("fetch", "body")
    assert store.snapshot() == {}


@pytest.mark.asyncio
async def test_resolve_inputs_and_snapshot():
    store = build_store()
    await store.write_outputs("fetch", {"body": "<p>", "status": 200})

    inputs = store.resolve_inputs(store._graph.node("parse"))

    assert inputs == {"body": "<p>", "strict": True}
    assert store.snapshot() == {"fetch": {"body": "<p>", "status": 200}}
    assert store.outputs_for("fetch") == {"body": "<p>", "status": 200}
    assert [w.port for w in store.get_recent_writes()] == ["body", "status"]


# ---- Bootstrap inputs ----


def test_seed_fills_and_overrides_literal_bindings():
    store = build_store()

    store.seed({"fetch": {"url": "https://b", "timeout": 5}})

    node = store._graph.node("fetch")
    assert store.resolve_inputs(node) == {"url": "https://b", "timeout": 5}


def test_seed_cannot_override_reference_binding():
    store = build_store()

    with pytest.raises(ConfigError, match="can't be overridden"):
        store.seed({"parse": {"body": "injected"}})


def test_seed_rejects_unknown_node():
    store = build_store()

    with pytest.raises(ConfigError, match="unknown node 'ghost'"):
        store.seed({"ghost": {"x": 1}})


def test_seed_rejects_non_mapping_values():
    store = build_store()

    with pytest.raises(ConfigError, match="must be a mapping"):
        store.seed({"fetch": ["https://b"]})
