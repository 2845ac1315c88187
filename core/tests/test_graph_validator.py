"""
Tests for graph loading and structural validation.
"""

import json

import pytest

from flowrun.errors import ConfigError
from flowrun.graph import (
    EdgeSpec,
    GraphSpec,
    NodeSpec,
    Ref,
    ValidatedGraph,
    find_cycle,
    ref,
    validate_graph,
    validate_outputs,
)
from flowrun.runner import HandlerRegistry


def make_node(node_id, inputs=None, outputs=("out",), node_type="noop", **kwargs):
    return NodeSpec(
        id=node_id,
        node_type=node_type,
        inputs=inputs or {},
        outputs={port: "any" for port in outputs},
        **kwargs,
    )


class NoopHandler:
    async def execute(self, inputs, meta, cancel):
        return {"out": None}


# ---- Loading ----


def test_ref_bindings_parse_from_json_form():
    node = NodeSpec.model_validate(
        {
            "id": "summarize",
            "type": "llm",
            "inputs": {"text": {"$ref": "fetch.body"}, "max_words": 100},
            "outputs": {"summary": "text"},
        }
    )

    assert node.node_type == "llm"
    assert node.inputs["text"] == Ref(node="fetch", port="body")
    assert node.inputs["max_words"] == 100
    assert node.upstream_ids() == {"fetch"}


def test_ref_serializes_back_to_json_form():
    node = make_node("b", inputs={"x": ref("a.out"), "y": {"nested": 1}})

    dumped = node.model_dump(by_alias=True)

    assert dumped["type"] == "noop"
    assert dumped["inputs"] == {"x": {"$ref": "a.out"}, "y": {"nested": 1}}


def test_ref_parse_rejects_malformed_targets():
    with pytest.raises(ValueError):
        Ref.parse("no_port")
    with pytest.raises(ValueError):
        Ref.parse(".port")


def test_graph_from_json_file(tmp_path):
    path = tmp_path / "graph.json"
    path.write_text(
        json.dumps(
            {
                "id": "pipeline",
                "nodes": [
                    {"id": "a", "type": "noop", "outputs": {"out": "int"}},
                    {"id": "b", "type": "noop", "inputs": {"x": {"$ref": "a.out"}}},
                ],
                "edges": [{"source": "a", "target": "b"}],
                "settings": {"concurrency_limit": 2},
            }
        )
    )

    graph = GraphSpec.from_json_file(path)

    assert graph.node_ids() == ["a", "b"]
    assert graph.edges[0].id == "a->b"
    assert graph.settings.concurrency_limit == 2
    assert graph.dependency_map() == {"a": set(), "b": {"a"}}


def test_fan_in_and_fan_out_detection():
    graph = GraphSpec(
        id="diamond",
        nodes=[
            make_node("a"),
            make_node("b", inputs={"x": ref("a.out")}),
            make_node("c", inputs={"x": ref("a.out")}),
            make_node("d", inputs={"x": ref("b.out"), "y": ref("c.out")}),
        ],
    )

    assert graph.detect_fan_out_nodes() == {"a": ["b", "c"]}
    assert graph.detect_fan_in_nodes() == {"d": ["b", "c"]}


# ---- Structural errors ----


def test_duplicate_node_ids_rejected():
    graph = GraphSpec(id="g", nodes=[make_node("a"), make_node("a")])

    with pytest.raises(ConfigError) as exc_info:
        validate_graph(graph)

    assert any("Duplicate node id: 'a'" in e for e in exc_info.value.errors)


def test_node_id_with_separator_rejected():
    graph = GraphSpec(id="g", nodes=[make_node("a.b")])

    with pytest.raises(ConfigError, match="must not contain"):
        validate_graph(graph)


def test_dangling_reference_rejected():
    graph = GraphSpec(id="g", nodes=[make_node("b", inputs={"x": ref("ghost.out")})])

    with pytest.raises(ConfigError, match="missing node 'ghost'"):
        validate_graph(graph)


def test_reference_to_undeclared_port_rejected():
    graph = GraphSpec(
        id="g",
        nodes=[make_node("a"), make_node("b", inputs={"x": ref("a.missing")})],
    )

    with pytest.raises(ConfigError, match="undeclared port 'a.missing'"):
        validate_graph(graph)


def test_self_reference_rejected():
    graph = GraphSpec(id="g", nodes=[make_node("a", inputs={"x": ref("a.out")})])

    with pytest.raises(ConfigError, match="references its own output"):
        validate_graph(graph)


def test_edge_to_missing_node_rejected():
    graph = GraphSpec(
        id="g",
        nodes=[make_node("a")],
        edges=[EdgeSpec(source="a", target="ghost")],
    )

    with pytest.raises(ConfigError, match="missing target 'ghost'"):
        validate_graph(graph)


def test_all_problems_reported_together():
    graph = GraphSpec(
        id="g",
        nodes=[
            make_node("a"),
            make_node("a"),
            make_node("b", inputs={"x": ref("ghost.out")}),
        ],
    )

    with pytest.raises(ConfigError) as exc_info:
        validate_graph(graph)

    assert len(exc_info.value.errors) == 2


def test_unknown_handler_type_rejected():
    registry = HandlerRegistry()
    registry.register("noop", NoopHandler())
    graph = GraphSpec(
        id="g",
        nodes=[make_node("a"), make_node("b", node_type="ocr")],
    )

    with pytest.raises(ConfigError) as exc_info:
        validate_graph(graph, registry)

    message = str(exc_info.value)
    assert "No handler registered for type 'ocr'" in message
    assert "['b']" in message


# ---- Cycles ----


def test_cycle_names_every_node_in_it():
    graph = GraphSpec(
        id="g",
        nodes=[
            make_node("a", inputs={"x": ref("c.out")}),
            make_node("b", inputs={"x": ref("a.out")}),
            make_node("c", inputs={"x": ref("b.out")}),
        ],
    )

    with pytest.raises(ConfigError) as exc_info:
        validate_graph(graph)

    assert exc_info.value.cycle == ["a", "b", "c", "a"]
    assert "a -> b -> c -> a" in str(exc_info.value)


def test_cycle_through_explicit_edge():
    graph = GraphSpec(
        id="g",
        nodes=[make_node("a"), make_node("b", inputs={"x": ref("a.out")})],
        edges=[EdgeSpec(source="b", target="a")],
    )

    with pytest.raises(ConfigError) as exc_info:
        validate_graph(graph)

    assert set(exc_info.value.cycle) == {"a", "b"}


def test_find_cycle_on_acyclic_graph():
    assert find_cycle({"a": set(), "b": {"a"}, "c": {"a", "b"}}) is None


def test_find_cycle_on_long_chain_is_iterative():
    chain = {"n0": {f"n{4999}"}}
    chain.update({f"n{i}": {f"n{i - 1}"} for i in range(1, 5000)})

    cycle = find_cycle(chain)

    assert cycle is not None
    assert len(cycle) == 5001


# ---- Validated structure ----


def test_ranks_and_order():
    graph = GraphSpec(
        id="g",
        nodes=[
            make_node("d", inputs={"x": ref("b.out"), "y": ref("c.out")}),
            make_node("c", inputs={"x": ref("a.out")}),
            make_node("b", inputs={"x": ref("a.out")}),
            make_node("a"),
            make_node("e"),
        ],
    )

    validated = validate_graph(graph)

    assert validated.ranks == {"a": 0, "e": 0, "b": 1, "c": 1, "d": 2}
    assert validated.order == ("a", "e", "b", "c", "d")
    assert validated.roots() == ["a", "e"]
    assert validated.successors["a"] == frozenset({"b", "c"})
    assert validated.ancestors("d") == {"a", "b", "c"}


def test_explicit_edges_add_ordering_dependencies():
    graph = GraphSpec(
        id="g",
        nodes=[make_node("setup"), make_node("work")],
        edges=[EdgeSpec(source="setup", target="work")],
    )

    validated = validate_graph(graph)

    assert validated.predecessors["work"] == frozenset({"setup"})


def test_validation_is_idempotent():
    graph = GraphSpec(
        id="g",
        nodes=[make_node("a"), make_node("b", inputs={"x": ref("a.out")})],
    )

    once = validate_graph(graph)
    twice = validate_graph(once)

    assert isinstance(twice, ValidatedGraph)
    assert twice == once


# ---- Output validation ----


def test_validate_outputs_reports_missing_and_undeclared():
    node = make_node("a", outputs=("x", "y"))

    result = validate_outputs(node, {"x": 1, "z": 2})

    assert not result.success
    assert result.missing == ["y"]
    assert result.undeclared == ["z"]


def test_validate_outputs_accepts_none_values():
    node = make_node("a", outputs=("x",))

    assert validate_outputs(node, {"x": None}).success


def test_validate_outputs_rejects_non_mapping():
    node = make_node("a", outputs=("x",))

    result = validate_outputs(node, ["x"])

    assert not result.success
    assert result.missing == ["x"]
    assert "not a dict" in result.error
