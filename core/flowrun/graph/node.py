"""
Node Protocol - The units of work in a graph.

A node declares:
1. Which handler runs it (node_type)
2. Where each input comes from (a literal value or a reference to an
   upstream node's output port)
3. Which output ports it promises to produce
4. Per-node retry and timeout overrides

Nodes are pure data. The runtime resolves node_type to a handler through
the HandlerRegistry and resolves references through the StateStore.
"""

from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator

REF_KEY = "$ref"
REF_SEPARATOR = "."


class Ref(BaseModel):
    """
    Reference to an upstream node's output port.

    Written ``{"$ref": "fetch.body"}`` in JSON graphs, or ``ref("fetch.body")``
    in Python.
    """

    node: str
    port: str

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, target: str) -> "Ref":
        """Parse ``"node.port"``. The port is everything after the first dot."""
        node, sep, port = target.partition(REF_SEPARATOR)
        if not sep or not node or not port:
            raise ValueError(f"Invalid reference '{target}': expected 'node_id.port'")
        return cls(node=node, port=port)

    def __str__(self) -> str:
        return f"{self.node}{REF_SEPARATOR}{self.port}"


def ref(target: str) -> Ref:
    """Shorthand for Ref.parse."""
    return Ref.parse(target)


def is_ref(binding: Any) -> bool:
    return isinstance(binding, Ref)


class NodeSpec(BaseModel):
    """
    Specification for a node in the graph.

    Examples:
        NodeSpec(
            id="fetch",
            node_type="http_fetch",
            inputs={"url": "https://example.com"},
            outputs={"body": "text"},
            retries=2,
            timeout=10,
        )

        NodeSpec(
            id="summarize",
            node_type="llm_summarize",
            inputs={"text": ref("fetch.body"), "max_words": 100},
            outputs={"summary": "text"},
        )
    """

    id: str
    node_type: str = Field(alias="type", description="Handler selector")
    name: str = ""
    description: str = ""

    inputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Input port -> literal value or Ref to an upstream output",
    )
    outputs: dict[str, str] = Field(
        default_factory=dict,
        description="Declared output port -> semantic type (documentation only)",
    )

    retries: int | None = Field(
        default=None,
        ge=0,
        description="Retries after the first attempt. None uses the run's retry policy.",
    )
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds per attempt. None uses the run's default timeout.",
    )
    meta: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("inputs", mode="before")
    @classmethod
    def _parse_refs(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        parsed = {}
        for port, binding in value.items():
            if isinstance(binding, dict) and set(binding) == {REF_KEY}:
                binding = Ref.parse(binding[REF_KEY])
            parsed[port] = binding
        return parsed

    @field_serializer("inputs")
    def _dump_refs(self, inputs: dict[str, Any]) -> dict[str, Any]:
        return {
            port: {REF_KEY: str(binding)} if is_ref(binding) else binding
            for port, binding in inputs.items()
        }

    def references(self) -> list[Ref]:
        """All reference bindings, in port declaration order."""
        return [binding for binding in self.inputs.values() if is_ref(binding)]

    def upstream_ids(self) -> set[str]:
        """Nodes this node reads data from."""
        return {r.node for r in self.references()}

    def declares_output(self, port: str) -> bool:
        return port in self.outputs

    @property
    def label(self) -> str:
        return self.name or self.id
