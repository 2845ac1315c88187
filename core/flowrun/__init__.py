"""
flowrun - Execute workflow task graphs.

Nodes are typed tasks whose inputs are bound to literals or to the outputs
of upstream nodes. A run resolves those dependencies, executes ready nodes
concurrently through pluggable handlers, retries transient failures, skips
everything downstream of a failure, and ends in a RunReport.

    from flowrun import GraphSpec, HandlerRegistry, WorkflowEngine

    registry = HandlerRegistry()
    registry.register_function(fetch_page, type_name="fetch", output="body")

    graph = GraphSpec.from_json_file("graph.json")
    report = await WorkflowEngine(registry).run(graph)
"""

from flowrun.config import RetryPolicy, RunSettings, get_default_settings
from flowrun.errors import (
    CancellationError,
    ConfigError,
    ErrorKind,
    FlowrunError,
    HandlerError,
    HandlerNotFoundError,
    NodeTimeoutError,
    RunStateError,
    StoreViolation,
)
from flowrun.graph import EdgeSpec, GraphSpec, NodeSpec, Ref, ValidatedGraph, ref, validate_graph
from flowrun.runner import FunctionHandler, HandlerRegistry, TaskHandler, handler
from flowrun.runtime import CancelToken, EventBus, EventType, Run, RunEvent, WorkflowEngine
from flowrun.schemas import ErrorInfo, NodeExecutionRecord, NodeStatus, RunReport, RunStatus

__version__ = "0.1.0"

__all__ = [
    # Graph
    "NodeSpec",
    "EdgeSpec",
    "GraphSpec",
    "Ref",
    "ref",
    "ValidatedGraph",
    "validate_graph",
    # Handlers
    "HandlerRegistry",
    "TaskHandler",
    "FunctionHandler",
    "handler",
    # Runtime
    "WorkflowEngine",
    "Run",
    "CancelToken",
    "EventBus",
    "EventType",
    "RunEvent",
    # Schemas
    "RunReport",
    "RunStatus",
    "NodeExecutionRecord",
    "NodeStatus",
    "ErrorInfo",
    # Config
    "RunSettings",
    "RetryPolicy",
    "get_default_settings",
    # Errors
    "FlowrunError",
    "ConfigError",
    "HandlerNotFoundError",
    "RunStateError",
    "HandlerError",
    "NodeTimeoutError",
    "CancellationError",
    "StoreViolation",
    "ErrorKind",
]
