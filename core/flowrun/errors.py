"""
Error taxonomy for graph validation and node execution.

Two families:
- Configuration/API errors (ConfigError, RunStateError) are raised
  synchronously to the caller before or instead of a run.
- Node errors (HandlerError, NodeTimeoutError, CancellationError,
  StoreViolation) never escape a Run. The supervisor classifies them into
  an ErrorInfo on the node's execution record.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Classification attached to every node failure."""

    HANDLER = "handler"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    CANCEL_GRACE_EXCEEDED = "cancel_grace_exceeded"
    STORE_VIOLATION = "store_violation"
    MISSING_OUTPUT = "missing_output"
    UNEXPECTED = "unexpected"


class FlowrunError(Exception):
    """Base class for every error raised by flowrun."""

    pass


class ConfigError(FlowrunError):
    """
    The graph (or the run setup around it) is malformed.

    Raised before any node runs. ``errors`` lists every problem found;
    ``cycle`` holds the offending path when a dependency cycle was detected,
    first node repeated at the end (e.g. ``["a", "b", "c", "a"]``).
    """

    def __init__(self, errors: list[str] | str, cycle: list[str] | None = None):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        self.cycle = list(cycle) if cycle else None
        super().__init__("; ".join(self.errors))


class HandlerNotFoundError(ConfigError):
    """No handler is registered for a node type."""

    def __init__(self, type_name: str, available: list[str] | None = None):
        self.type_name = type_name
        known = ", ".join(sorted(available)) if available else "none"
        super().__init__(f"No handler registered for type '{type_name}' (available: {known})")


class RunStateError(FlowrunError):
    """The engine API was used out of order (e.g. starting a run twice)."""

    pass


class NodeError(FlowrunError):
    """A classified failure of one node attempt."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class HandlerError(NodeError):
    """
    Raised by a handler to report failure.

    The handler decides whether the failure is worth retrying: a transient
    network error is retryable, malformed upstream data is not.
    """

    kind = ErrorKind.HANDLER

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class NodeTimeoutError(NodeError):
    """The handler did not complete within the attempt's timeout."""

    kind = ErrorKind.TIMEOUT
    retryable = True

    def __init__(self, node_id: str, timeout: float):
        self.node_id = node_id
        self.timeout = timeout
        super().__init__(f"Node '{node_id}' timed out after {timeout:g}s")


class CancellationError(NodeError):
    """The run was cancelled while the node was in flight."""

    kind = ErrorKind.CANCELLED
    retryable = False


class StoreViolation(NodeError):
    """A write broke the state store's write-once or declared-port rules."""

    kind = ErrorKind.STORE_VIOLATION
    retryable = False

    def __init__(self, node_id: str, port: str, reason: str):
        self.node_id = node_id
        self.port = port
        super().__init__(f"Store violation on '{node_id}.{port}': {reason}")


class MissingOutputError(NodeError):
    """The handler succeeded but left declared output ports unset."""

    kind = ErrorKind.MISSING_OUTPUT
    retryable = False

    def __init__(self, node_id: str, missing: list[str]):
        self.node_id = node_id
        self.missing = list(missing)
        super().__init__(f"Node '{node_id}' did not produce declared outputs: {self.missing}")


class CancelGraceExceededError(NodeError):
    """The handler kept running past the cancellation grace period."""

    kind = ErrorKind.CANCEL_GRACE_EXCEEDED
    retryable = False

    def __init__(self, node_id: str, grace_period: float):
        self.node_id = node_id
        super().__init__(
            f"Node '{node_id}' ignored cancellation for {grace_period:g}s and was aborted"
        )
