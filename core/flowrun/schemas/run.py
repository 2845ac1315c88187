"""
Run Schema - Execution records and the final report of a graph run.

NodeExecutionRecord tracks one node through its lifecycle. RunReport is
what the embedding application gets back when the run is over: overall
status, the outputs of every succeeded node, and full failure detail.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field

from flowrun.errors import ErrorKind, NodeError


class NodeStatus(StrEnum):
    """Lifecycle state of a node within a run."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED})


class RunStatus(StrEnum):
    """Status of a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorInfo(BaseModel):
    """A classified node failure."""

    kind: ErrorKind
    message: str
    retryable: bool = False
    attempt: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_error(cls, error: NodeError, attempt: int) -> "ErrorInfo":
        return cls(
            kind=error.kind,
            message=error.message,
            retryable=error.retryable,
            attempt=attempt,
        )


class NodeExecutionRecord(BaseModel):
    """
    Execution state of one node.

    For skipped nodes, ``blocked_by`` lists the direct predecessors that
    failed or were skipped, and ``root_causes`` lists every failed ancestor.
    """

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    last_error: ErrorInfo | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    blocked_by: list[str] = Field(default_factory=list)
    root_causes: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class RunReport(BaseModel):
    """
    Final result of a run.

    ``status`` is ``completed`` when no node failed, ``failed`` when at least
    one node failed terminally, and ``cancelled`` when the run was cancelled.
    """

    run_id: str
    graph_id: str
    status: RunStatus
    outputs: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Outputs of succeeded nodes: {node_id: {port: value}}",
    )
    nodes: dict[str, NodeExecutionRecord] = Field(default_factory=dict)
    failures: list[NodeExecutionRecord] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancel_reason: str | None = None

    @computed_field
    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def _with_status(self, status: NodeStatus) -> list[str]:
        return sorted(nid for nid, rec in self.nodes.items() if rec.status == status)

    @property
    def succeeded(self) -> list[str]:
        return self._with_status(NodeStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_status(NodeStatus.SKIPPED)

    def summary(self) -> dict[str, Any]:
        """Timing-free view of the outcome, stable across identical runs."""
        return {
            "status": self.status.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outputs": self.outputs,
        }
