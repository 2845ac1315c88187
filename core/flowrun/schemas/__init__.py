"""Schemas for run records and reports."""

from flowrun.schemas.run import (
    TERMINAL_STATUSES,
    ErrorInfo,
    NodeExecutionRecord,
    NodeStatus,
    RunReport,
    RunStatus,
)

__all__ = [
    "ErrorInfo",
    "NodeExecutionRecord",
    "NodeStatus",
    "RunReport",
    "RunStatus",
    "TERMINAL_STATUSES",
]
