"""Runtime: state store, scheduling, supervision and run lifecycle."""

from flowrun.runtime.cancellation import CancelToken
from flowrun.runtime.engine import WorkflowEngine
from flowrun.runtime.event_bus import EventBus, EventType, RunEvent
from flowrun.runtime.run_controller import Run
from flowrun.runtime.scheduler import Scheduler
from flowrun.runtime.state_store import StateStore
from flowrun.runtime.supervisor import ExecutionSupervisor, NodeOutcome, compute_backoff

__all__ = [
    "CancelToken",
    "EventBus",
    "EventType",
    "ExecutionSupervisor",
    "NodeOutcome",
    "Run",
    "RunEvent",
    "Scheduler",
    "StateStore",
    "WorkflowEngine",
    "compute_backoff",
]
