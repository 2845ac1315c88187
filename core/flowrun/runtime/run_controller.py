"""
Run Controller - Owns the lifecycle of one graph run.

A Run is created from a graph, a handler registry and optional bootstrap
inputs. Everything that can be wrong with that combination is reported at
construction time as a ConfigError; once started, a run always ends in a
RunReport, whatever its nodes do.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from flowrun.config import RunSettings
from flowrun.errors import RunStateError
from flowrun.graph.edge import GraphSpec
from flowrun.graph.validator import ValidatedGraph, validate_graph
from flowrun.observability import clear_trace_context, set_trace_context
from flowrun.runner.handler_registry import HandlerRegistry, TaskHandler
from flowrun.runtime.cancellation import CancelToken
from flowrun.runtime.event_bus import EventBus, EventType, RunEvent
from flowrun.runtime.scheduler import Scheduler
from flowrun.runtime.state_store import StateStore
from flowrun.runtime.supervisor import ExecutionSupervisor
from flowrun.schemas.run import NodeExecutionRecord, NodeStatus, RunReport, RunStatus

logger = logging.getLogger(__name__)


class Run:
    """
    One execution of a graph.

    Example:
        run = Run(graph, registry, inputs={"fetch": {"url": "https://example.com"}})
        run.start()
        async for event in run.events():
            print(event.type, event.node_id)
        report = await run.wait()
    """

    def __init__(
        self,
        graph: GraphSpec | ValidatedGraph,
        registry: HandlerRegistry,
        inputs: dict[str, dict[str, Any]] | None = None,
        settings: RunSettings | None = None,
        event_bus: EventBus | None = None,
        run_id: str | None = None,
    ):
        """
        Args:
            graph: Graph to execute; validated again against ``registry``
            registry: Source of node handlers
            inputs: Bootstrap inputs, {node_id: {port: value}}
            settings: Overrides the graph's settings and the process configuration
            event_bus: Bus to publish on; a private one is created if omitted
            run_id: Explicit run id, generated if omitted

        Raises:
            ConfigError: invalid graph, unknown handler type, or invalid inputs
        """
        self.graph = validate_graph(graph, registry)
        self.run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"

        spec = self.graph.graph
        self.settings = settings if settings is not None else spec.effective_settings()

        self.handlers: dict[str, TaskHandler] = {
            node_type: registry.resolve(node_type)
            for node_type in sorted({node.node_type for node in spec.nodes})
        }

        self.store = StateStore(self.graph)
        self.store.seed(inputs)

        self.records: dict[str, NodeExecutionRecord] = {
            node_id: NodeExecutionRecord(node_id=node_id) for node_id in self.graph.order
        }
        self.event_bus = event_bus or EventBus()
        self.cancel_token = CancelToken()

        self._status = RunStatus.PENDING
        self._task: asyncio.Task[RunReport] | None = None
        self._report: RunReport | None = None
        self._done_callbacks: list[Callable[["Run"], None]] = []

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def report(self) -> RunReport | None:
        """The final report, once the run has finished."""
        return self._report

    @property
    def started(self) -> bool:
        return self._task is not None

    # === LIFECYCLE ===

    def start(self) -> None:
        """
        Begin executing in the background on the running event loop.

        Raises:
            RunStateError: the run was already started
        """
        if self._task is not None:
            raise RunStateError(f"Run {self.run_id} has already been started")
        self._status = RunStatus.RUNNING
        self._task = asyncio.create_task(self._execute(), name=self.run_id)
        for callback in self._done_callbacks:
            self._attach(callback)

    def add_done_callback(self, callback: Callable[["Run"], None]) -> None:
        """Call ``callback(run)`` once the run's task has finished, however it ended."""
        self._done_callbacks.append(callback)
        if self._task is not None:
            self._attach(callback)

    def _attach(self, callback: Callable[["Run"], None]) -> None:
        self._task.add_done_callback(lambda _: callback(self))

    async def wait(self) -> RunReport:
        """
        Wait for the run to finish.

        Raises:
            RunStateError: the run was never started
        """
        if self._task is None:
            raise RunStateError(f"Run {self.run_id} has not been started")
        return await asyncio.shield(self._task)

    async def execute(self) -> RunReport:
        """Start the run and wait for its report."""
        self.start()
        return await self.wait()

    def cancel(self, reason: str | None = None) -> None:
        """
        Request cancellation.

        No new nodes are dispatched, running handlers see the cancel token
        fire, and every node that hasn't started is skipped. Cancelling a
        finished run does nothing.
        """
        if self._report is not None:
            return
        logger.info(f"Cancellation requested for {self.run_id}: {reason or 'no reason given'}")
        self.cancel_token.cancel(reason or "Run cancelled")

    def events(self, event_types: list[EventType] | None = None) -> AsyncIterator[RunEvent]:
        """
        Iterate this run's events from the beginning, ending after the
        terminal run event.
        """
        return self.event_bus.stream(run_id=self.run_id, event_types=event_types, replay=True)

    # === EXECUTION ===

    async def _execute(self) -> RunReport:
        set_trace_context(run_id=self.run_id, graph_id=self.graph.id)
        started_at = datetime.now()
        logger.info(
            f"🚀 Starting run {self.run_id} of graph '{self.graph.id}' "
            f"({len(self.records)} nodes, concurrency {self.settings.concurrency_limit})",
            extra={"event": "run_started"},
        )
        await self.event_bus.emit_run_started(self.run_id, self.graph.id, len(self.records))

        supervisor = ExecutionSupervisor(
            run_id=self.run_id,
            store=self.store,
            handlers=self.handlers,
            settings=self.settings,
            event_bus=self.event_bus,
            cancel=self.cancel_token,
        )
        scheduler = Scheduler(
            run_id=self.run_id,
            graph=self.graph,
            supervisor=supervisor,
            records=self.records,
            event_bus=self.event_bus,
            cancel=self.cancel_token,
            concurrency_limit=self.settings.concurrency_limit,
        )

        await scheduler.run()

        report = self._build_report(started_at, cancelled=scheduler.cancelled)
        self._report = report
        self._status = report.status
        await self.event_bus.emit_run_finished(report)

        icon = {RunStatus.COMPLETED: "✓", RunStatus.FAILED: "✗"}.get(report.status, "⊘")
        logger.info(
            f"{icon} Run {self.run_id} {report.status.value}: "
            f"{len(report.succeeded)} succeeded, {len(report.failed)} failed, "
            f"{len(report.skipped)} skipped in {report.duration_ms}ms",
            extra={"event": f"run_{report.status.value}", "duration_ms": report.duration_ms},
        )
        clear_trace_context()
        return report

    def _build_report(self, started_at: datetime, cancelled: bool) -> RunReport:
        if cancelled:
            status = RunStatus.CANCELLED
        elif any(r.status == NodeStatus.FAILED for r in self.records.values()):
            status = RunStatus.FAILED
        else:
            status = RunStatus.COMPLETED

        outputs = {
            node_id: self.store.outputs_for(node_id)
            for node_id, record in self.records.items()
            if record.status == NodeStatus.SUCCEEDED
        }
        return RunReport(
            run_id=self.run_id,
            graph_id=self.graph.id,
            status=status,
            outputs=outputs,
            nodes={nid: rec.model_copy(deep=True) for nid, rec in self.records.items()},
            failures=[
                rec.model_copy(deep=True)
                for rec in self.records.values()
                if rec.status == NodeStatus.FAILED
            ],
            started_at=started_at,
            finished_at=datetime.now(),
            cancel_reason=self.cancel_token.reason if cancelled else None,
        )
