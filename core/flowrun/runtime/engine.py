"""
Workflow Engine - Entry point for embedding flowrun in an application.

Holds the handler registry, default settings and a shared event bus, and
creates runs from graphs:

    engine = WorkflowEngine(registry)
    report = await engine.run(graph, inputs={"fetch": {"url": url}})
    if report.status != RunStatus.COMPLETED:
        for record in report.failures:
            print(record.node_id, record.last_error.message)
"""

import logging
from typing import Any

from flowrun.config import RunSettings
from flowrun.graph.edge import GraphSpec
from flowrun.graph.validator import ValidatedGraph, validate_graph
from flowrun.runner.handler_registry import HandlerRegistry
from flowrun.runtime.event_bus import EventBus
from flowrun.runtime.run_controller import Run
from flowrun.schemas.run import RunReport

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Creates and executes runs against one handler registry."""

    def __init__(
        self,
        registry: HandlerRegistry,
        settings: RunSettings | None = None,
        event_bus: EventBus | None = None,
    ):
        self.registry = registry
        self.settings = settings
        self.event_bus = event_bus or EventBus()
        self._runs: dict[str, Run] = {}

    def validate(self, graph: GraphSpec | ValidatedGraph) -> ValidatedGraph:
        """
        Validate a graph against this engine's handlers.

        Raises:
            ConfigError: the graph is malformed or uses an unknown node type
        """
        return validate_graph(graph, self.registry)

    def create_run(
        self,
        graph: GraphSpec | ValidatedGraph,
        inputs: dict[str, dict[str, Any]] | None = None,
        run_id: str | None = None,
    ) -> Run:
        """Create a run without starting it."""
        run = Run(
            graph,
            self.registry,
            inputs=inputs,
            settings=self.settings,
            event_bus=self.event_bus,
            run_id=run_id,
        )
        self._runs[run.run_id] = run
        run.add_done_callback(self._forget)
        return run

    def _forget(self, run: Run) -> None:
        self._runs.pop(run.run_id, None)

    async def run(
        self,
        graph: GraphSpec | ValidatedGraph,
        inputs: dict[str, dict[str, Any]] | None = None,
    ) -> RunReport:
        """Validate, execute and report on a graph in one call."""
        return await self.create_run(graph, inputs).execute()

    def get_run(self, run_id: str) -> Run | None:
        """A run that hasn't finished yet. Finished runs are dropped; keep their reports."""
        return self._runs.get(run_id)

    def list_runs(self) -> list[str]:
        return list(self._runs)

    async def close(self) -> None:
        """Cancel unfinished runs and release handler resources."""
        # Finishing runs remove themselves from _runs
        for run in list(self._runs.values()):
            if run.started and run.report is None:
                run.cancel("Engine closed")
                await run.wait()
        await self.registry.close()
        logger.debug("Workflow engine closed")

    async def __aenter__(self) -> "WorkflowEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
