"""
Scheduler - Dispatches ready nodes and propagates outcomes through the graph.

A single coordinating loop owns every status transition:
- A node becomes READY once all of its predecessors have SUCCEEDED
- READY nodes are dispatched in (rank, node_id) order, up to the concurrency limit
- A FAILED or SKIPPED node transitively SKIPs everything downstream of it
- The loop ends when no node is running and nothing is left to dispatch

Node supervision runs in separate tasks; only the loop mutates terminal
status, so outcomes are applied in a single order no matter how the
supervisors interleave.
"""

import asyncio
import heapq
import logging
from datetime import datetime

from flowrun.errors import ErrorKind
from flowrun.graph.validator import ValidatedGraph
from flowrun.observability import set_trace_context
from flowrun.runtime.cancellation import CancelToken
from flowrun.runtime.event_bus import EventBus
from flowrun.runtime.supervisor import ExecutionSupervisor, NodeOutcome
from flowrun.schemas.run import ErrorInfo, NodeExecutionRecord, NodeStatus

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Drives one run of a validated graph to completion.

    Example:
        scheduler = Scheduler(run_id, validated, supervisor, records, bus, token, limit=4)
        await scheduler.run()
        assert all(r.is_terminal for r in records.values())
    """

    def __init__(
        self,
        run_id: str,
        graph: ValidatedGraph,
        supervisor: ExecutionSupervisor,
        records: dict[str, NodeExecutionRecord],
        event_bus: EventBus,
        cancel: CancelToken,
        concurrency_limit: int,
    ):
        self.run_id = run_id
        self.graph = graph
        self.supervisor = supervisor
        self.records = records
        self.event_bus = event_bus
        self.cancel = cancel
        self.concurrency_limit = concurrency_limit

        self._remaining = {nid: len(preds) for nid, preds in graph.predecessors.items()}
        self._ready: list[tuple[int, str]] = []
        self._running: dict[asyncio.Task, str] = {}
        self.cancelled = False

    async def run(self) -> None:
        """Run until every node is terminal."""
        for node_id in self.graph.roots():
            await self._mark_ready(node_id)

        cancel_wait = asyncio.create_task(self.cancel.wait())
        try:
            while True:
                if self.cancel.is_cancelled and not self.cancelled:
                    await self._on_cancel()

                while self._ready and len(self._running) < self.concurrency_limit:
                    _, node_id = heapq.heappop(self._ready)
                    self._dispatch(node_id)

                if not self._running:
                    break

                waiting = set(self._running)
                if not cancel_wait.done():
                    waiting.add(cancel_wait)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                finished = sorted(
                    (task for task in done if task in self._running),
                    key=lambda t: self._running[t],
                )
                for task in finished:
                    node_id = self._running.pop(task)
                    await self._finish(self._collect(node_id, task))
        except asyncio.CancelledError:
            for task in self._running:
                task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        self._attribute_skips()

    # === DISPATCH ===

    async def _mark_ready(self, node_id: str) -> None:
        self.records[node_id].status = NodeStatus.READY
        heapq.heappush(self._ready, (self.graph.ranks[node_id], node_id))
        await self.event_bus.emit_node_ready(self.run_id, node_id)
        logger.debug(f"{node_id} is ready", extra={"event": "node_ready", "node_id": node_id})

    def _dispatch(self, node_id: str) -> None:
        node = self.graph.node(node_id)
        record = self.records[node_id]
        # Tasks copy the current context; supervisor trace fields stay local
        task = asyncio.create_task(
            self.supervisor.supervise(node, record),
            name=f"{self.run_id}:{node_id}",
        )
        self._running[task] = node_id

    def _collect(self, node_id: str, task: asyncio.Task) -> NodeOutcome:
        if task.cancelled():
            logger.error(f"Supervisor for {node_id} was cancelled", extra={"node_id": node_id})
            return self._crashed(node_id, "Supervisor task was cancelled")
        try:
            return task.result()
        except Exception as e:
            logger.exception(f"Supervisor for {node_id} crashed", extra={"node_id": node_id})
            return self._crashed(node_id, f"{type(e).__name__}: {e}")

    def _crashed(self, node_id: str, message: str) -> NodeOutcome:
        attempts = self.records[node_id].attempts
        return NodeOutcome(
            node_id=node_id,
            status=NodeStatus.FAILED,
            attempts=attempts,
            error=ErrorInfo(
                kind=ErrorKind.UNEXPECTED,
                message=message,
                retryable=False,
                attempt=attempts,
            ),
            finished_at=datetime.now(),
        )

    # === PROPAGATION ===

    async def _finish(self, outcome: NodeOutcome) -> None:
        """Apply a node's terminal outcome and update its successors."""
        record = self.records[outcome.node_id]
        record.status = outcome.status
        record.attempts = outcome.attempts
        record.finished_at = outcome.finished_at or datetime.now()
        if outcome.error is not None:
            record.last_error = outcome.error
        await self.event_bus.emit_node_finished(self.run_id, record)

        if outcome.success:
            for child in sorted(self.graph.successors[outcome.node_id]):
                self._remaining[child] -= 1
                if self._remaining[child] == 0 and self.records[child].status == NodeStatus.PENDING:
                    await self._mark_ready(child)
        else:
            await self._skip_downstream(outcome.node_id)

    async def _skip_downstream(self, node_id: str) -> None:
        """Skip every non-terminal node reachable from ``node_id``."""
        stack = sorted(self.graph.successors[node_id], reverse=True)
        while stack:
            current = stack.pop()
            record = self.records[current]
            if record.is_terminal:
                continue
            await self._skip(current, None)
            stack.extend(sorted(self.graph.successors[current], reverse=True))

    async def _skip(self, node_id: str, error: ErrorInfo | None) -> None:
        record = self.records[node_id]
        record.status = NodeStatus.SKIPPED
        record.finished_at = datetime.now()
        if error is not None:
            record.last_error = error
        # Provisional attribution for the event; _attribute_skips finalizes it
        record.blocked_by = self._failed_or_skipped_predecessors(node_id)
        record.root_causes = self._failed_ancestors(node_id)
        await self.event_bus.emit_node_finished(self.run_id, record)
        logger.info(
            f"⊘ {node_id}: skipped" + (f" (blocked by {record.blocked_by})" if record.blocked_by else ""),
            extra={"event": "node_skipped", "node_id": node_id},
        )

    async def _on_cancel(self) -> None:
        """Stop dispatching and skip everything not yet running."""
        self.cancelled = True
        reason = self.cancel.reason or "Run cancelled"
        set_trace_context(cancel_reason=reason)
        logger.warning(f"Run {self.run_id} cancelled: {reason}", extra={"event": "run_cancelled"})

        self._ready.clear()
        for node_id in self.graph.order:
            record = self.records[node_id]
            if record.status in (NodeStatus.PENDING, NodeStatus.READY):
                await self._skip(
                    node_id,
                    ErrorInfo(kind=ErrorKind.CANCELLED, message=reason, retryable=False),
                )

    # === ATTRIBUTION ===

    def _failed_or_skipped_predecessors(self, node_id: str) -> list[str]:
        return sorted(
            p
            for p in self.graph.predecessors[node_id]
            if self.records[p].status in (NodeStatus.FAILED, NodeStatus.SKIPPED)
        )

    def _failed_ancestors(self, node_id: str) -> list[str]:
        return sorted(
            a for a in self.graph.ancestors(node_id) if self.records[a].status == NodeStatus.FAILED
        )

    def _attribute_skips(self) -> None:
        """
        Recompute skip attribution once every node is terminal.

        A node skipped early, on behalf of its first failed parent, may have
        more failed ancestors by the end of the run.
        """
        for node_id in self.graph.order:
            record = self.records[node_id]
            if record.status == NodeStatus.SKIPPED:
                record.blocked_by = self._failed_or_skipped_predecessors(node_id)
                record.root_causes = self._failed_ancestors(node_id)
