"""
Execution Supervisor - Runs one node to a terminal outcome.

For each dispatched node the supervisor:
1. Resolves the node's inputs from the state store
2. Invokes the handler under a fresh per-attempt timeout
3. Classifies any failure (handler, timeout, cancellation, store violation)
4. Retries retryable failures with jittered exponential backoff
5. Writes all declared outputs on success, or none at all

Retries are invisible to the scheduler: it only sees the final NodeOutcome.
Handlers may run more than once for the same node, so the engine offers
at-least-once execution and handlers own the idempotence of their side effects.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from flowrun.config import RetryPolicy, RunSettings
from flowrun.errors import (
    CancelGraceExceededError,
    CancellationError,
    ErrorKind,
    MissingOutputError,
    NodeError,
    NodeTimeoutError,
    StoreViolation,
)
from flowrun.graph.node import NodeSpec
from flowrun.graph.validator import validate_outputs
from flowrun.observability import set_trace_context
from flowrun.runner.handler_registry import TaskHandler
from flowrun.runtime.cancellation import CancelToken
from flowrun.runtime.event_bus import EventBus
from flowrun.runtime.state_store import StateStore
from flowrun.schemas.run import ErrorInfo, NodeExecutionRecord, NodeStatus

logger = logging.getLogger(__name__)

# 2**62 still converts to a float; larger exponents overflow
MAX_BACKOFF_EXPONENT = 62


@dataclass
class NodeOutcome:
    """Terminal result of supervising one node."""

    node_id: str
    status: NodeStatus
    attempts: int
    error: ErrorInfo | None = None
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == NodeStatus.SUCCEEDED


def compute_backoff(
    policy: RetryPolicy,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before the attempt after ``attempt`` (1-based).

    ``base_delay * 2**(attempt - 1)`` capped at ``max_delay``, then reduced
    by a random fraction of up to ``jitter`` so that many nodes failing
    together don't retry in lockstep.
    """
    exponent = min(attempt - 1, MAX_BACKOFF_EXPONENT)
    delay = min(policy.max_delay, policy.base_delay * (2**exponent))
    return delay * (1 - policy.jitter * rand())


class ExecutionSupervisor:
    """
    Wraps handler invocation with timeout, retry and failure classification.

    One supervisor serves every node of a run. It mutates only the
    non-terminal fields of a node's record (running/retrying, attempt count,
    last error); terminal status is applied by the scheduler from the
    returned NodeOutcome.
    """

    def __init__(
        self,
        run_id: str,
        store: StateStore,
        handlers: dict[str, TaskHandler],
        settings: RunSettings,
        event_bus: EventBus,
        cancel: CancelToken,
        rand: Callable[[], float] = random.random,
    ):
        """
        Args:
            run_id: Run the supervised nodes belong to
            store: The run's state store
            handlers: node_type -> handler, resolved before the run started
            settings: Run-level timeout and retry defaults
            event_bus: Receives node_started / node_retrying events
            cancel: The run's cancel token
            rand: Jitter source, injectable for deterministic tests
        """
        self.run_id = run_id
        self.store = store
        self.handlers = handlers
        self.settings = settings
        self.event_bus = event_bus
        self.cancel = cancel
        self._rand = rand

    def max_attempts(self, node: NodeSpec) -> int:
        if node.retries is not None:
            return node.retries + 1
        return self.settings.default_retry_policy.max_attempts

    def timeout(self, node: NodeSpec) -> float:
        return node.timeout or self.settings.default_timeout

    async def supervise(self, node: NodeSpec, record: NodeExecutionRecord) -> NodeOutcome:
        """Run a node through as many attempts as it needs. Never raises for node failures."""
        set_trace_context(node_id=node.id)
        handler = self.handlers[node.node_type]
        max_attempts = self.max_attempts(node)
        timeout = self.timeout(node)

        attempt = 0
        while True:
            attempt += 1

            if self.cancel.is_cancelled:
                return self._cancelled(node, attempt - 1, self._cancel_error())

            started_at = datetime.now()
            record.status = NodeStatus.RUNNING
            record.attempts = attempt
            if record.started_at is None:
                record.started_at = started_at
            set_trace_context(attempt=attempt)

            await self.event_bus.emit_node_started(
                run_id=self.run_id,
                node_id=node.id,
                attempt=attempt,
                started_at=started_at,
            )
            logger.info(
                f"▶ {node.label}: attempt {attempt}/{max_attempts}",
                extra={"event": "node_started", "node_id": node.id, "attempt": attempt},
            )

            try:
                # Fresh copies per attempt: a handler mutating its inputs
                # must not affect the next attempt
                inputs = self.store.resolve_inputs(node)
                output = await self._run_attempt(node, handler, inputs, dict(node.meta), timeout)
                await self._accept_output(node, output)
            except CancellationError as e:
                return self._cancelled(node, attempt, e)
            except NodeError as e:
                error = ErrorInfo.from_error(e, attempt)
            except Exception as e:
                logger.exception(
                    f"✗ {node.label}: handler raised {type(e).__name__}",
                    extra={"node_id": node.id, "attempt": attempt},
                )
                error = ErrorInfo(
                    kind=ErrorKind.UNEXPECTED,
                    message=f"{type(e).__name__}: {e}",
                    retryable=True,
                    attempt=attempt,
                )
            else:
                logger.info(
                    f"✓ {node.label}: succeeded on attempt {attempt}",
                    extra={"event": "node_succeeded", "node_id": node.id, "attempt": attempt},
                )
                return NodeOutcome(
                    node_id=node.id,
                    status=NodeStatus.SUCCEEDED,
                    attempts=attempt,
                    finished_at=datetime.now(),
                )

            record.last_error = error

            if not error.retryable or attempt >= max_attempts:
                reason = "non-retryable" if not error.retryable else "retries exhausted"
                logger.error(
                    f"✗ {node.label}: failed after {attempt} attempt(s), {reason}: {error.message}",
                    extra={
                        "event": "node_failed",
                        "node_id": node.id,
                        "attempt": attempt,
                        "error_kind": error.kind.value,
                    },
                )
                return NodeOutcome(
                    node_id=node.id,
                    status=NodeStatus.FAILED,
                    attempts=attempt,
                    error=error,
                    finished_at=datetime.now(),
                )

            delay = compute_backoff(
                self.settings.default_retry_policy,
                attempt,
                self._rand,
            )
            record.status = NodeStatus.RETRYING
            await self.event_bus.emit_node_retrying(
                run_id=self.run_id,
                node_id=node.id,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                error=error.message,
                error_kind=error.kind.value,
            )
            logger.warning(
                f"↻ {node.label}: {error.kind.value} on attempt {attempt}/{max_attempts}, "
                f"retrying in {delay:.2f}s",
                extra={"event": "node_retrying", "node_id": node.id, "attempt": attempt},
            )

            if await self.cancel.sleep(delay):
                return self._cancelled(node, attempt, self._cancel_error())

    async def _run_attempt(
        self,
        node: NodeSpec,
        handler: TaskHandler,
        inputs: dict,
        meta: dict,
        timeout: float,
    ) -> object:
        """
        Invoke the handler once.

        Raises:
            NodeTimeoutError: the attempt exceeded its timeout
            NodeError: the handler raised CancelledError without the run
                being cancelled
            CancellationError: the run was cancelled and the handler exited
                within the grace period
            CancelGraceExceededError: the run was cancelled and the handler
                kept running past the grace period
            Exception: whatever the handler raised
        """
        task = asyncio.create_task(handler.execute(inputs, meta, self.cancel))
        cancel_wait = asyncio.create_task(self.cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if task in done:
            if task.cancelled():
                # The handler raised CancelledError itself
                if self.cancel.is_cancelled:
                    raise self._cancel_error()
                raise NodeError(f"Handler for '{node.id}' was cancelled from inside")
            return task.result()

        if cancel_wait in done:
            grace = self.settings.cancel_grace_period
            done, _ = await asyncio.wait({task}, timeout=grace)
            if task in done:
                self._discard(node, task)
                raise self._cancel_error()
            await self._abort(node, task)
            raise CancelGraceExceededError(node.id, grace)

        await self._abort(node, task)
        raise NodeTimeoutError(node.id, timeout)

    async def _abort(self, node: NodeSpec, task: asyncio.Task) -> None:
        """Hard-cancel an abandoned attempt, waiting at most the grace period for it to unwind."""
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.settings.cancel_grace_period)
        if task in done:
            self._discard(node, task)
        else:
            logger.warning(f"{node.label}: abandoned attempt did not unwind after cancel")

    def _discard(self, node: NodeSpec, task: asyncio.Task) -> None:
        """Consume the result of an attempt that no longer counts."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, CancellationError):
            logger.debug(f"{node.label}: discarded attempt error after cancellation: {error!r}")

    async def _accept_output(self, node: NodeSpec, output: object) -> None:
        """
        Check the handler's output and write it to the store.

        Raises:
            StoreViolation: output contains a port the node never declared
            MissingOutputError: a declared port is absent, or output isn't a mapping
        """
        result = validate_outputs(node, output)
        if not result.success:
            if result.undeclared:
                raise StoreViolation(node.id, result.undeclared[0], "port is not a declared output")
            raise MissingOutputError(node.id, result.missing or list(node.outputs))
        await self.store.write_outputs(node.id, output)

    def _cancel_error(self) -> CancellationError:
        return CancellationError(self.cancel.reason or "Run cancelled")

    def _cancelled(self, node: NodeSpec, attempts: int, error: CancellationError) -> NodeOutcome:
        logger.info(
            f"⊘ {node.label}: cancelled",
            extra={"event": "node_cancelled", "node_id": node.id, "attempt": attempts},
        )
        return NodeOutcome(
            node_id=node.id,
            status=NodeStatus.SKIPPED,
            attempts=attempts,
            error=ErrorInfo.from_error(error, attempts),
            finished_at=datetime.now(),
        )
