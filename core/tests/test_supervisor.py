"""
Tests for single-node supervision: attempts, timeouts and failure classification.
"""

import asyncio

import pytest

from flowrun.config import RetryPolicy, RunSettings
from flowrun.errors import ErrorKind, HandlerError
from flowrun.graph import GraphSpec, NodeSpec, validate_graph
from flowrun.runtime.cancellation import CancelToken
from flowrun.runtime.event_bus import EventBus, EventType
from flowrun.runtime.state_store import StateStore
from flowrun.runtime.supervisor import ExecutionSupervisor, compute_backoff
from flowrun.schemas.run import NodeExecutionRecord, NodeStatus


def fast_settings(**kwargs):
    return RunSettings(
        default_timeout=kwargs.pop("default_timeout", 5),
        default_retry_policy=RetryPolicy(base_delay=0, max_delay=0, **kwargs),
        cancel_grace_period=0.05,
    )


class Harness:
    """One node, one store, one supervisor."""

    def __init__(self, handler, settings=None, **node_kwargs):
        node_kwargs.setdefault("outputs", {"out": "any"})
        self.node = NodeSpec(id="n", node_type="fake", **node_kwargs)
        validated = validate_graph(GraphSpec(id="g", nodes=[self.node]))
        self.store = StateStore(validated)
        self.bus = EventBus()
        self.token = CancelToken()
        self.record = NodeExecutionRecord(node_id="n")
        self.supervisor = ExecutionSupervisor(
            run_id="run-1",
            store=self.store,
            handlers={"fake": handler},
            settings=settings or fast_settings(),
            event_bus=self.bus,
            cancel=self.token,
        )

    async def supervise(self):
        return await self.supervisor.supervise(self.node, self.record)


# ---- Fake handlers ----


class FlakyHandler:
    """Fails with a retryable error ``failures`` times, then succeeds."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or HandlerError("transient")
        self.calls = 0

    async def execute(self, inputs, meta, cancel):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return {"out": self.calls}


class SlowFirstHandler:
    def __init__(self):
        self.calls = 0

    async def execute(self, inputs, meta, cancel):
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(10)
        return {"out": "fast"}


class ReturnsHandler:
    def __init__(self, output):
        self.output = output
        self.calls = 0

    async def execute(self, inputs, meta, cancel):
        self.calls += 1
        return self.output


class MutatingHandler:
    def __init__(self):
        self.seen = []

    async def execute(self, inputs, meta, cancel):
        self.seen.append(dict(inputs))
        inputs["x"] = "mutated"
        if len(self.seen) == 1:
            raise HandlerError("again")
        return {"out": None}


class SelfCancellingHandler:
    """Raises CancelledError from inside the handler, optionally after cancelling the run."""

    def __init__(self, cancel_run=False):
        self.cancel_run = cancel_run
        self.calls = 0

    async def execute(self, inputs, meta, cancel):
        self.calls += 1
        if self.cancel_run:
            cancel.cancel("shutdown")
        raise asyncio.CancelledError()


# ---- Backoff ----


def test_backoff_doubles_and_caps():
    policy = RetryPolicy(base_delay=1, max_delay=30, jitter=0)

    delays = [compute_backoff(policy, attempt) for attempt in (1, 2, 3, 6, 10)]

    assert delays == [1, 2, 4, 30, 30]


def test_backoff_stays_capped_for_huge_attempt_numbers():
    policy = RetryPolicy(base_delay=1, max_delay=30, jitter=0)

    assert compute_backoff(policy, 2000) == 30
    assert compute_backoff(RetryPolicy(base_delay=0, max_delay=0), 5000) == 0


@pytest.mark.asyncio
async def test_many_retries_run_every_attempt():
    flaky = FlakyHandler(failures=10**6)
    h = Harness(flaky, retries=1100)

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.FAILED
    assert outcome.attempts == 1101
    assert flaky.calls == 1101
    assert outcome.error.kind == ErrorKind.HANDLER


def test_backoff_jitter_only_reduces_delay():
    policy = RetryPolicy(base_delay=4, max_delay=30, jitter=0.5)

    assert compute_backoff(policy, 1, rand=lambda: 0.0) == 4
    assert compute_backoff(policy, 1, rand=lambda: 1.0) == 2


# ---- Attempts ----


@pytest.mark.asyncio
async def test_success_writes_outputs():
    h = Harness(ReturnsHandler({"out": 7}))

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.SUCCEEDED
    assert outcome.attempts == 1
    assert h.store.outputs_for("n") == {"out": 7}


@pytest.mark.asyncio
async def test_retries_bound_attempts():
    handler = FlakyHandler(failures=100)
    h = Harness(handler, retries=2)

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.FAILED
    assert outcome.attempts == 3
    assert handler.calls == 3
    assert outcome.error.kind == ErrorKind.HANDLER
    assert len(h.bus.get_history(event_type=EventType.NODE_RETRYING)) == 2


@pytest.mark.asyncio
async def test_retry_policy_used_when_node_sets_no_retries():
    handler = FlakyHandler(failures=2)
    h = Harness(handler, settings=fast_settings(max_attempts=3))

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.SUCCEEDED
    assert outcome.attempts == 3
    assert h.record.last_error.attempt == 2


@pytest.mark.asyncio
async def test_non_retryable_handler_error_fails_immediately():
    handler = FlakyHandler(failures=1, error=HandlerError("bad data", retryable=False))
    h = Harness(handler, retries=5)

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.FAILED
    assert handler.calls == 1
    assert outcome.error.retryable is False


@pytest.mark.asyncio
async def test_unexpected_exception_is_retried():
    handler = FlakyHandler(failures=1, error=ValueError("surprise"))
    h = Harness(handler, retries=1)

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.SUCCEEDED
    assert h.record.last_error.kind == ErrorKind.UNEXPECTED
    assert "ValueError: surprise" in h.record.last_error.message


@pytest.mark.asyncio
async def test_timeout_is_per_attempt():
    handler = SlowFirstHandler()
    h = Harness(handler, retries=1, timeout=0.05)

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.SUCCEEDED
    assert outcome.attempts == 2
    assert h.record.last_error.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_missing_output_is_not_retried():
    handler = ReturnsHandler({})
    h = Harness(handler, retries=3)

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.FAILED
    assert outcome.error.kind == ErrorKind.MISSING_OUTPUT
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_undeclared_output_is_store_violation():
    h = Harness(ReturnsHandler({"out": 1, "extra": 2}), retries=3)

    outcome = await h.supervise()

    assert outcome.status == NodeStatus.FAILED
    assert outcome.error.kind == ErrorKind.STORE_VIOLATION
    assert h.store.snapshot() == {}


@pytest.mark.asyncio
async def test_each_attempt_gets_fresh_inputs():
    handler = MutatingHandler()
    h = Harness(handler, retries=1, inputs={"x": "original"})

    await h.supervise()

    assert [seen["x"] for seen in handler.seen] == ["original", "original"]


@pytest.mark.asyncio
async def test_cancel_during_backoff_skips_node():
    handler = FlakyHandler(failures=100)
    settings = RunSettings(default_retry_policy=RetryPolicy(base_delay=10, max_delay=10, jitter=0))
    h = Harness(handler, settings=settings, retries=3)

    async def cancel_on_retry(event):
        h.token.cancel("shutdown")

    h.bus.subscribe([EventType.NODE_RETRYING], cancel_on_retry)
    outcome = await asyncio.wait_for(h.supervise(), timeout=2)

    assert outcome.status == NodeStatus.SKIPPED
    assert outcome.error.kind == ErrorKind.CANCELLED
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_handler_raising_cancelled_error_fails_without_retry():
    handler = SelfCancellingHandler()
    h = Harness(handler, retries=3)

    outcome = await asyncio.wait_for(h.supervise(), timeout=2)

    assert outcome.status == NodeStatus.FAILED
    assert outcome.error.kind == ErrorKind.UNEXPECTED
    assert outcome.error.retryable is False
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_handler_raising_cancelled_error_after_run_cancel_is_skipped():
    handler = SelfCancellingHandler(cancel_run=True)
    h = Harness(handler, retries=3)

    outcome = await asyncio.wait_for(h.supervise(), timeout=2)

    assert outcome.status == NodeStatus.SKIPPED
    assert outcome.error.kind == ErrorKind.CANCELLED
    assert handler.calls == 1
