"""
Event Bus - Pub/sub stream of run and node state transitions.

Every state transition in a run is published as one RunEvent:
- Run lifecycle: started, completed, failed, cancelled
- Node lifecycle: ready, started, retrying, succeeded, failed, skipped

Consumers either subscribe a handler or iterate ``stream()``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flowrun.schemas.run import NodeExecutionRecord, RunReport

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Node lifecycle
    NODE_READY = "node_ready"
    NODE_STARTED = "node_started"
    NODE_RETRYING = "node_retrying"
    NODE_SUCCEEDED = "node_succeeded"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"


RUN_TERMINAL_EVENTS = frozenset(
    {EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED}
)


@dataclass
class RunEvent:
    """One state transition in a run."""

    type: EventType
    run_id: str
    node_id: str | None = None
    attempt: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events about this node


class EventBus:
    """
    Pub/sub event bus for run observability.

    Features:
    - Async event handling
    - Type-based subscriptions
    - Run/node filtering
    - Event history for debugging and replay

    Example:
        bus = EventBus()

        async def on_failed(event: RunEvent):
            print(f"{event.node_id} failed: {event.data['error']}")

        bus.subscribe(event_types=[EventType.NODE_FAILED], handler=on_failed)

        async for event in bus.stream(run_id=run.run_id, replay=True):
            print(event.to_dict())
    """

    def __init__(
        self,
        max_history: int = 10000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_run: Only receive events from this run
            filter_node: Only receive events about this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: RunEvent) -> None:
        """
        Publish an event to all matching subscribers.

        History append and subscriber matching happen without yielding to
        the event loop, so a stream that replays history and then subscribes
        sees every event exactly once.
        """
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: RunEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting. Handler errors are logged."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(self, run_id: str, graph_id: str, node_count: int) -> None:
        """Emit run started event."""
        await self.publish(
            RunEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                started_at=datetime.now(),
                data={"graph_id": graph_id, "node_count": node_count},
            )
        )

    async def emit_run_finished(self, report: "RunReport") -> None:
        """Emit the terminal run event matching the report's status."""
        event_type = {
            "completed": EventType.RUN_COMPLETED,
            "failed": EventType.RUN_FAILED,
            "cancelled": EventType.RUN_CANCELLED,
        }[report.status.value]
        await self.publish(
            RunEvent(
                type=event_type,
                run_id=report.run_id,
                started_at=report.started_at,
                finished_at=report.finished_at,
                duration_ms=report.duration_ms,
                data={
                    "graph_id": report.graph_id,
                    "succeeded": report.succeeded,
                    "failed": report.failed,
                    "skipped": report.skipped,
                    "cancel_reason": report.cancel_reason,
                },
            )
        )

    async def emit_node_ready(self, run_id: str, node_id: str) -> None:
        """Emit node ready event."""
        await self.publish(RunEvent(type=EventType.NODE_READY, run_id=run_id, node_id=node_id))

    async def emit_node_started(
        self,
        run_id: str,
        node_id: str,
        attempt: int,
        started_at: datetime,
    ) -> None:
        """Emit node attempt started event."""
        await self.publish(
            RunEvent(
                type=EventType.NODE_STARTED,
                run_id=run_id,
                node_id=node_id,
                attempt=attempt,
                started_at=started_at,
            )
        )

    async def emit_node_retrying(
        self,
        run_id: str,
        node_id: str,
        attempt: int,
        max_attempts: int,
        delay: float,
        error: str,
        error_kind: str,
    ) -> None:
        """Emit node retry event. ``attempt`` is the attempt that just failed."""
        await self.publish(
            RunEvent(
                type=EventType.NODE_RETRYING,
                run_id=run_id,
                node_id=node_id,
                attempt=attempt,
                data={
                    "max_attempts": max_attempts,
                    "delay": delay,
                    "error": error,
                    "error_kind": error_kind,
                },
            )
        )

    async def emit_node_finished(self, run_id: str, record: "NodeExecutionRecord") -> None:
        """Emit node succeeded/failed/skipped event from its terminal record."""
        event_type = {
            "succeeded": EventType.NODE_SUCCEEDED,
            "failed": EventType.NODE_FAILED,
            "skipped": EventType.NODE_SKIPPED,
        }[record.status.value]

        data: dict[str, Any] = {}
        if record.last_error is not None:
            data["error"] = record.last_error.message
            data["error_kind"] = record.last_error.kind.value
            data["retryable"] = record.last_error.retryable
        if record.blocked_by:
            data["blocked_by"] = list(record.blocked_by)
            data["root_causes"] = list(record.root_causes)

        await self.publish(
            RunEvent(
                type=event_type,
                run_id=run_id,
                node_id=record.node_id,
                attempt=record.attempts,
                started_at=record.started_at,
                finished_at=record.finished_at,
                duration_ms=record.duration_ms,
                data=data,
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        if node_id:
            events = [e for e in events if e.node_id == node_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> RunEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: RunEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: RunEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_run=run_id,
            filter_node=node_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)

    async def stream(
        self,
        run_id: str | None = None,
        event_types: list[EventType] | None = None,
        replay: bool = False,
    ) -> AsyncIterator[RunEvent]:
        """
        Iterate events as they are published.

        With ``run_id`` set, iteration ends after that run's terminal event.
        With ``replay``, events already in history for the run are yielded
        first, so a consumer attaching late still sees the whole run.
        """
        types = set(event_types or EventType)
        queue: asyncio.Queue[RunEvent] = asyncio.Queue()

        async def handler(event: RunEvent) -> None:
            queue.put_nowait(event)

        # Stream must see the terminal event even if the caller filtered it out
        wanted = types | RUN_TERMINAL_EVENTS

        if replay:
            for event in self._event_history:
                if event.type in wanted and (run_id is None or event.run_id == run_id):
                    queue.put_nowait(event)

        sub_id = self.subscribe(
            event_types=list(wanted),
            handler=handler,
            filter_run=run_id,
        )
        try:
            while True:
                event = await queue.get()
                if event.type in types:
                    yield event
                if run_id is not None and event.type in RUN_TERMINAL_EVENTS:
                    return
        finally:
            self.unsubscribe(sub_id)
