"""
Lifecycle Event Stream.

Every execution publishes an ordered sequence of typed events:

    start, step*, (finish | error)

The stream keeps a per-execution state machine and rejects any event that
would break that shape. Accepted events are appended to an in-memory log and
fanned out to subscriptions.

Concurrency model:
  - emit() is synchronous and never blocks: subscriptions are unbounded
    asyncio queues fed with put_nowait
  - A subscription is an async iterator; per-execution subscriptions end after
    that execution's terminal event, merged ones when the stream closes
  - Sinks are plain callables fed by their own dispatcher task; sink
    exceptions are logged but do not propagate
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Callable, Coroutine, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter

from subswarm.errors import EventSequenceError
from subswarm.generation import GenerationResult, ToolCallRecord
from subswarm.models import ErrorKind
from subswarm.state import utcnow

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Event Definitions
# ---------------------------------------------------------------------------


class _BaseEvent(BaseModel):
    execution_id: str
    subagent_type: str = ""
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @property
    def is_terminal(self) -> bool:
        return False


class StartEvent(_BaseEvent):
    """The execution was admitted (or is being accounted for on cancellation)."""

    type: Literal["start"] = "start"
    prompt: str = ""


class StepEvent(_BaseEvent):
    """One unit of partial progress reported by the generator."""

    type: Literal["step"] = "step"
    step_number: int
    text: str = ""
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class FinishEvent(_BaseEvent):
    """The generator returned normally."""

    type: Literal["finish"] = "finish"
    success: bool = True
    summary: str = ""
    steps: int = 0
    duration_seconds: float = 0.0
    finish_reason: str = "stop"
    result: Optional[GenerationResult] = None

    @property
    def is_terminal(self) -> bool:
        return True


class ErrorEvent(_BaseEvent):
    """The execution failed, timed out or was cancelled."""

    type: Literal["error"] = "error"
    kind: ErrorKind
    message: str
    step_number: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return True


SubagentEvent = Annotated[
    Union[StartEvent, StepEvent, FinishEvent, ErrorEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[SubagentEvent] = TypeAdapter(SubagentEvent)


def parse_event(data: dict[str, Any]) -> SubagentEvent:
    """Rebuild a typed event from its ``model_dump()`` form."""
    return _event_adapter.validate_python(data)


# Type alias for sinks: sync or async callables accepting one event.
EventSink = Callable[[SubagentEvent], Any] | Callable[[SubagentEvent], Coroutine[Any, Any, Any]]


# ---------------------------------------------------------------------------
# Per-execution state machine
# ---------------------------------------------------------------------------


class ExecutionState(str, Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    RUNNING = "running"
    FINISHED = "finished"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.FINISHED, ExecutionState.ERRORED)


_TRANSITIONS: dict[tuple[ExecutionState, str], ExecutionState] = {
    (ExecutionState.NOT_STARTED, "start"): ExecutionState.STARTED,
    (ExecutionState.STARTED, "step"): ExecutionState.RUNNING,
    (ExecutionState.RUNNING, "step"): ExecutionState.RUNNING,
    (ExecutionState.STARTED, "finish"): ExecutionState.FINISHED,
    (ExecutionState.RUNNING, "finish"): ExecutionState.FINISHED,
    (ExecutionState.STARTED, "error"): ExecutionState.ERRORED,
    (ExecutionState.RUNNING, "error"): ExecutionState.ERRORED,
}


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

_SENTINEL = object()


class EventSubscription:
    """An async iterator over events, starting at the point of subscription."""

    def __init__(self, stream: "LifecycleEventStream", execution_id: Optional[str] = None) -> None:
        self.sub_id = uuid.uuid4().hex[:12]
        self.execution_id = execution_id
        self._stream = stream
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._exhausted = False

    def matches(self, event: SubagentEvent) -> bool:
        return self.execution_id is None or event.execution_id == self.execution_id

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: SubagentEvent) -> None:
        if self._closed or not self.matches(event):
            return
        self._queue.put_nowait(event)
        if self.execution_id is not None and event.is_terminal:
            self.close()

    def close(self) -> None:
        """Stop receiving events. Already queued events can still be consumed."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_SENTINEL)
        self._stream._discard(self)

    def drain(self) -> list[SubagentEvent]:
        """Return every queued event without waiting."""
        events: list[SubagentEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _SENTINEL:
                self._exhausted = True
                break
            events.append(item)
        return events

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> SubagentEvent:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _SENTINEL:
            self._exhausted = True
            raise StopAsyncIteration
        return item


class _Sink:
    """Internal sink record: a handler and the subscription that feeds it."""

    __slots__ = ("sink_id", "handler", "subscription", "task")

    def __init__(self, handler: EventSink, subscription: EventSubscription) -> None:
        self.sink_id = subscription.sub_id
        self.handler = handler
        self.subscription = subscription
        self.task: asyncio.Task[None] | None = None


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------


class LifecycleEventStream:
    """Ordered, validated event log with async subscriptions and sinks.

    The log and the per-execution states are kept for the life of the stream.
    They back replay and the check that an execution id is never reused, so a
    long-lived stream grows with every execution it has seen. Create a fresh
    stream when that history is no longer wanted.
    """

    def __init__(self, sink_drain_timeout: float = 5.0) -> None:
        self._log: list[SubagentEvent] = []
        self._states: dict[str, ExecutionState] = {}
        self._subscriptions: list[EventSubscription] = []
        self._sinks: dict[str, _Sink] = {}
        self._sink_drain_timeout = sink_drain_timeout
        self._closed = False

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    def emit(self, event: SubagentEvent) -> None:
        """Validate *event* against its execution's state and publish it.

        Raises ``EventSequenceError`` for an out-of-order event; such events
        are neither logged nor delivered.
        """
        if self._closed:
            raise RuntimeError("emit called on a closed LifecycleEventStream")

        current = self._states.get(event.execution_id, ExecutionState.NOT_STARTED)
        following = _TRANSITIONS.get((current, event.type))
        if following is None:
            logger.warning(
                "events.illegal_transition",
                execution_id=event.execution_id,
                state=current.value,
                event_type=event.type,
            )
            raise EventSequenceError(event.execution_id, current.value, event.type)

        self._states[event.execution_id] = following
        self._log.append(event)
        for subscription in list(self._subscriptions):
            subscription._offer(event)
        self._start_pending_sinks()

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    def subscribe(
        self,
        execution_id: Optional[str] = None,
        *,
        replay: bool = False,
    ) -> EventSubscription:
        """Subscribe to one execution's events, or to all of them.

        With ``replay=True`` the already emitted events are queued first.
        """
        subscription = EventSubscription(self, execution_id)
        if self._closed:
            subscription.close()
            return subscription

        self._subscriptions.append(subscription)
        if replay:
            for event in self._log:
                subscription._offer(event)
                if subscription.closed:
                    break
        elif execution_id is not None and self.is_terminal(execution_id):
            subscription.close()
        logger.debug("events.subscribed", execution_id=execution_id, sub_id=subscription.sub_id)
        return subscription

    def _discard(self, subscription: EventSubscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------------

    def add_sink(self, handler: EventSink, execution_id: Optional[str] = None) -> str:
        """Feed every subsequent event to *handler*. Returns a sink id."""
        sink = _Sink(handler, self.subscribe(execution_id))
        self._sinks[sink.sink_id] = sink
        self._start_pending_sinks()
        return sink.sink_id

    def remove_sink(self, sink_id: str) -> None:
        sink = self._sinks.pop(sink_id, None)
        if sink is not None:
            sink.subscription.close()

    def _start_pending_sinks(self) -> None:
        pending = [s for s in self._sinks.values() if s.task is None]
        if not pending:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; events stay queued until the next emit on a loop.
            return
        for sink in pending:
            sink.task = asyncio.create_task(
                self._run_sink(sink), name=f"event-sink-{sink.sink_id}"
            )

    async def _run_sink(self, sink: _Sink) -> None:
        async for event in sink.subscription:
            await self._invoke_sink(sink, event)

    @staticmethod
    async def _invoke_sink(sink: _Sink, event: SubagentEvent) -> None:
        """Invoke a sink with exception isolation."""
        try:
            result = sink.handler(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.error(
                "events.sink_error",
                sink_id=sink.sink_id,
                execution_id=event.execution_id,
                event_type=event.type,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close every subscription and wait for sinks to drain."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription.close()
        self._start_pending_sinks()

        tasks = [s.task for s in self._sinks.values() if s.task is not None]
        if tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=self._sink_drain_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("events.sink_drain_timeout", timeout=self._sink_drain_timeout)
        self._sinks.clear()
        logger.debug("events.closed", events=len(self._log))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def state(self, execution_id: str) -> ExecutionState:
        return self._states.get(execution_id, ExecutionState.NOT_STARTED)

    def is_terminal(self, execution_id: str) -> bool:
        return self.state(execution_id).is_terminal

    def events(self, execution_id: Optional[str] = None) -> list[SubagentEvent]:
        """The emitted log, optionally restricted to one execution."""
        if execution_id is None:
            return list(self._log)
        return [e for e in self._log if e.execution_id == execution_id]

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def is_closed(self) -> bool:
        return self._closed
