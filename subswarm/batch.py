"""
Batch entry points: isolate, execute and merge in one call.

``run_subagent_batch`` is the one-shot function. ``SubagentBatch`` keeps its
event stream around so a UI can subscribe before the batch starts and read a
summary after it ends.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence, Union

import structlog

from subswarm.config import SubswarmConfig
from subswarm.errors import ConfigurationError
from subswarm.events import EventSink, EventSubscription, LifecycleEventStream
from subswarm.executor import ParallelExecutor
from subswarm.generation import Generator
from subswarm.isolation import IsolationOptions, SubagentContext, build_context
from subswarm.merge import StateMerger
from subswarm.models import (
    BatchSummary,
    ExecutionOptions,
    ExecutionProgress,
    ExecutionUnit,
    Outcome,
    OutcomeStatus,
)
from subswarm.state import StateSnapshot

logger = structlog.get_logger(__name__)

IsolationArg = Union[IsolationOptions, Sequence[IsolationOptions], None]


def summarize(outcomes: Sequence[Outcome]) -> BatchSummary:
    """Fold outcomes into a ``BatchSummary``."""
    success_count = sum(1 for o in outcomes if o.succeeded)
    failure_count = len(outcomes) - success_count
    total_elapsed = max((o.elapsed_seconds for o in outcomes), default=0.0)

    if outcomes and all(o.status == OutcomeStatus.CANCELLED for o in outcomes):
        status = "cancelled"
    elif failure_count == 0:
        status = "completed"
    elif success_count == 0:
        status = "failed"
    else:
        status = "partial"

    return BatchSummary(
        status=status,
        outcomes=list(outcomes),
        success_count=success_count,
        failure_count=failure_count,
        total_elapsed_seconds=round(total_elapsed, 2),
    )


def _resolve_isolation(isolation: IsolationArg, count: int) -> list[IsolationOptions]:
    if isolation is None:
        return [IsolationOptions() for _ in range(count)]
    if isinstance(isolation, IsolationOptions):
        return [isolation] * count
    resolved = list(isolation)
    if len(resolved) != count:
        raise ConfigurationError(
            f"Got {count} tasks but {len(resolved)} isolation options",
            option="isolation",
        )
    return resolved


async def _execute_batch(
    executor: ParallelExecutor,
    merger: StateMerger,
    parent_state: StateSnapshot,
    tasks: Sequence[ExecutionUnit],
    isolation: IsolationArg,
    execution: Optional[ExecutionOptions],
    cancel_event: Optional[asyncio.Event],
) -> list[Outcome]:
    per_task = _resolve_isolation(isolation, len(tasks))
    contexts: list[SubagentContext] = [build_context(parent_state, opts) for opts in per_task]
    try:
        return await executor.run(
            tasks,
            contexts,
            execution,
            cancel_event=cancel_event,
            on_settled=merger.merge,
        )
    except ConfigurationError:
        for context in contexts:
            context.release()
        raise


async def run_subagent_batch(
    parent_state: StateSnapshot,
    tasks: Sequence[ExecutionUnit],
    isolation: IsolationArg = None,
    execution: Optional[ExecutionOptions] = None,
    *,
    generate: Generator,
    stream: Optional[LifecycleEventStream] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> list[Outcome]:
    """Run *tasks* as isolated children of *parent_state* and merge the results.

    Returns one terminal ``Outcome`` per task, in submission order. Only a
    ``ConfigurationError`` escapes; per-task problems are recorded in the
    outcomes and on *stream*.
    """
    executor = ParallelExecutor(generate, stream)
    outcomes = await _execute_batch(
        executor, StateMerger(), parent_state, tasks, isolation, execution, cancel_event
    )
    summary = summarize(outcomes)
    logger.info(
        "batch.complete",
        status=summary.status,
        succeeded=summary.success_count,
        failed=summary.failure_count,
    )
    return outcomes


class SubagentBatch:
    """A reusable batch runner that owns its event stream and merger."""

    def __init__(
        self,
        generate: Generator,
        config: Optional[SubswarmConfig] = None,
        stream: Optional[LifecycleEventStream] = None,
    ):
        self._config = config or SubswarmConfig()
        self.stream = stream or LifecycleEventStream(
            sink_drain_timeout=self._config.events.sink_drain_timeout,
        )
        self.merger = StateMerger()
        self.executor = ParallelExecutor(
            generate,
            self.stream,
            summary_chars=self._config.events.summary_chars,
        )
        self._outcomes: list[Outcome] = []

    @property
    def config(self) -> SubswarmConfig:
        return self._config

    def subscribe(
        self,
        execution_id: Optional[str] = None,
        *,
        replay: bool = False,
    ) -> EventSubscription:
        return self.stream.subscribe(execution_id, replay=replay)

    def add_sink(self, handler: EventSink, execution_id: Optional[str] = None) -> str:
        return self.stream.add_sink(handler, execution_id)

    async def run(
        self,
        parent_state: StateSnapshot,
        tasks: Sequence[ExecutionUnit],
        isolation: IsolationArg = None,
        execution: Optional[ExecutionOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[Outcome]:
        """Run one batch. Unset options fall back to the configured defaults."""
        if isolation is None:
            isolation = self._config.isolation.to_options()
        if execution is None:
            execution = self._config.execution.to_options()

        outcomes = await _execute_batch(
            self.executor, self.merger, parent_state, tasks, isolation, execution, cancel_event
        )
        self._outcomes.extend(outcomes)
        return outcomes

    def progress(self) -> list[ExecutionProgress]:
        return self.executor.progress()

    def summary(self) -> BatchSummary:
        """Summary over every outcome this batch has produced so far."""
        return summarize(self._outcomes)

    async def aclose(self) -> None:
        await self.stream.aclose()
