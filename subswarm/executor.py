"""
Parallel Executor — bounded fan-out of subagent tasks.

Runs a batch of ``ExecutionUnit``s, each against its own ``SubagentContext``,
and returns exactly one terminal ``Outcome`` per unit in submission order.

Key responsibilities:
  - Enforce the concurrency limit (admission in submission order, a freed slot
    is backfilled immediately)
  - Apply the per-task deadline
  - Honour batch cancellation and fail-fast
  - Publish start, step* and terminal events for every execution
  - Contain collaborator failures inside the failing task's outcome
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional, Sequence

import structlog

from subswarm.errors import (
    ConfigurationError,
    GenerationError,
    SubagentCancelledError,
    SubagentTimeoutError,
)
from subswarm.events import (
    ErrorEvent,
    ExecutionState,
    FinishEvent,
    LifecycleEventStream,
    StartEvent,
    StepEvent,
)
from subswarm.generation import GenerationResult, Generator, StepRecord, summarize_text
from subswarm.isolation import SubagentContext
from subswarm.models import (
    ErrorKind,
    ExecutionOptions,
    ExecutionProgress,
    ExecutionUnit,
    Outcome,
    OutcomeStatus,
)

logger = structlog.get_logger(__name__)

SettledHook = Callable[[SubagentContext, Outcome], Any]


class _Execution:
    """Mutable bookkeeping for one unit while it is in flight."""

    __slots__ = ("unit", "context", "steps", "started", "terminal", "monotonic_start")

    def __init__(self, unit: ExecutionUnit, context: SubagentContext) -> None:
        self.unit = unit
        self.context = context
        self.steps = 0
        self.started = False
        self.terminal = False
        self.monotonic_start: float | None = None

    @property
    def execution_id(self) -> str:
        return self.unit.execution_id

    def elapsed(self) -> float:
        if self.monotonic_start is None:
            return 0.0
        return round(time.monotonic() - self.monotonic_start, 2)


def validate_options(
    tasks: Sequence[ExecutionUnit],
    contexts: Sequence[SubagentContext],
    options: ExecutionOptions,
    stream: Optional[LifecycleEventStream] = None,
) -> None:
    """Raise ``ConfigurationError`` if the batch cannot be run as given.

    With a *stream*, an execution id that stream has already seen is rejected:
    lifecycle events are never re-emitted for an id, so a retried unit needs a
    fresh ``ExecutionUnit``.
    """
    if options.max_concurrency is not None and options.max_concurrency <= 0:
        raise ConfigurationError(
            f"max_concurrency must be positive, got {options.max_concurrency}",
            option="max_concurrency",
        )
    if options.per_task_timeout is not None and options.per_task_timeout <= 0:
        raise ConfigurationError(
            f"per_task_timeout must be positive, got {options.per_task_timeout}",
            option="per_task_timeout",
        )
    if len(tasks) != len(contexts):
        raise ConfigurationError(
            f"Got {len(tasks)} tasks but {len(contexts)} contexts",
            option="contexts",
        )
    seen: set[str] = set()
    for unit in tasks:
        if unit.execution_id in seen:
            raise ConfigurationError(
                f"Duplicate execution id {unit.execution_id!r}",
                option="tasks",
            )
        seen.add(unit.execution_id)
        if stream is not None and stream.state(unit.execution_id) != ExecutionState.NOT_STARTED:
            raise ConfigurationError(
                f"Execution id {unit.execution_id!r} was already run on this stream",
                option="tasks",
            )


class ParallelExecutor:
    """Runs subagent tasks concurrently under a shared set of options."""

    def __init__(
        self,
        generate: Generator,
        stream: Optional[LifecycleEventStream] = None,
        summary_chars: int = 200,
    ):
        self._generate = generate
        self.stream = stream or LifecycleEventStream()
        self._summary_chars = summary_chars

        self._progress: dict[str, ExecutionProgress] = {}
        self._active = 0
        self._peak = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        """Number of tasks currently holding a concurrency slot."""
        return self._active

    @property
    def peak_concurrency(self) -> int:
        """Highest ``active_count`` observed since this executor was created."""
        return self._peak

    def progress(self) -> list[ExecutionProgress]:
        """Snapshots of every execution this executor has seen.

        Entries are never pruned; a reused executor reports all its runs.
        """
        snapshots = []
        for progress in self._progress.values():
            snapshot = progress.model_copy()
            if snapshot.status == OutcomeStatus.RUNNING and snapshot.started_at is not None:
                snapshot.elapsed_seconds = round(time.time() - snapshot.started_at, 2)
            snapshots.append(snapshot)
        return snapshots

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        tasks: Sequence[ExecutionUnit],
        contexts: Sequence[SubagentContext],
        options: Optional[ExecutionOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        on_settled: Optional[SettledHook] = None,
    ) -> list[Outcome]:
        """Execute *tasks*, pairing each with the context at the same index."""
        options = options or ExecutionOptions()
        validate_options(tasks, contexts, options, self.stream)
        if not tasks:
            return []

        semaphore = (
            asyncio.Semaphore(options.max_concurrency)
            if options.max_concurrency is not None
            else None
        )
        abort = asyncio.Event()
        outcomes: dict[str, Outcome] = {}
        executions = [_Execution(unit, context) for unit, context in zip(tasks, contexts)]
        for execution in executions:
            self._progress[execution.execution_id] = ExecutionProgress(
                execution_id=execution.execution_id,
            )

        logger.info(
            "executor.run_started",
            tasks=len(executions),
            max_concurrency=options.max_concurrency,
            per_task_timeout=options.per_task_timeout,
            fail_fast=options.fail_fast,
        )
        start = time.monotonic()

        relay: asyncio.Task[None] | None = None
        if cancel_event is not None and cancel_event.is_set():
            abort.set()
        elif cancel_event is not None:
            relay = asyncio.create_task(self._relay_cancel(cancel_event, abort))

        workers = [
            asyncio.create_task(
                self._run_one(execution, semaphore, abort, options, outcomes, on_settled),
                name=f"subagent-{execution.execution_id}",
            )
            for execution in executions
        ]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            logger.info("executor.run_cancelled", tasks=len(executions))
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        except Exception:
            logger.error("executor.worker_crashed", tasks=len(executions), exc_info=True)
            abort.set()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            if relay is not None:
                relay.cancel()

        results = [outcomes[execution.execution_id] for execution in executions]
        logger.info(
            "executor.run_complete",
            tasks=len(results),
            succeeded=sum(1 for o in results if o.succeeded),
            elapsed=round(time.monotonic() - start, 2),
        )
        return results

    @staticmethod
    async def _relay_cancel(cancel_event: asyncio.Event, abort: asyncio.Event) -> None:
        await cancel_event.wait()
        logger.info("executor.cancel_requested")
        abort.set()

    # ------------------------------------------------------------------
    # One task
    # ------------------------------------------------------------------

    async def _run_one(
        self,
        execution: _Execution,
        semaphore: asyncio.Semaphore | None,
        abort: asyncio.Event,
        options: ExecutionOptions,
        outcomes: dict[str, Outcome],
        on_settled: Optional[SettledHook],
    ) -> None:
        eid = execution.execution_id
        try:
            admitted = await self._admit(semaphore, abort)
            if not admitted:
                self._emit_start(execution)
                reason = SubagentCancelledError(eid, "cancelled before start")
                outcome = self._conclude_error(execution, OutcomeStatus.CANCELLED, reason)
                self._settle(execution, outcome, options, abort, outcomes, on_settled)
                return

            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                outcome = await self._execute(execution, abort, options)
            finally:
                self._active -= 1
                if semaphore is not None:
                    semaphore.release()
            self._settle(execution, outcome, options, abort, outcomes, on_settled)

        except asyncio.CancelledError:
            if not execution.terminal:
                if not execution.started:
                    self._emit_start(execution)
                reason = SubagentCancelledError(eid, "run cancelled")
                outcome = self._conclude_error(execution, OutcomeStatus.CANCELLED, reason)
                self._settle(execution, outcome, options, abort, outcomes, on_settled)
            raise

    @staticmethod
    async def _admit(semaphore: asyncio.Semaphore | None, abort: asyncio.Event) -> bool:
        """Wait for a slot. Returns False if the batch was aborted first."""
        if abort.is_set():
            return False
        if semaphore is None:
            return True

        acquire = asyncio.ensure_future(semaphore.acquire())
        aborted = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({acquire, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not acquire.done():
                acquire.cancel()

        if acquire.done() and not acquire.cancelled():
            if abort.is_set():
                semaphore.release()
                return False
            return True
        return False

    async def _execute(
        self,
        execution: _Execution,
        abort: asyncio.Event,
        options: ExecutionOptions,
    ) -> Outcome:
        unit = execution.unit
        eid = execution.execution_id
        execution.monotonic_start = time.monotonic()

        progress = self._progress[eid]
        progress.status = OutcomeStatus.RUNNING
        progress.started_at = time.time()

        self._emit_start(execution)
        logger.info(
            "executor.task_started",
            execution_id=eid,
            subagent_type=unit.subagent_type,
            prompt=unit.prompt,
        )

        def on_step(step: StepRecord) -> None:
            if execution.terminal:
                logger.debug("executor.late_step_ignored", execution_id=eid)
                return
            self._emit_step(execution, step)

        generation = asyncio.ensure_future(
            self._generate(unit.prompt, execution.context, unit.definition, on_step=on_step)
        )
        aborted = asyncio.ensure_future(abort.wait())
        try:
            done, _ = await asyncio.wait(
                {generation, aborted},
                timeout=options.per_task_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            generation.cancel()
            raise
        finally:
            aborted.cancel()

        if generation in done:
            return self._collect(execution, generation)

        if abort.is_set():
            await self._unwind(generation)
            reason: Exception = SubagentCancelledError(eid)
            logger.info("executor.task_cancelled", execution_id=eid, elapsed=execution.elapsed())
            return self._conclude_error(execution, OutcomeStatus.CANCELLED, reason)

        await self._unwind(generation)
        reason = SubagentTimeoutError(eid, options.per_task_timeout or 0.0)
        logger.warning(
            "executor.task_timeout",
            execution_id=eid,
            timeout=options.per_task_timeout,
        )
        return self._conclude_error(execution, OutcomeStatus.TIMEOUT, reason)

    @staticmethod
    async def _unwind(generation: asyncio.Future[Any]) -> None:
        """Cancel the collaborator call and hold the slot until it has returned."""
        generation.cancel()
        await asyncio.wait({generation})
        if not generation.cancelled() and generation.exception() is not None:
            logger.debug("executor.cancelled_call_raised", error=str(generation.exception()))

    def _collect(self, execution: _Execution, generation: asyncio.Future[Any]) -> Outcome:
        eid = execution.execution_id
        if generation.cancelled():
            logger.info("executor.task_cancelled", execution_id=eid, elapsed=execution.elapsed())
            return self._conclude_error(
                execution, OutcomeStatus.CANCELLED, SubagentCancelledError(eid, "generator cancelled")
            )

        exc = generation.exception()
        if exc is not None:
            logger.error(
                "executor.task_failed",
                execution_id=eid,
                error=str(exc),
                exc_info=exc,
            )
            failure = exc if isinstance(exc, GenerationError) else GenerationError(str(exc), cause=exc)
            return self._conclude_error(execution, OutcomeStatus.FAILURE, failure)

        try:
            result = generation.result()
            if not isinstance(result, GenerationResult):
                result = GenerationResult.model_validate(result)
        except Exception as exc:
            logger.error("executor.invalid_result", execution_id=eid, error=str(exc))
            return self._conclude_error(
                execution,
                OutcomeStatus.FAILURE,
                GenerationError(f"Generator returned an invalid result: {exc}", cause=exc),
            )

        if execution.steps == 0:
            for step in result.steps:
                self._emit_step(execution, step)

        return self._conclude_success(execution, result)

    # ------------------------------------------------------------------
    # Terminal bookkeeping
    # ------------------------------------------------------------------

    def _conclude_success(self, execution: _Execution, result: GenerationResult) -> Outcome:
        unit = execution.unit
        elapsed = execution.elapsed()
        execution.terminal = True
        self.stream.emit(FinishEvent(
            execution_id=unit.execution_id,
            subagent_type=unit.subagent_type,
            success=True,
            summary=summarize_text(result.text, self._summary_chars),
            steps=execution.steps,
            duration_seconds=elapsed,
            finish_reason=result.finish_reason,
            result=result,
        ))
        logger.info(
            "executor.task_finished",
            execution_id=unit.execution_id,
            steps=execution.steps,
            elapsed=elapsed,
            text=result.text,
        )
        return Outcome(
            execution_id=unit.execution_id,
            subagent_type=unit.subagent_type,
            status=OutcomeStatus.SUCCESS,
            result=result,
            elapsed_seconds=elapsed,
            steps=execution.steps,
        )

    def _conclude_error(
        self,
        execution: _Execution,
        status: OutcomeStatus,
        error: Exception,
    ) -> Outcome:
        unit = execution.unit
        kind = {
            OutcomeStatus.FAILURE: ErrorKind.GENERATION,
            OutcomeStatus.TIMEOUT: ErrorKind.TIMEOUT,
            OutcomeStatus.CANCELLED: ErrorKind.CANCELLED,
        }[status]
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        execution.terminal = True
        self.stream.emit(ErrorEvent(
            execution_id=unit.execution_id,
            subagent_type=unit.subagent_type,
            kind=kind,
            message=message,
            step_number=execution.steps or None,
        ))
        return Outcome(
            execution_id=unit.execution_id,
            subagent_type=unit.subagent_type,
            status=status,
            error=message,
            error_kind=kind,
            elapsed_seconds=execution.elapsed(),
            steps=execution.steps,
        )

    def _settle(
        self,
        execution: _Execution,
        outcome: Outcome,
        options: ExecutionOptions,
        abort: asyncio.Event,
        outcomes: dict[str, Outcome],
        on_settled: Optional[SettledHook],
    ) -> None:
        outcomes[outcome.execution_id] = outcome

        progress = self._progress.get(outcome.execution_id)
        if progress:
            progress.status = outcome.status
            progress.elapsed_seconds = outcome.elapsed_seconds
            progress.steps = outcome.steps

        if (
            options.fail_fast
            and outcome.status in (OutcomeStatus.FAILURE, OutcomeStatus.TIMEOUT)
            and not abort.is_set()
        ):
            logger.warning(
                "executor.fail_fast_triggered",
                execution_id=outcome.execution_id,
                status=outcome.status.value,
            )
            abort.set()

        if on_settled is not None:
            try:
                on_settled(execution.context, outcome)
            except Exception:
                logger.error(
                    "executor.on_settled_error",
                    execution_id=outcome.execution_id,
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_start(self, execution: _Execution) -> None:
        unit = execution.unit
        execution.started = True
        self.stream.emit(StartEvent(
            execution_id=unit.execution_id,
            subagent_type=unit.subagent_type,
            prompt=unit.prompt,
        ))

    def _emit_step(self, execution: _Execution, step: StepRecord) -> None:
        unit = execution.unit
        execution.steps += 1
        progress = self._progress.get(unit.execution_id)
        if progress:
            progress.steps = execution.steps
        self.stream.emit(StepEvent(
            execution_id=unit.execution_id,
            subagent_type=unit.subagent_type,
            step_number=execution.steps,
            text=step.text,
            tool_calls=step.tool_calls,
            data=step.data,
        ))
