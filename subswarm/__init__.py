"""
Subswarm — parallel subagents with isolated state.

A parent agent hands a batch of prompts to child agents. Each child works on a
state derived from the parent's (shared or private files, isolated or
inherited todos), runs concurrently under a bounded scheduler, and reports
progress as a typed event stream. When a child finishes, its state is merged
back into the parent.

Layers (bottom to top):
    1. State (todos + shared virtual file store)
    2. Isolation (deriving a child's context)
    3. Events (per-execution lifecycle stream)
    4. Executor (bounded parallel scheduling, timeouts, cancellation)
    5. Merge (folding child state back into the parent)
    6. Batch (one-call entry point)
"""

from __future__ import annotations

from subswarm.batch import SubagentBatch, run_subagent_batch, summarize
from subswarm.config import SubswarmConfig
from subswarm.errors import (
    ConfigurationError,
    EventSequenceError,
    GenerationError,
    MergeConflictError,
    SubagentCancelledError,
    SubagentTimeoutError,
    SubswarmError,
)
from subswarm.events import (
    ErrorEvent,
    ExecutionState,
    FinishEvent,
    LifecycleEventStream,
    StartEvent,
    StepEvent,
    SubagentEvent,
)
from subswarm.executor import ParallelExecutor
from subswarm.generation import GenerationResult, Generator, StepRecord, ToolCallRecord
from subswarm.isolation import (
    ContextIsolationBuilder,
    FilePolicy,
    IsolationOptions,
    SubagentContext,
    TodoPolicy,
    build_context,
)
from subswarm.merge import MergeReport, StateMerger
from subswarm.models import (
    BatchSummary,
    ErrorKind,
    ExecutionOptions,
    ExecutionUnit,
    Outcome,
    OutcomeStatus,
    SubagentDefinition,
)
from subswarm.state import FileData, FileStore, StateSnapshot, TodoItem, TodoStatus

__version__ = "0.1.0"

__all__ = [
    "BatchSummary",
    "ConfigurationError",
    "ContextIsolationBuilder",
    "ErrorEvent",
    "ErrorKind",
    "EventSequenceError",
    "ExecutionOptions",
    "ExecutionState",
    "ExecutionUnit",
    "FileData",
    "FilePolicy",
    "FileStore",
    "FinishEvent",
    "GenerationError",
    "GenerationResult",
    "Generator",
    "IsolationOptions",
    "LifecycleEventStream",
    "MergeConflictError",
    "MergeReport",
    "Outcome",
    "OutcomeStatus",
    "ParallelExecutor",
    "StartEvent",
    "StateMerger",
    "StateSnapshot",
    "StepEvent",
    "StepRecord",
    "SubagentBatch",
    "SubagentCancelledError",
    "SubagentContext",
    "SubagentDefinition",
    "SubagentEvent",
    "SubagentTimeoutError",
    "SubswarmConfig",
    "SubswarmError",
    "TodoItem",
    "TodoPolicy",
    "TodoStatus",
    "ToolCallRecord",
    "build_context",
    "run_subagent_batch",
    "summarize",
]
