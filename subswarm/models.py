"""
Execution Data Models.

``SubagentDefinition`` describes *who* runs a task, ``ExecutionUnit`` pairs it
with a prompt and an id, and ``Outcome`` records *what happened*. Every unit
submitted to a batch yields exactly one terminal ``Outcome``.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from subswarm.generation import GenerationResult


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


class SubagentDefinition(BaseModel):
    """Subagent type descriptor. Opaque to the core; passed to the generator."""

    type: str
    description: str = ""
    system_prompt: str = ""
    tools: Optional[list[str]] = None  # None = inherit parent tools
    model: Optional[str] = None  # None = inherit parent model
    max_steps: Optional[int] = None


class ExecutionUnit(BaseModel):
    """One task: a definition, a prompt and the id generated at submission."""

    definition: SubagentDefinition
    prompt: str
    execution_id: str = Field(default_factory=new_execution_id)

    model_config = {"frozen": True}

    @property
    def subagent_type(self) -> str:
        return self.definition.type


class OutcomeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (OutcomeStatus.PENDING, OutcomeStatus.RUNNING)


class ErrorKind(str, Enum):
    GENERATION = "generation"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class Outcome(BaseModel):
    """Result of one execution, successful or not."""

    execution_id: str
    subagent_type: str = ""
    status: OutcomeStatus
    result: Optional[GenerationResult] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    elapsed_seconds: float = 0.0
    steps: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @property
    def text(self) -> str:
        return self.result.text if self.result else ""


class ExecutionProgress(BaseModel):
    """Lightweight status snapshot for one execution."""

    execution_id: str
    status: OutcomeStatus = OutcomeStatus.PENDING
    started_at: Optional[float] = None  # wall clock, set on admission
    elapsed_seconds: float = 0.0
    steps: int = 0


class ExecutionOptions(BaseModel):
    """Knobs for one ``ParallelExecutor.run`` call. Checked when the run starts."""

    max_concurrency: Optional[int] = None  # None = unbounded
    per_task_timeout: Optional[float] = None  # seconds; None = no deadline
    fail_fast: bool = False


class BatchSummary(BaseModel):
    """Aggregated view over every outcome of a batch."""

    status: Literal["completed", "partial", "failed", "cancelled"] = "completed"
    outcomes: list[Outcome] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    total_elapsed_seconds: float = 0.0

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0
