# subswarm/config.py
"""
Configuration for subswarm.

Values are loaded from environment variables (via .env file) and validated
with Pydantic. Each subsystem gets its own settings class; ``SubswarmConfig``
composes them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings
import structlog

from subswarm.isolation import IsolationOptions
from subswarm.models import ExecutionOptions

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above subswarm/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class ExecutionConfig(BaseSettings):
    """Scheduling limits for a batch."""

    max_concurrency: int = Field(0, alias="SUBSWARM_MAX_CONCURRENCY")  # 0 = unbounded
    task_timeout: float = Field(0.0, alias="SUBSWARM_TASK_TIMEOUT")  # 0 = no deadline
    fail_fast: bool = Field(False, alias="SUBSWARM_FAIL_FAST")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ExecutionConfig":
        self.max_concurrency = max(0, int(self.max_concurrency))
        self.task_timeout = max(0.0, float(self.task_timeout))
        return self

    def to_options(self) -> ExecutionOptions:
        return ExecutionOptions(
            max_concurrency=self.max_concurrency or None,
            per_task_timeout=self.task_timeout or None,
            fail_fast=self.fail_fast,
        )


class IsolationConfig(BaseSettings):
    """Default file and todo policies for children."""

    share_files: bool = Field(True, alias="SUBSWARM_SHARE_FILES")
    isolate_todos: bool = Field(True, alias="SUBSWARM_ISOLATE_TODOS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    def to_options(self) -> IsolationOptions:
        return IsolationOptions(share_files=self.share_files, isolate_todos=self.isolate_todos)


class EventConfig(BaseSettings):
    """Event stream settings."""

    summary_chars: int = Field(200, alias="SUBSWARM_SUMMARY_CHARS")
    sink_drain_timeout: float = Field(5.0, alias="SUBSWARM_SINK_DRAIN_TIMEOUT")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "EventConfig":
        self.summary_chars = max(1, int(self.summary_chars))
        self.sink_drain_timeout = max(0.1, float(self.sink_drain_timeout))
        return self


class SubswarmConfig:
    """
    Master configuration that composes all subsystem configs.

    Pass explicit sub-configs to override what the environment provides.
    """

    def __init__(
        self,
        execution: Optional[ExecutionConfig] = None,
        isolation: Optional[IsolationConfig] = None,
        events: Optional[EventConfig] = None,
    ):
        self.execution = execution or ExecutionConfig()
        self.isolation = isolation or IsolationConfig()
        self.events = events or EventConfig()

    def __repr__(self) -> str:
        return (
            "SubswarmConfig("
            f"max_concurrency={self.execution.max_concurrency}, "
            f"task_timeout={self.execution.task_timeout}, "
            f"fail_fast={self.execution.fail_fast}, "
            f"share_files={self.isolation.share_files}, "
            f"isolate_todos={self.isolation.isolate_todos})"
        )
