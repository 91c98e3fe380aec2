"""
Subswarm Errors.

Only ``ConfigurationError`` ever escapes a batch. Everything else describes a
per-task problem and is folded into that task's ``Outcome`` (generation
failures, timeouts, cancellation) or logged and skipped (merge conflicts).
"""

from __future__ import annotations

from typing import Optional


class SubswarmError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ConfigurationError(SubswarmError):
    """Invalid executor or batch options. Fatal for the whole batch."""

    def __init__(self, message: str, *, option: Optional[str] = None) -> None:
        self.option = option
        super().__init__(message)


class GenerationError(SubswarmError):
    """The generation collaborator failed for one task."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        super().__init__(message)


class SubagentTimeoutError(SubswarmError):
    """A task exceeded its per-task deadline."""

    def __init__(self, execution_id: str, timeout_seconds: float) -> None:
        self.execution_id = execution_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Subagent {execution_id} timed out after {timeout_seconds}s")


class SubagentCancelledError(SubswarmError):
    """A task was aborted by batch cancellation or fail-fast."""

    def __init__(self, execution_id: str, reason: str = "batch cancelled") -> None:
        self.execution_id = execution_id
        self.reason = reason
        super().__init__(f"Subagent {execution_id} cancelled: {reason}")


class MergeConflictError(SubswarmError):
    """A child's state could not be reconciled into the parent.

    Raised per item; the merger logs it and skips that item.
    """

    def __init__(self, item_id: str, detail: str) -> None:
        self.item_id = item_id
        self.detail = detail
        super().__init__(f"Cannot merge todo {item_id!r}: {detail}")


class EventSequenceError(SubswarmError):
    """An event would break the start, step*, terminal ordering of an execution."""

    def __init__(self, execution_id: str, state: str, event_type: str) -> None:
        self.execution_id = execution_id
        self.state = state
        self.event_type = event_type
        super().__init__(
            f"Cannot emit {event_type!r} for execution {execution_id} in state {state!r}"
        )
