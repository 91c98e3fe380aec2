"""
Generation Collaborator Interface.

The call that actually produces a subagent's output is not part of this
package. Anything matching ``Generator`` can be plugged in: it receives the
prompt, the child's isolated context and its definition, reports intermediate
steps through ``on_step`` and returns a ``GenerationResult`` (or raises).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from subswarm.isolation import SubagentContext
    from subswarm.models import SubagentDefinition


class ToolCallRecord(BaseModel):
    """One tool call made during a step."""

    tool_name: str
    args: Any = None
    result: Any = None


class StepRecord(BaseModel):
    """Partial progress from one internal step of a generation call."""

    text: str = ""
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    """What a successful generation call hands back."""

    text: str = ""
    output: Any = None
    steps: list[StepRecord] = Field(default_factory=list)
    finish_reason: str = "stop"


StepCallback = Callable[[StepRecord], None]


class Generator(Protocol):
    """Async callable that runs one subagent to completion."""

    async def __call__(
        self,
        prompt: str,
        context: "SubagentContext",
        definition: "SubagentDefinition",
        *,
        on_step: StepCallback,
    ) -> GenerationResult: ...


def summarize_text(text: str, limit: Optional[int] = 200) -> str:
    """Trim *text* to *limit* characters, marking the cut with an ellipsis."""
    if limit is None or len(text) <= limit:
        return text
    return text[:limit] + "..."
