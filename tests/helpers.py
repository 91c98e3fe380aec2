"""Scripted generation collaborator and small builders shared by the tests."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from subswarm.generation import GenerationResult, StepRecord
from subswarm.isolation import SubagentContext
from subswarm.models import ExecutionUnit, SubagentDefinition


# ---------------------------------------------------------------------------
# Scripted generator
# ---------------------------------------------------------------------------


@dataclass
class Script:
    """What the fake generator does for one prompt."""

    delay: float = 0.0
    text: str = "done"
    steps: list[str] = field(default_factory=list)  # reported live via on_step
    result_steps: list[StepRecord] = field(default_factory=list)  # only in the result
    files: dict[str, str] = field(default_factory=dict)
    action: Optional[Callable[[SubagentContext], None]] = None
    error: Optional[Exception] = None
    ignore_cancel: bool = False


class ScriptedGenerator:
    """Generator fake keyed by prompt. Records timing and concurrency."""

    def __init__(self, scripts: Optional[dict[str, Script]] = None, default: Optional[Script] = None):
        self.scripts = scripts or {}
        self.default = default or Script()
        self.calls: list[str] = []
        self.started_at: dict[str, float] = {}
        self.finished_at: dict[str, float] = {}
        self.active = 0
        self.peak = 0

    async def __call__(self, prompt, context, definition, *, on_step):
        script = self.scripts.get(prompt, self.default)
        self.calls.append(prompt)
        self.started_at[prompt] = time.monotonic()
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            for text in script.steps:
                on_step(StepRecord(text=text))
            if script.action is not None:
                script.action(context)
            for path, content in script.files.items():
                context.state.files.write(path, content)
            if script.delay:
                if script.ignore_cancel:
                    await _sleep_through_cancel(script.delay)
                else:
                    await asyncio.sleep(script.delay)
            if script.error is not None:
                raise script.error
            return GenerationResult(text=script.text, steps=list(script.result_steps))
        finally:
            self.active -= 1
            self.finished_at[prompt] = time.monotonic()


async def _sleep_through_cancel(delay: float) -> None:
    deadline = time.monotonic() + delay
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        try:
            await asyncio.sleep(remaining)
        except asyncio.CancelledError:
            continue


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_unit(prompt: str, subagent_type: str = "general-purpose", **kwargs) -> ExecutionUnit:
    return ExecutionUnit(
        definition=SubagentDefinition(type=subagent_type, description=f"{subagent_type} worker"),
        prompt=prompt,
        **kwargs,
    )


def event_types(events) -> str:
    """Collapse an event list into a compact string like ``"start,step,finish"``."""
    return ",".join(e.type for e in events)
