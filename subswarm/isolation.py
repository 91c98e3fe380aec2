"""
Context Isolation: deriving a child's working state from its parent.

Files and todos follow separate policies. By default a child shares the
parent's files (they are the common work product) and keeps a private todo
list (its own planning). The four combinations are spelled out as enums so
callers never have to reason about two loose booleans.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

import structlog
from pydantic import BaseModel, Field

from subswarm.state import FileStore, StateSnapshot, TodoItem

logger = structlog.get_logger(__name__)


class FilePolicy(str, Enum):
    SHARED = "shared"  # child writes land in the parent's store directly
    PRIVATE = "private"  # child starts empty; its files are discarded


class TodoPolicy(str, Enum):
    ISOLATED = "isolated"  # child starts from initial_todos; nothing merges back
    INHERITED = "inherited"  # child starts from a copy of the parent's list; merged by id


class IsolationOptions(BaseModel):
    """How a child's state is derived from its parent."""

    share_files: bool = True
    isolate_todos: bool = True
    initial_todos: list[TodoItem] = Field(default_factory=list)

    @property
    def file_policy(self) -> FilePolicy:
        return FilePolicy.SHARED if self.share_files else FilePolicy.PRIVATE

    @property
    def todo_policy(self) -> TodoPolicy:
        return TodoPolicy.ISOLATED if self.isolate_todos else TodoPolicy.INHERITED

    @classmethod
    def from_policies(
        cls,
        files: FilePolicy,
        todos: TodoPolicy,
        initial_todos: list[TodoItem] | None = None,
    ) -> "IsolationOptions":
        return cls(
            share_files=files == FilePolicy.SHARED,
            isolate_todos=todos == TodoPolicy.ISOLATED,
            initial_todos=list(initial_todos or []),
        )

    @classmethod
    def combinations(cls) -> Iterator["IsolationOptions"]:
        """Every file/todo policy pairing."""
        for files, todos in itertools.product(FilePolicy, TodoPolicy):
            yield cls.from_policies(files, todos)


@dataclass
class SubagentContext:
    """A child's derived state plus the back-reference used for merging."""

    state: StateSnapshot
    parent_state: StateSnapshot
    file_policy: FilePolicy
    todo_policy: TodoPolicy
    released: bool = False

    @property
    def files_shared(self) -> bool:
        return self.file_policy == FilePolicy.SHARED

    @property
    def todos_isolated(self) -> bool:
        return self.todo_policy == TodoPolicy.ISOLATED

    def release(self) -> None:
        """Give up this context's hold on the shared file store. Safe to repeat."""
        if self.released:
            return
        self.released = True
        if self.files_shared:
            self.state.files.detach()


def build_context(
    parent_state: StateSnapshot,
    options: IsolationOptions | None = None,
) -> SubagentContext:
    """Derive a ``SubagentContext`` for one child from *parent_state*."""
    options = options or IsolationOptions()

    if options.file_policy == FilePolicy.SHARED:
        files = parent_state.files.attach()
    else:
        files = FileStore()

    if options.todo_policy == TodoPolicy.ISOLATED:
        todos = [item.model_copy(deep=True) for item in options.initial_todos]
    else:
        todos = parent_state.copy_todos()

    context = SubagentContext(
        state=StateSnapshot(todos=todos, files=files),
        parent_state=parent_state,
        file_policy=options.file_policy,
        todo_policy=options.todo_policy,
    )
    logger.debug(
        "isolation.context_built",
        files=options.file_policy.value,
        todos=options.todo_policy.value,
        todo_count=len(todos),
    )
    return context


class ContextIsolationBuilder:
    """Builds child contexts with a fixed set of options."""

    def __init__(self, options: IsolationOptions | None = None):
        self.options = options or IsolationOptions()

    def build(self, parent_state: StateSnapshot) -> SubagentContext:
        return build_context(parent_state, self.options)

    def build_many(self, parent_state: StateSnapshot, count: int) -> list[SubagentContext]:
        return [self.build(parent_state) for _ in range(count)]
