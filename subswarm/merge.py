"""
State Merger: folding a finished child's state back into its parent.

Shared files need no copying; the child wrote straight into the parent's
store, so merging only drops the child's hold on it. Private files and
isolated todo lists are discarded. Inherited todo lists are reconciled by id,
last write wins.
"""

from __future__ import annotations

import threading
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from subswarm.errors import MergeConflictError
from subswarm.isolation import SubagentContext, TodoPolicy
from subswarm.models import Outcome
from subswarm.state import TodoItem

logger = structlog.get_logger(__name__)


class MergeReport(BaseModel):
    """What one ``merge`` call did."""

    execution_id: str
    merged: bool = False
    already_merged: bool = False
    files_detached: bool = False
    appended: int = 0
    replaced: int = 0
    skipped: int = 0


def _item_id(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("id") or "<missing>")
    return str(getattr(item, "id", None) or "<missing>")


def validate_todo(item: Any) -> TodoItem:
    """Return *item* as a checked ``TodoItem`` or raise ``MergeConflictError``."""
    if isinstance(item, TodoItem):
        raw: Any = item.model_dump()
    elif isinstance(item, dict):
        raw = item
    else:
        raise MergeConflictError(_item_id(item), f"expected a todo item, got {type(item).__name__}")

    try:
        checked = TodoItem.model_validate(raw)
    except ValidationError as exc:
        raise MergeConflictError(_item_id(item), str(exc)) from exc
    if not checked.id:
        raise MergeConflictError("<missing>", "todo item has an empty id")
    return checked


class StateMerger:
    """Applies child outcomes to parent state, at most once per execution."""

    def __init__(self) -> None:
        self._merged: set[str] = set()
        self._lock = threading.Lock()

    def has_merged(self, execution_id: str) -> bool:
        return execution_id in self._merged

    def merge(self, context: SubagentContext, outcome: Outcome) -> MergeReport:
        eid = outcome.execution_id
        if not outcome.status.is_terminal:
            logger.warning("merge.not_terminal", execution_id=eid, status=outcome.status.value)
            return MergeReport(execution_id=eid)

        with self._lock:
            if eid in self._merged:
                logger.debug("merge.already_merged", execution_id=eid)
                return MergeReport(execution_id=eid, already_merged=True)
            self._merged.add(eid)

            report = MergeReport(execution_id=eid, merged=True)
            report.files_detached = context.files_shared and not context.released
            context.release()

            if context.todo_policy == TodoPolicy.INHERITED:
                self._merge_todos(context, report)

        logger.info(
            "merge.complete",
            execution_id=eid,
            status=outcome.status.value,
            files=context.file_policy.value,
            todos=context.todo_policy.value,
            appended=report.appended,
            replaced=report.replaced,
            skipped=report.skipped,
        )
        return report

    @staticmethod
    def _merge_todos(context: SubagentContext, report: MergeReport) -> None:
        parent = context.parent_state.todos
        index = {item.id: position for position, item in enumerate(parent)}

        for item in context.state.todos:
            try:
                candidate = validate_todo(item)
            except MergeConflictError as exc:
                logger.warning(
                    "merge.todo_skipped",
                    execution_id=report.execution_id,
                    todo_id=exc.item_id,
                    error=exc.detail,
                )
                report.skipped += 1
                continue

            position = index.get(candidate.id)
            if position is None:
                parent.append(candidate)
                index[candidate.id] = len(parent) - 1
                report.appended += 1
            elif candidate.revision_time > parent[position].revision_time:
                parent[position] = candidate
                report.replaced += 1
