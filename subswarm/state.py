"""
State Snapshot: the todo list and virtual file map a parent shares with its children.

A ``StateSnapshot`` is the unit of mutable state that subagents read and write.
Todos are plain immutable ``TodoItem`` values held in a list; a status change
produces a new item that supersedes the old one, so two copies of a list can
always be compared item by item.

Files live behind a ``FileStore``, an explicit shared handle rather than a bare
dict. Several holders may reference the same store at once (the parent plus
every child built with shared files). Writes are serialized per path; writes to
different paths interleave freely. Two writes to the same path resolve as
last-write-wins on ``modified_at``.
"""

from __future__ import annotations

import posixpath
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Sequence

import structlog
from pydantic import AwareDatetime, BaseModel, Field, model_validator

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_path(path: str) -> str:
    """Normalize a virtual path to an absolute, slash-collapsed form."""
    stripped = path.strip()
    if not stripped.startswith("/"):
        stripped = "/" + stripped
    normalized = posixpath.normpath(stripped)
    # normpath keeps a leading "//" (POSIX allows it); collapse it.
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TodoItem(BaseModel):
    """A single todo entry. Immutable; use ``transition()`` to supersede it."""

    id: str = Field(default_factory=lambda: f"todo-{uuid.uuid4().hex[:12]}")
    content: str
    status: TodoStatus = TodoStatus.PENDING
    created_at: AwareDatetime = Field(default_factory=utcnow)
    completed_at: Optional[AwareDatetime] = None
    # Stamped on every status transition; the last-write-wins key during merges.
    updated_at: Optional[AwareDatetime] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _completed_at_matches_status(self) -> "TodoItem":
        completed = self.status == TodoStatus.COMPLETED
        if completed and self.completed_at is None:
            raise ValueError(f"todo {self.id!r} is completed but has no completed_at")
        if not completed and self.completed_at is not None:
            raise ValueError(f"todo {self.id!r} has completed_at but status is {self.status.value}")
        return self

    @property
    def revision_time(self) -> datetime:
        """The most recent timestamp this item carries."""
        stamps = [self.created_at, self.updated_at, self.completed_at]
        return max(s for s in stamps if s is not None)

    def transition(self, status: TodoStatus | str, at: Optional[datetime] = None) -> "TodoItem":
        """Return a new item with *status*, stamped at *at* (default: now)."""
        status = TodoStatus(status)
        when = at or utcnow()
        return TodoItem(
            id=self.id,
            content=self.content,
            status=status,
            created_at=self.created_at,
            completed_at=when if status == TodoStatus.COMPLETED else None,
            updated_at=when,
        )


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class FileData(BaseModel):
    """Contents of one virtual file, stored as a list of lines."""

    content: list[str] = Field(default_factory=list)
    created_at: AwareDatetime = Field(default_factory=utcnow)
    modified_at: AwareDatetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _modified_after_created(self) -> "FileData":
        if self.modified_at < self.created_at:
            raise ValueError("modified_at must not precede created_at")
        return self

    @classmethod
    def from_text(cls, text: str, at: Optional[datetime] = None) -> "FileData":
        when = at or utcnow()
        return cls(content=text.split("\n"), created_at=when, modified_at=when)

    @property
    def text(self) -> str:
        return "\n".join(self.content)


class FileStore:
    """Shared-ownership handle over a ``path -> FileData`` map.

    The store counts its holders: whoever creates it holds it once, and each
    additional party that shares it must ``attach()`` and later ``detach()``.
    Every mutation of a path happens under that path's lock, so concurrent
    writers never observe a half-applied write.
    """

    def __init__(self, files: Optional[Mapping[str, FileData]] = None) -> None:
        self._files: dict[str, FileData] = {}
        self._map_lock = threading.Lock()
        self._path_locks: dict[str, threading.Lock] = {}
        self._holders = 1
        for path, data in (files or {}).items():
            self._files[normalize_path(path)] = data

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @property
    def holders(self) -> int:
        return self._holders

    def attach(self) -> "FileStore":
        with self._map_lock:
            self._holders += 1
        return self

    def detach(self) -> None:
        with self._map_lock:
            if self._holders <= 0:
                raise RuntimeError("FileStore.detach() called with no remaining holders")
            self._holders -= 1

    def _lock_for(self, path: str) -> threading.Lock:
        with self._map_lock:
            lock = self._path_locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._path_locks[path] = lock
            return lock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, path: str) -> FileData:
        """Return the file at *path*; raise ``KeyError`` if it does not exist."""
        normalized = normalize_path(path)
        try:
            return self._files[normalized]
        except KeyError:
            raise KeyError(f"File not found: {path}") from None

    def get(self, path: str, default: Optional[FileData] = None) -> Optional[FileData]:
        return self._files.get(normalize_path(path), default)

    def paths(self) -> list[str]:
        with self._map_lock:
            return sorted(self._files)

    def ls(self, path: str = "/") -> list[str]:
        """List direct children of *path*. Subdirectories end with ``/``."""
        prefix = normalize_path(path)
        if not prefix.endswith("/"):
            prefix += "/"
        entries: set[str] = set()
        for file_path in self.paths():
            if not file_path.startswith(prefix):
                continue
            head, sep, _ = file_path[len(prefix):].partition("/")
            if not head:
                continue
            entries.add(prefix + head + ("/" if sep else ""))
        return sorted(entries)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, path: str, content: str | Sequence[str]) -> FileData:
        """Create or overwrite *path*. Keeps the original ``created_at``."""
        normalized = normalize_path(path)
        lines = content.split("\n") if isinstance(content, str) else list(content)
        with self._lock_for(normalized):
            now = utcnow()
            existing = self._files.get(normalized)
            if existing is None:
                data = FileData(content=lines, created_at=now, modified_at=now)
            else:
                data = FileData(
                    content=lines,
                    created_at=existing.created_at,
                    modified_at=max(now, existing.modified_at),
                )
            self._files[normalized] = data
        logger.debug("file_store.write", path=normalized, lines=len(lines))
        return data

    def put(self, path: str, data: FileData) -> bool:
        """Store *data* unless the current version is newer. Returns whether it landed."""
        normalized = normalize_path(path)
        with self._lock_for(normalized):
            existing = self._files.get(normalized)
            if existing is not None and existing.modified_at > data.modified_at:
                logger.debug("file_store.stale_put_ignored", path=normalized)
                return False
            self._files[normalized] = data
        return True

    def edit(self, path: str, old: str, new: str, replace_all: bool = False) -> int:
        """Replace *old* with *new* in *path* and return the number of replacements."""
        normalized = normalize_path(path)
        with self._lock_for(normalized):
            existing = self._files.get(normalized)
            if existing is None:
                raise KeyError(f"File not found: {path}")
            full = existing.text
            occurrences = full.count(old) if old else 0
            if occurrences == 0:
                preview = old[:50] + ("..." if len(old) > 50 else "")
                raise ValueError(f"String not found in file: {preview!r}")
            if occurrences > 1 and not replace_all:
                raise ValueError(
                    f"Multiple occurrences ({occurrences}) found. Use replace_all=True to replace all."
                )
            updated = full.replace(old, new) if replace_all else full.replace(old, new, 1)
            self._files[normalized] = FileData(
                content=updated.split("\n"),
                created_at=existing.created_at,
                modified_at=max(utcnow(), existing.modified_at),
            )
        return occurrences if replace_all else 1

    def delete(self, path: str) -> None:
        normalized = normalize_path(path)
        with self._lock_for(normalized):
            if normalized not in self._files:
                raise KeyError(f"File not found: {path}")
            del self._files[normalized]

    def copy(self) -> "FileStore":
        """Deep copy into a fresh, independently held store."""
        with self._map_lock:
            items = list(self._files.items())
        return FileStore({p: d.model_copy(deep=True) for p, d in items})

    # ------------------------------------------------------------------
    # Mapping protocol
    # ------------------------------------------------------------------

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_path(path) in self._files

    def __getitem__(self, path: str) -> FileData:
        return self.read(path)

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths())

    def __repr__(self) -> str:
        return f"FileStore(files={len(self._files)}, holders={self._holders})"


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass
class StateSnapshot:
    """Todo list plus virtual file map shared between a parent and its children."""

    todos: list[TodoItem] = field(default_factory=list)
    files: FileStore = field(default_factory=FileStore)

    @classmethod
    def empty(cls) -> "StateSnapshot":
        return cls()

    def todo(self, todo_id: str) -> Optional[TodoItem]:
        for item in self.todos:
            if item.id == todo_id:
                return item
        return None

    def add_todo(self, content: str, **kwargs: Any) -> TodoItem:
        item = TodoItem(content=content, **kwargs)
        self.todos.append(item)
        return item

    def set_todo_status(
        self,
        todo_id: str,
        status: TodoStatus | str,
        at: Optional[datetime] = None,
    ) -> TodoItem:
        """Supersede the item with *todo_id* by a transitioned copy, in place."""
        for index, item in enumerate(self.todos):
            if item.id == todo_id:
                updated = item.transition(status, at=at)
                self.todos[index] = updated
                return updated
        raise KeyError(f"Todo not found: {todo_id}")

    def copy_todos(self) -> list[TodoItem]:
        return [item.model_copy(deep=True) for item in self.todos]
