"""Tests for subswarm.state — todo items, file data and the shared file store."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from subswarm.state import (
    FileData,
    FileStore,
    StateSnapshot,
    TodoItem,
    TodoStatus,
    normalize_path,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# TodoItem
# ---------------------------------------------------------------------------


class TestTodoItem:
    def test_defaults(self) -> None:
        item = TodoItem(content="write tests")
        assert item.id.startswith("todo-")
        assert item.status == TodoStatus.PENDING
        assert item.completed_at is None
        assert item.updated_at is None

    def test_completed_requires_completed_at(self) -> None:
        with pytest.raises(ValidationError):
            TodoItem(content="x", status=TodoStatus.COMPLETED)

    def test_completed_at_requires_completed_status(self) -> None:
        with pytest.raises(ValidationError):
            TodoItem(content="x", status=TodoStatus.IN_PROGRESS, completed_at=T0)

    def test_naive_timestamp_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TodoItem(content="x", created_at=datetime(2026, 1, 1, 12, 0))

    def test_items_are_frozen(self) -> None:
        item = TodoItem(content="x")
        with pytest.raises(ValidationError):
            item.content = "y"

    def test_transition_to_completed_stamps_both_times(self) -> None:
        item = TodoItem(id="t1", content="x", created_at=T0)
        done = item.transition(TodoStatus.COMPLETED, at=T0 + timedelta(minutes=5))
        assert done.id == "t1"
        assert done.created_at == T0
        assert done.completed_at == T0 + timedelta(minutes=5)
        assert done.updated_at == T0 + timedelta(minutes=5)
        assert item.status == TodoStatus.PENDING

    def test_transition_away_from_completed_clears_completed_at(self) -> None:
        done = TodoItem(id="t1", content="x", created_at=T0).transition("completed", at=T0)
        reopened = done.transition("in_progress", at=T0 + timedelta(seconds=1))
        assert reopened.completed_at is None
        assert reopened.status == TodoStatus.IN_PROGRESS

    def test_revision_time_is_latest_timestamp(self) -> None:
        item = TodoItem(content="x", created_at=T0)
        assert item.revision_time == T0
        moved = item.transition("in_progress", at=T0 + timedelta(hours=1))
        assert moved.revision_time == T0 + timedelta(hours=1)


# ---------------------------------------------------------------------------
# FileData
# ---------------------------------------------------------------------------


class TestFileData:
    def test_from_text_splits_lines(self) -> None:
        data = FileData.from_text("a\nb\nc", at=T0)
        assert data.content == ["a", "b", "c"]
        assert data.text == "a\nb\nc"
        assert data.created_at == data.modified_at == T0

    def test_naive_modified_at_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FileData(content=[], created_at=T0, modified_at=datetime(2026, 1, 1, 13, 0))

    def test_modified_before_created_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FileData(content=[], created_at=T0, modified_at=T0 - timedelta(seconds=1))


# ---------------------------------------------------------------------------
# FileStore
# ---------------------------------------------------------------------------


class TestNormalizePath:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("out.md", "/out.md"),
            ("/a//b/", "/a/b"),
            ("//x", "/x"),
            ("/a/./b/../c", "/a/c"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_path(raw) == expected


class TestFileStoreReadWrite:
    def test_write_then_read(self) -> None:
        store = FileStore()
        store.write("/out.md", "hello")
        assert store.read("/out.md").content == ["hello"]
        assert "/out.md" in store
        assert "out.md" in store
        assert len(store) == 1

    def test_write_accepts_line_list(self) -> None:
        store = FileStore()
        store.write("/a.txt", ["one", "two"])
        assert store["/a.txt"].text == "one\ntwo"

    def test_read_missing_raises_key_error(self) -> None:
        with pytest.raises(KeyError, match="File not found"):
            FileStore().read("/nope")

    def test_get_missing_returns_default(self) -> None:
        assert FileStore().get("/nope") is None

    def test_overwrite_keeps_created_at(self) -> None:
        store = FileStore()
        first = store.write("/a", "1")
        second = store.write("/a", "2")
        assert second.created_at == first.created_at
        assert second.modified_at >= first.modified_at
        assert store.read("/a").content == ["2"]

    def test_put_ignores_stale_write(self) -> None:
        store = FileStore()
        newer = FileData(content=["new"], created_at=T0, modified_at=T0 + timedelta(seconds=10))
        older = FileData(content=["old"], created_at=T0, modified_at=T0 + timedelta(seconds=5))
        assert store.put("/f", newer) is True
        assert store.put("/f", older) is False
        assert store.read("/f").content == ["new"]

    def test_put_later_write_wins(self) -> None:
        store = FileStore()
        store.put("/f", FileData(content=["a"], created_at=T0, modified_at=T0))
        store.put("/f", FileData(content=["b"], created_at=T0, modified_at=T0 + timedelta(seconds=1)))
        assert store.read("/f").content == ["b"]


class TestFileStoreEdit:
    def test_single_replacement(self) -> None:
        store = FileStore()
        store.write("/f", "hello world")
        assert store.edit("/f", "world", "there") == 1
        assert store.read("/f").text == "hello there"

    def test_ambiguous_match_requires_replace_all(self) -> None:
        store = FileStore()
        store.write("/f", "a a a")
        with pytest.raises(ValueError, match="Multiple occurrences"):
            store.edit("/f", "a", "b")
        assert store.edit("/f", "a", "b", replace_all=True) == 3
        assert store.read("/f").text == "b b b"

    def test_missing_string(self) -> None:
        store = FileStore()
        store.write("/f", "abc")
        with pytest.raises(ValueError, match="String not found"):
            store.edit("/f", "zzz", "y")

    def test_missing_file(self) -> None:
        with pytest.raises(KeyError):
            FileStore().edit("/f", "a", "b")


class TestFileStoreListing:
    def test_ls_lists_direct_children(self) -> None:
        store = FileStore()
        store.write("/a.txt", "")
        store.write("/docs/guide.md", "")
        store.write("/docs/api/ref.md", "")
        assert store.ls("/") == ["/a.txt", "/docs/"]
        assert store.ls("/docs") == ["/docs/api/", "/docs/guide.md"]

    def test_delete(self) -> None:
        store = FileStore()
        store.write("/a", "")
        store.delete("/a")
        assert "/a" not in store
        with pytest.raises(KeyError):
            store.delete("/a")

    def test_copy_is_independent(self) -> None:
        store = FileStore()
        store.write("/a", "1")
        clone = store.copy()
        clone.write("/a", "2")
        clone.write("/b", "new")
        assert store.read("/a").content == ["1"]
        assert "/b" not in store
        assert clone.holders == 1

    def test_iteration_is_sorted(self) -> None:
        store = FileStore({"/b": FileData(), "/a": FileData()})
        assert list(store) == ["/a", "/b"]


class TestFileStoreOwnership:
    def test_attach_and_detach(self) -> None:
        store = FileStore()
        assert store.holders == 1
        assert store.attach() is store
        assert store.holders == 2
        store.detach()
        store.detach()
        assert store.holders == 0

    def test_detach_without_holders_raises(self) -> None:
        store = FileStore()
        store.detach()
        with pytest.raises(RuntimeError):
            store.detach()


class TestFileStoreConcurrency:
    def test_threaded_writes_to_distinct_paths_all_land(self) -> None:
        store = FileStore()
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: store.write(f"/f{i}", str(i)), range(64)))
        assert len(store) == 64
        assert store.read("/f17").content == ["17"]

    def test_threaded_writes_to_same_path_keep_one_whole_value(self) -> None:
        store = FileStore()
        barrier = threading.Barrier(4)

        def write(tag: str) -> None:
            barrier.wait()
            for _ in range(25):
                store.write("/shared", [tag] * 10)

        threads = [threading.Thread(target=write, args=(t,)) for t in "abcd"]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        data = store.read("/shared")
        assert len(set(data.content)) == 1
        assert len(data.content) == 10
        assert data.modified_at >= data.created_at


# ---------------------------------------------------------------------------
# StateSnapshot
# ---------------------------------------------------------------------------


class TestStateSnapshot:
    def test_empty(self) -> None:
        state = StateSnapshot.empty()
        assert state.todos == []
        assert len(state.files) == 0

    def test_set_todo_status_supersedes_in_place(self) -> None:
        state = StateSnapshot()
        original = state.add_todo("x", id="t1")
        updated = state.set_todo_status("t1", TodoStatus.COMPLETED)
        assert state.todos == [updated]
        assert state.todo("t1").status == TodoStatus.COMPLETED
        assert original.status == TodoStatus.PENDING

    def test_set_todo_status_missing(self) -> None:
        with pytest.raises(KeyError):
            StateSnapshot().set_todo_status("ghost", "completed")

    def test_copy_todos_is_a_new_list(self) -> None:
        state = StateSnapshot()
        state.add_todo("x", id="t1")
        copied = state.copy_todos()
        copied.append(TodoItem(content="extra"))
        assert len(state.todos) == 1
