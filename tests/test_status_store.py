from __future__ import annotations

import json
import os

import pytest

from devdeck.core.status_store import (
    ERROR_CLI_NOT_FOUND,
    STATUS_AUTH_REQUIRED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    DelegationStatusStore,
    DelegationTask,
    StatusTransitionError,
)


def _task(task_id: str = "codex_20260101_120000_1", status: str = STATUS_RUNNING) -> DelegationTask:
    return DelegationTask(
        task_id=task_id,
        ai_name="codex",
        status=status,
        task_description="add a health endpoint",
        project_path="/tmp/project",
        log_path=f"/tmp/logs/{task_id}.log",
        started_at="2026-01-01T12:00:00+00:00",
    )


@pytest.fixture
def store(settings):
    return DelegationStatusStore(settings.status_dir)


class TestLifecycle:
    def test_create_writes_running_record(self, store):
        task = store.create(_task())
        with open(store.path_for(task.task_id), encoding="utf-8") as f:
            data = json.load(f)
        assert data["status"] == STATUS_RUNNING
        assert data["branch_name"] == ""
        assert data["completed_at"] is None
        assert store.read(task.task_id) == task

    def test_create_rejects_non_running(self, store):
        with pytest.raises(StatusTransitionError):
            store.create(_task(status=STATUS_COMPLETED))

    def test_create_rejects_duplicate(self, store):
        store.create(_task())
        with pytest.raises(StatusTransitionError):
            store.create(_task())

    def test_finish_moves_to_terminal(self, store):
        task = store.create(_task())
        store.finish(task, STATUS_FAILED, exit_code=127, error=ERROR_CLI_NOT_FOUND, message="not installed")
        saved = store.read(task.task_id)
        assert saved.status == STATUS_FAILED
        assert saved.error == ERROR_CLI_NOT_FOUND
        assert saved.exit_code == 127
        assert saved.completed_at

    def test_terminal_status_is_final(self, store):
        task = store.create(_task())
        store.finish(task, STATUS_COMPLETED, exit_code=0)
        task.status = STATUS_RUNNING
        with pytest.raises(StatusTransitionError):
            store.save(task)
        with pytest.raises(StatusTransitionError):
            store.finish(task, STATUS_AUTH_REQUIRED)
        assert store.read(task.task_id).status == STATUS_COMPLETED

    def test_finish_requires_terminal_status(self, store):
        task = store.create(_task())
        with pytest.raises(StatusTransitionError):
            store.finish(task, STATUS_RUNNING)

    def test_unknown_status_rejected(self, store):
        task = store.create(_task())
        task.status = "paused"
        with pytest.raises(StatusTransitionError):
            store.save(task)

    def test_save_requires_existing_record(self, store):
        with pytest.raises(StatusTransitionError):
            store.save(_task())

    def test_no_temp_files_left_behind(self, store):
        task = store.create(_task())
        store.finish(task, STATUS_COMPLETED, exit_code=0)
        assert os.listdir(store.status_dir) == [f"{task.task_id}.status"]


class TestQueries:
    def test_read_missing(self, store):
        assert store.read("nope") is None
        assert store.list_all() == []

    def test_unreadable_record_is_skipped(self, store):
        store.create(_task("good"))
        with open(store.path_for("bad"), "w", encoding="utf-8") as f:
            f.write("{not json")
        assert [t.task_id for t in store.list_all()] == ["good"]

    def test_find_exact_then_partial(self, store):
        store.create(_task("codex_20260101_120000_1"))
        store.create(_task("gemini_20260101_130000_2"))
        assert store.find("codex_20260101_120000_1").task_id == "codex_20260101_120000_1"
        assert store.find("gemini").task_id == "gemini_20260101_130000_2"
        assert store.find("aider") is None

    def test_running_and_recent(self, store):
        for i, task_id in enumerate(("a", "b", "c")):
            store.create(_task(task_id))
            os.utime(store.path_for(task_id), (1_000_000 + i, 1_000_000 + i))
        store.finish(store.read("a"), STATUS_COMPLETED, exit_code=0)
        os.utime(store.path_for("a"), (900_000, 900_000))

        assert [t.task_id for t in store.running()] == ["b", "c"]
        assert [t.task_id for t in store.recent()] == ["c", "b", "a"]
        assert [t.task_id for t in store.recent(limit=1)] == ["c"]

    def test_clean_keeps_running(self, store):
        store.create(_task("a"))
        store.create(_task("b"))
        store.finish(store.read("a"), STATUS_FAILED, exit_code=1)
        assert store.clean() == 1
        assert [t.task_id for t in store.list_all()] == ["b"]
