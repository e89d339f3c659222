"""Durable status records for delegated tasks.

One JSON file per task at ``status/<task_id>.status``. A record is
created ``running`` and moves exactly once to a terminal status. Writers
always go through a temp file and ``os.replace`` so pollers never see a
torn document.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

logger = logging.getLogger("devdeck.status")

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_AUTH_REQUIRED = "auth_required"
STATUS_BRANCH_CREATION_FAILED = "branch_creation_failed"

TERMINAL_STATUSES = {
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_AUTH_REQUIRED,
    STATUS_BRANCH_CREATION_FAILED,
}
TASK_STATUSES = {STATUS_RUNNING} | TERMINAL_STATUSES

# Error sub-codes carried next to a terminal status
ERROR_CLI_NOT_FOUND = "cli_not_found"
ERROR_AUTH_PREFLIGHT = "auth_required_before_execution"
ERROR_AUTH_EXPIRED = "auth_expired_during_execution"
ERROR_BRANCH_CREATION = "branch_creation_failed"

RECENT_LIMIT = 10


class StatusTransitionError(RuntimeError):
    pass


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class DelegationTask:
    task_id: str
    ai_name: str
    status: str
    task_description: str
    project_path: str
    log_path: str
    started_at: str
    use_branch: bool = False
    branch_name: Optional[str] = None
    original_branch: Optional[str] = None
    completed_at: Optional[str] = None
    exit_code: Optional[int] = None
    commits_made: Optional[int] = None
    files_changed: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "ai_name": self.ai_name,
            "status": self.status,
            "task_description": self.task_description,
            "project_path": self.project_path,
            "use_branch": self.use_branch,
            "branch_name": self.branch_name or "",
            "original_branch": self.original_branch or "",
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "exit_code": self.exit_code,
            "log_path": self.log_path,
            "commits_made": self.commits_made,
            "files_changed": self.files_changed,
            "error": self.error,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, d: dict) -> DelegationTask:
        return cls(
            task_id=d["task_id"],
            ai_name=d.get("ai_name", ""),
            status=d.get("status", STATUS_RUNNING),
            task_description=d.get("task_description", ""),
            project_path=d.get("project_path", ""),
            log_path=d.get("log_path", ""),
            started_at=d.get("started_at", ""),
            use_branch=bool(d.get("use_branch", False)),
            branch_name=d.get("branch_name") or None,
            original_branch=d.get("original_branch") or None,
            completed_at=d.get("completed_at"),
            exit_code=d.get("exit_code"),
            commits_made=d.get("commits_made"),
            files_changed=d.get("files_changed"),
            error=d.get("error"),
            message=d.get("message"),
        )


class DelegationStatusStore:
    def __init__(self, status_dir: str) -> None:
        self.status_dir = status_dir

    def path_for(self, task_id: str) -> str:
        return os.path.join(self.status_dir, f"{task_id}.status")

    @staticmethod
    def _write_json_atomic(path: str, payload: dict[str, Any]) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.tmp{os.getpid()}"
        with open(tmp, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)

    # ── Writes ───────────────────────────────────────────────

    def create(self, task: DelegationTask) -> DelegationTask:
        """Persist a fresh record. Every record starts out ``running``."""
        if task.status != STATUS_RUNNING:
            raise StatusTransitionError(f"new task {task.task_id} must start running, not {task.status}")
        if os.path.exists(self.path_for(task.task_id)):
            raise StatusTransitionError(f"task {task.task_id} already exists")
        self._write_json_atomic(self.path_for(task.task_id), task.to_dict())
        logger.debug("Created status record %s", task.task_id)
        return task

    def save(self, task: DelegationTask) -> None:
        """Rewrite a record, refusing any edge outside running -> terminal."""
        current = self.read(task.task_id)
        if current is None:
            raise StatusTransitionError(f"task {task.task_id} was never created")
        if task.status not in TASK_STATUSES:
            raise StatusTransitionError(f"unknown status {task.status!r}")
        if current.is_terminal and (task.status != current.status):
            raise StatusTransitionError(
                f"task {task.task_id} is already {current.status}; cannot move to {task.status}"
            )
        self._write_json_atomic(self.path_for(task.task_id), task.to_dict())

    def finish(
        self,
        task: DelegationTask,
        status: str,
        *,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> DelegationTask:
        if status not in TERMINAL_STATUSES:
            raise StatusTransitionError(f"{status!r} is not a terminal status")
        task.status = status
        task.completed_at = _now_iso()
        if exit_code is not None:
            task.exit_code = exit_code
        if error is not None:
            task.error = error
        if message is not None:
            task.message = message
        self.save(task)
        logger.info("Task %s -> %s%s", task.task_id, status, f" ({error})" if error else "")
        return task

    # ── Reads ────────────────────────────────────────────────

    def read(self, task_id: str) -> Optional[DelegationTask]:
        try:
            with open(self.path_for(task_id), "r", encoding="utf-8") as f:
                return DelegationTask.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError) as exc:
            logger.warning("Unreadable status record %s: %s", task_id, exc)
            return None

    def _paths(self) -> list[str]:
        if not os.path.isdir(self.status_dir):
            return []
        return [
            os.path.join(self.status_dir, entry)
            for entry in os.listdir(self.status_dir)
            if entry.endswith(".status")
        ]

    def list_all(self) -> list[DelegationTask]:
        tasks = []
        for path in sorted(self._paths()):
            task = self.read(os.path.basename(path)[: -len(".status")])
            if task is not None:
                tasks.append(task)
        return tasks

    def running(self) -> list[DelegationTask]:
        return [t for t in self.list_all() if t.status == STATUS_RUNNING]

    def recent(self, limit: int = RECENT_LIMIT) -> list[DelegationTask]:
        """Most recently written records first."""
        paths = sorted(self._paths(), key=os.path.getmtime, reverse=True)[:limit]
        tasks = []
        for path in paths:
            task = self.read(os.path.basename(path)[: -len(".status")])
            if task is not None:
                tasks.append(task)
        return tasks

    def find(self, task_id: str) -> Optional[DelegationTask]:
        """Exact id first, then the first id containing *task_id*."""
        task = self.read(task_id)
        if task is not None:
            return task
        for candidate in self.list_all():
            if task_id in candidate.task_id:
                return candidate
        return None

    def clean(self) -> int:
        """Delete every record that is no longer running. Returns the count."""
        removed = 0
        for task in self.list_all():
            if task.status == STATUS_RUNNING:
                continue
            try:
                os.remove(self.path_for(task.task_id))
                removed += 1
            except FileNotFoundError:
                pass
        return removed
