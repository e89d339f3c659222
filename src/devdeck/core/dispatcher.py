"""Public entry point for handing a coding task to an AI tool.

Strategy selection, first match wins:

1. ``visible`` (explicit, or ``delegation.visible_by_default``) opens the
   tool interactively in a tmux pane
2. ``sync`` runs the task in the foreground and returns the final record
3. otherwise the task runs in the background and the caller gets the
   ``running`` handle straight away
"""
from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from devdeck.core.project import ConfigurationError
from devdeck.core.settings_store import SettingsStore
from devdeck.core.status_store import DelegationTask
from devdeck.core.task_runner import TaskRunner
from devdeck.integrations.panes import PaneError, TmuxPaneLauncher

logger = logging.getLogger("devdeck.dispatcher")

STRATEGY_VISIBLE = "visible"
STRATEGY_SYNC = "sync"
STRATEGY_BACKGROUND = "background"


@dataclass
class TaskHandle:
    task_id: str
    status_path: str
    status: str
    strategy: str
    branch: str = ""
    error: Optional[str] = None
    message: Optional[str] = None
    log_path: str = ""
    exit_code: Optional[int] = None

    def to_dict(self) -> dict:
        data = {
            "task_id": self.task_id,
            "status": self.status,
            "status_file": self.status_path,
            "log_file": self.log_path,
            "strategy": self.strategy,
        }
        if self.branch:
            data["branch"] = self.branch
        if self.error:
            data["error"] = self.error
        if self.message:
            data["message"] = self.message
        if self.exit_code is not None:
            data["exit_code"] = self.exit_code
        return data


# ── Spawners ─────────────────────────────────────────────────


class Spawner(Protocol):
    def spawn(self, task_id: str) -> None: ...


class DetachedProcessSpawner:
    """Runs ``devdeck run-task <id>`` in a new session that outlives us."""

    def __init__(self, env: Optional[dict[str, str]] = None) -> None:
        self.env = env

    def spawn(self, task_id: str) -> None:
        subprocess.Popen(
            [sys.executable, "-m", "devdeck.cli", "run-task", task_id],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            env=self.env,
        )
        logger.debug("Spawned detached runner for %s", task_id)


class ThreadSpawner:
    """Runs the task on an in-process thread."""

    def __init__(self, runner: TaskRunner) -> None:
        self.runner = runner
        self.threads: list[threading.Thread] = []

    def spawn(self, task_id: str) -> None:
        thread = threading.Thread(
            target=self.runner.run,
            args=(task_id,),
            name=f"devdeck-task-{task_id}",
            daemon=True,
        )
        thread.start()
        self.threads.append(thread)

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self.threads:
            thread.join(timeout)


# ── Dispatcher ───────────────────────────────────────────────


class DelegationDispatcher:
    def __init__(
        self,
        runner: TaskRunner,
        settings: SettingsStore,
        *,
        spawner: Optional[Spawner] = None,
        panes: Optional[TmuxPaneLauncher] = None,
    ) -> None:
        self.runner = runner
        self.settings = settings
        self.spawner = spawner or DetachedProcessSpawner()
        self.panes = panes or TmuxPaneLauncher()

    def choose_strategy(self, visible: Optional[bool], sync: bool) -> str:
        if visible is None:
            visible = self.settings.visible_by_default()
        if visible:
            if self.panes.available():
                return STRATEGY_VISIBLE
            logger.warning("Visible delegation needs tmux; falling back to background")
        if sync:
            return STRATEGY_SYNC
        return STRATEGY_BACKGROUND

    def dispatch(
        self,
        ai_name: str,
        task_description: str,
        project_path: str,
        *,
        visible: Optional[bool] = None,
        use_branch: Optional[bool] = None,
        branch_name: Optional[str] = None,
        sync: bool = False,
    ) -> TaskHandle:
        if not ai_name or not task_description:
            raise ConfigurationError("ai_name and task_description are required")
        if not os.path.isdir(project_path):
            raise ConfigurationError(f"Directory not found: {project_path}")
        if branch_name:
            use_branch = True
        if use_branch is None:
            use_branch = self.settings.use_branches()

        strategy = self.choose_strategy(visible, sync)
        task = self.runner.create_task(
            ai_name,
            task_description,
            project_path,
            use_branch=use_branch,
            branch_name=branch_name,
        )
        logger.info("Dispatching %s to %s (%s)", task.task_id, ai_name, strategy)

        if not self.runner.preflight(task):
            return self._handle(task, strategy)

        if strategy == STRATEGY_VISIBLE:
            self._open_visible(task)
        elif strategy == STRATEGY_SYNC:
            task = self.runner.run(task.task_id) or task
        else:
            self.spawner.spawn(task.task_id)
        return self._handle(task, strategy)

    def dispatch_batch(self, project_path: str, entries: list[dict]) -> list[TaskHandle]:
        """Dispatch ``[{"ai": ..., "description": ...}]`` in the background."""
        handles = []
        for entry in entries:
            ai_name = entry.get("ai") or entry.get("ai_name")
            description = entry.get("description") or entry.get("task")
            if not ai_name or not description:
                logger.warning("Skipping malformed batch entry: %s", entry)
                continue
            handles.append(
                self.dispatch(ai_name, description, project_path, visible=False, use_branch=entry.get("branch"))
            )
        return handles

    def _open_visible(self, task: DelegationTask) -> None:
        argv = [sys.executable, "-m", "devdeck.cli", "run-task", task.task_id, "--interactive"]
        try:
            self.panes.open_pane(argv, task.project_path)
        except PaneError as exc:
            logger.warning("Could not open pane for %s (%s); running in background", task.task_id, exc)
            self.spawner.spawn(task.task_id)

    def _handle(self, task: DelegationTask, strategy: str) -> TaskHandle:
        return TaskHandle(
            task_id=task.task_id,
            status_path=self.runner.store.path_for(task.task_id),
            status=task.status,
            strategy=strategy,
            branch=task.branch_name or "",
            error=task.error,
            message=task.message,
            log_path=task.log_path,
            exit_code=task.exit_code,
        )


def handles_to_json(handles: list[TaskHandle]) -> str:
    return json.dumps([h.to_dict() for h in handles], indent=2)
