"""Runs one delegated task against an AI command-line tool.

A task moves through: record created ``running`` -> credential probe ->
optional isolation branch -> enhanced prompt -> tool run -> output scan ->
terminal status + log trailer. The status record is the only thing other
processes look at, so every exit path ends in a terminal record.
"""
from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from typing import Callable, Optional

from devdeck.core.logging_config import log_task_event
from devdeck.core.status_store import (
    ERROR_AUTH_EXPIRED,
    ERROR_AUTH_PREFLIGHT,
    ERROR_BRANCH_CREATION,
    ERROR_CLI_NOT_FOUND,
    STATUS_AUTH_REQUIRED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    DelegationStatusStore,
    DelegationTask,
)
from devdeck.integrations.ai_cli import (
    AUTH_CLI_NOT_FOUND,
    AUTH_REQUIRED,
    AiCli,
    AiCliError,
    AiCliNotFound,
    AiTool,
    has_auth_failure,
    resolve_tool,
)
from devdeck.integrations.code_context import gather_context
from devdeck.integrations.git import GitError, GitRepo, branch_name_for

logger = logging.getLogger("devdeck.tasks")

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
LOG_RULE = "=" * 30

PROMPT_INSTRUCTIONS = (
    "INSTRUCTIONS:\n"
    "- Focus on the task described above\n"
    "- Make necessary code changes\n"
    "- Commit your changes with descriptive messages\n"
    "- Report what you did when complete"
)

ContextProvider = Callable[[str, str, float], str]


def build_enhanced_prompt(description: str, project_path: str, context: str = "") -> str:
    prompt = f"{description}\n\nPROJECT: {os.path.basename(os.path.normpath(project_path))}\nPATH: {project_path}"
    if context:
        prompt += f"\n\n## Relevant Code Context (from codebase analysis)\n```\n{context}\n```"
    return f"{prompt}\n\n{PROMPT_INSTRUCTIONS}"


class TaskRunner:
    def __init__(
        self,
        status_store: DelegationStatusStore,
        task_logs_dir: str,
        *,
        custom_tools: Optional[dict[str, dict]] = None,
        auth_probe_timeout: float = 10,
        index_timeout: float = 10,
        context_provider: Optional[ContextProvider] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = status_store
        self.task_logs_dir = task_logs_dir
        self.custom_tools = custom_tools or {}
        self.auth_probe_timeout = auth_probe_timeout
        self.index_timeout = index_timeout
        self.context_provider = context_provider or gather_context
        self.clock = clock

    def tool_for(self, ai_name: str) -> AiTool:
        return resolve_tool(ai_name, self.custom_tools)

    # ── Creation ─────────────────────────────────────────────

    def create_task(
        self,
        ai_name: str,
        description: str,
        project_path: str,
        *,
        use_branch: bool = False,
        branch_name: Optional[str] = None,
    ) -> DelegationTask:
        """Allocate an id and persist the initial ``running`` record."""
        project_path = os.path.abspath(project_path)
        now = self.clock()
        timestamp = now.strftime(TIMESTAMP_FORMAT)
        task_id = self._unique_id(f"{ai_name}_{timestamp}_{os.getpid()}")
        if use_branch and not branch_name:
            branch_name = branch_name_for(ai_name, description, timestamp)
        project_name = os.path.basename(os.path.normpath(project_path))
        task = DelegationTask(
            task_id=task_id,
            ai_name=ai_name,
            status=STATUS_RUNNING,
            task_description=description,
            project_path=project_path,
            log_path=os.path.join(self.task_logs_dir, project_name, f"{task_id}.log"),
            started_at=now.astimezone().isoformat(timespec="seconds"),
            use_branch=use_branch,
            branch_name=branch_name if use_branch else None,
        )
        self.store.create(task)
        log_task_event(task_id, "created", ai=ai_name, project=project_path, branch=task.branch_name)
        return task

    def _unique_id(self, base: str) -> str:
        candidate = base
        n = 1
        while os.path.exists(self.store.path_for(candidate)):
            n += 1
            candidate = f"{base}_{n}"
        return candidate

    # ── Pre-flight ───────────────────────────────────────────

    def preflight(self, task: DelegationTask) -> bool:
        """Probe the tool's credentials. False means the task is already final."""
        tool = self.tool_for(task.ai_name)
        outcome = AiCli(tool).probe_auth(self.auth_probe_timeout)
        if outcome == AUTH_CLI_NOT_FOUND:
            self._finish(
                task,
                STATUS_FAILED,
                error=ERROR_CLI_NOT_FOUND,
                message=f"{task.ai_name} CLI not installed",
            )
            return False
        if outcome == AUTH_REQUIRED:
            self._finish(
                task,
                STATUS_AUTH_REQUIRED,
                error=ERROR_AUTH_PREFLIGHT,
                message=f"{task.ai_name} requires authentication. Run '{tool.executable}' manually to log in.",
            )
            return False
        return True

    # ── Execution ────────────────────────────────────────────

    def run(
        self, task_id: str, on_line: Optional[Callable[[str], None]] = None
    ) -> Optional[DelegationTask]:
        """Entry point for background workers: execute a stored record."""
        task = self.store.read(task_id)
        if task is None:
            logger.error("No status record for task %s", task_id)
            return None
        if task.is_terminal:
            logger.warning("Task %s is already %s", task_id, task.status)
            return task
        try:
            return self.execute(task, on_line=on_line)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Task %s crashed", task_id)
            current = self.store.read(task_id) or task
            if current.is_terminal:
                return current
            return self._finish(current, STATUS_FAILED, error="internal_error", message=str(exc))

    def execute(
        self, task: DelegationTask, on_line: Optional[Callable[[str], None]] = None
    ) -> DelegationTask:
        log_task_event(task.task_id, "started", ai=task.ai_name)
        repo = GitRepo(task.project_path)

        if task.use_branch and task.branch_name:
            if not repo.is_repo():
                logger.warning(
                    "%s is not a git repository; running %s without branch isolation",
                    task.project_path,
                    task.task_id,
                )
                task.branch_name = None
                self.store.save(task)
            else:
                try:
                    task.original_branch = repo.current_branch()
                    repo.stash(f"delegate-{task.task_id}")
                    repo.create_branch(task.branch_name)
                except GitError as exc:
                    logger.error("Branch creation failed for %s: %s", task.task_id, exc)
                    return self._finish(
                        task,
                        STATUS_FAILED,
                        error=ERROR_BRANCH_CREATION,
                        message=f"Failed to create branch: {task.branch_name}",
                    )
                self.store.save(task)
                log_task_event(task.task_id, "branch_created", branch=task.branch_name)

        context = ""
        try:
            context = self.context_provider(task.project_path, task.task_description, self.index_timeout)
        except Exception:  # noqa: BLE001
            logger.debug("Code context unavailable for %s", task.task_id, exc_info=True)
        prompt = build_enhanced_prompt(task.task_description, task.project_path, context)
        self._write_log_header(task, prompt)

        cli = AiCli(self.tool_for(task.ai_name))
        try:
            exit_code, output = cli.run(
                prompt, cwd=task.project_path, log_path=task.log_path, on_line=on_line
            )
        except AiCliNotFound as exc:
            self._append_log(task, f"{exc}\n")
            self._finish(task, STATUS_FAILED, error=ERROR_CLI_NOT_FOUND, message=str(exc))
            self._write_log_trailer(task)
            return task
        except AiCliError as exc:
            self._append_log(task, f"{exc}\n")
            self._finish(task, STATUS_FAILED, exit_code=1, error="execution_error", message=str(exc))
            self._write_log_trailer(task)
            return task

        if has_auth_failure(output):
            self._finish(
                task,
                STATUS_AUTH_REQUIRED,
                exit_code=exit_code,
                error=ERROR_AUTH_EXPIRED,
                message=(
                    f"{task.ai_name} authentication expired during task. "
                    f"Run '{cli.tool.executable}' manually to re-login."
                ),
            )
        else:
            if task.branch_name and task.original_branch:
                task.commits_made = repo.commit_count(task.original_branch, task.branch_name)
                task.files_changed = repo.diff_stat(task.original_branch)
            status = STATUS_COMPLETED if exit_code == 0 else STATUS_FAILED
            self._finish(task, status, exit_code=exit_code)
        self._write_log_trailer(task)
        return task

    # ── Helpers ──────────────────────────────────────────────

    def _finish(self, task: DelegationTask, status: str, **kwargs) -> DelegationTask:
        self.store.finish(task, status, **kwargs)
        log_task_event(
            task.task_id,
            status,
            exit_code=task.exit_code,
            error=task.error,
            commits=task.commits_made,
        )
        return task

    def _append_log(self, task: DelegationTask, text: str) -> None:
        os.makedirs(os.path.dirname(task.log_path), exist_ok=True)
        with open(task.log_path, "a", encoding="utf-8") as f:
            f.write(text)

    def _write_log_header(self, task: DelegationTask, prompt: str) -> None:
        lines = [
            "=== ASYNC TASK DELEGATION ===",
            f"Task ID: {task.task_id}",
            f"AI: {task.ai_name}",
            f"Task: {task.task_description}",
            f"Project: {task.project_path}",
        ]
        if task.branch_name:
            lines.append(f"Branch: {task.branch_name}")
        if task.original_branch:
            lines.append(f"Original Branch: {task.original_branch}")
        lines += [
            f"Started: {time.strftime('%a %b %d %H:%M:%S %Y')}",
            LOG_RULE,
            "",
            "Enhanced Prompt:",
            prompt,
            "",
            LOG_RULE,
            "",
        ]
        os.makedirs(os.path.dirname(task.log_path), exist_ok=True)
        with open(task.log_path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

    def _write_log_trailer(self, task: DelegationTask) -> None:
        lines = ["", LOG_RULE, f"Status: {task.status}", f"Exit Code: {task.exit_code}"]
        if task.branch_name:
            lines.append(f"Branch: {task.branch_name} (commits: {task.commits_made or 0})")
        lines.append(f"Completed: {time.strftime('%a %b %d %H:%M:%S %Y')}")
        self._append_log(task, "\n".join(lines) + "\n")
