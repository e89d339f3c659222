"""On-disk layout for supervised dev processes.

Each (project, name) pair owns three files under ``dev-logs/<project>/``:

- ``<name>.log``   append-only combined stdout/stderr
- ``<name>.pid``   pid of the supervising devdeck process (a hint only)
- ``<name>.info``  JSON metadata rewritten on every (re)start

and a watch cursor at ``dev-markers/<project>_<name>.marker``.
"""
from __future__ import annotations

import json
import logging
import os
import signal
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from devdeck.core.process_tree import ProcessPlatform, PsutilPlatform

logger = logging.getLogger("devdeck.logstore")

HEADER_RULE = "=" * 40


def _now_human() -> str:
    return time.strftime("%a %b %d %H:%M:%S %Y")


@dataclass
class LogRecord:
    name: str
    project: str
    command: str
    started_at: str
    cwd: str
    log_path: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "project": self.project,
            "command": self.command,
            "started": self.started_at,
            "cwd": self.cwd,
            "log_path": self.log_path,
        }

    @staticmethod
    def from_dict(d: dict) -> "LogRecord":
        return LogRecord(
            name=d.get("name", ""),
            project=d.get("project", ""),
            command=d.get("command", ""),
            started_at=d.get("started", ""),
            cwd=d.get("cwd", ""),
            log_path=d.get("log_path", ""),
        )


def read_lines(path: str) -> list[str]:
    """Return every line of *path* without trailing newlines."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in f]


def read_tail(path: str, n: int) -> tuple[list[str], int]:
    """Return the last *n* lines of *path* and the total line count."""
    window: deque[str] = deque(maxlen=max(n, 0))
    total = 0
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            total += 1
            window.append(line.rstrip("\n"))
    return list(window), total


class ProcessLogStore:
    def __init__(
        self,
        dev_logs_dir: str,
        markers_dir: str,
        platform: Optional[ProcessPlatform] = None,
    ) -> None:
        self.dev_logs_dir = dev_logs_dir
        self.markers_dir = markers_dir
        self.platform = platform or PsutilPlatform()

    # ── Paths ────────────────────────────────────────────────

    def project_dir(self, project: str) -> str:
        return os.path.join(self.dev_logs_dir, project)

    def log_path(self, project: str, name: str) -> str:
        return os.path.join(self.project_dir(project), f"{name}.log")

    def pid_path(self, project: str, name: str) -> str:
        return os.path.join(self.project_dir(project), f"{name}.pid")

    def info_path(self, project: str, name: str) -> str:
        return os.path.join(self.project_dir(project), f"{name}.info")

    def cursor_path(self, project: str, name: str) -> str:
        return os.path.join(self.markers_dir, f"{project}_{name}.marker")

    # ── Session lifecycle ────────────────────────────────────

    def new_record(self, project: str, name: str, command: str, cwd: str) -> LogRecord:
        return LogRecord(
            name=name,
            project=project,
            command=command,
            started_at=datetime.now().astimezone().isoformat(timespec="seconds"),
            cwd=cwd,
            log_path=self.log_path(project, name),
        )

    def begin_session(self, record: LogRecord, *, restart: bool = False) -> None:
        """Prepare the log for a (re)start and write the header and info file.

        A fresh session truncates the log; a restart appends a separator so
        everything above it stays intact.
        """
        os.makedirs(self.project_dir(record.project), exist_ok=True)
        mode = "a" if restart else "w"
        with open(record.log_path, mode, encoding="utf-8") as f:
            if restart:
                f.write(f"\n=== RESTARTED: {_now_human()} ===\n\n")
            f.write(f"=== Dev process '{record.name}' starting ===\n")
            f.write(f"Project: {record.project}\n")
            f.write(f"Command: {record.command}\n")
            f.write(f"Started: {_now_human()}\n")
            f.write(f"CWD: {record.cwd}\n")
            f.write(HEADER_RULE + "\n")
        self.write_info(record)

    def write_info(self, record: LogRecord) -> None:
        path = self.info_path(record.project, record.name)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(tmp_path, path)

    def read_info(self, project: str, name: str) -> Optional[LogRecord]:
        try:
            with open(self.info_path(project, name), "r", encoding="utf-8") as f:
                return LogRecord.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError):
            return None

    def append_trailer(self, project: str, name: str) -> None:
        path = self.log_path(project, name)
        if not os.path.exists(path):
            return
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"\n=== Process '{name}' stopped: {_now_human()} ===\n")

    def truncate(self, project: str, name: str) -> None:
        with open(self.log_path(project, name), "w", encoding="utf-8"):
            pass

    # ── Liveness marker ──────────────────────────────────────

    @contextmanager
    def liveness(self, project: str, name: str) -> Iterator[str]:
        """Hold the pid file for the duration of the block."""
        path = self.pid_path(project, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        try:
            yield path
        finally:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def read_pid(self, project: str, name: str) -> Optional[int]:
        try:
            with open(self.pid_path(project, name), "r", encoding="utf-8") as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def is_running(self, project: str, name: str) -> bool:
        """PID file present *and* its process answers a liveness probe."""
        pid = self.read_pid(project, name)
        return pid is not None and self.platform.is_alive(pid)

    # ── Watch cursor ─────────────────────────────────────────

    def read_cursor(self, project: str, name: str) -> int:
        try:
            with open(self.cursor_path(project, name), "r", encoding="utf-8") as f:
                return int(f.read().strip() or 0)
        except (OSError, ValueError):
            return 0

    def write_cursor(self, project: str, name: str, count: int) -> None:
        os.makedirs(self.markers_dir, exist_ok=True)
        with open(self.cursor_path(project, name), "w", encoding="utf-8") as f:
            f.write(str(count))

    def clear_cursor(self, project: str, name: str) -> None:
        try:
            os.remove(self.cursor_path(project, name))
        except FileNotFoundError:
            pass

    # ── Enumeration ──────────────────────────────────────────

    def list_projects(self) -> list[str]:
        if not os.path.isdir(self.dev_logs_dir):
            return []
        return sorted(
            entry for entry in os.listdir(self.dev_logs_dir)
            if os.path.isdir(os.path.join(self.dev_logs_dir, entry))
        )

    def list_processes(self, project: str) -> list[str]:
        directory = self.project_dir(project)
        if not os.path.isdir(directory):
            return []
        return sorted(
            entry[: -len(".log")] for entry in os.listdir(directory)
            if entry.endswith(".log")
        )

    # ── Workspace teardown ───────────────────────────────────

    def cleanup(self, project: str, grace: float = 0.5) -> list[str]:
        """Stop every supervisor of *project* that holds a pid file.

        Returns the names whose supervisor was signalled.
        """
        directory = self.project_dir(project)
        if not os.path.isdir(directory):
            return []
        stopped: list[str] = []
        for entry in sorted(os.listdir(directory)):
            if not entry.endswith(".pid"):
                continue
            name = entry[: -len(".pid")]
            pid = self.read_pid(project, name)
            if pid is not None and self.platform.is_alive(pid):
                logger.info("Stopping supervisor %s/%s (pid %d)", project, name, pid)
                self.platform.signal(pid, signal.SIGTERM)
                time.sleep(grace)
                if self.platform.is_alive(pid):
                    self.platform.signal(pid, signal.SIGKILL)
                stopped.append(name)
            try:
                os.remove(os.path.join(directory, entry))
            except FileNotFoundError:
                pass
        return stopped
