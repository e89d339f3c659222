"""Read-side queries over captured dev-process logs.

Everything here is read-only except :meth:`LogQuery.watch`, which
advances the per-process cursor, and :meth:`LogQuery.clear`.
"""
from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Optional

from devdeck.core.logstore import ProcessLogStore, read_lines, read_tail

logger = logging.getLogger("devdeck.log_query")

# Deliberately broad: "warning" counts as an error signal.
ERROR_PATTERN = re.compile(
    r"error|Error|ERROR|failed|Failed|FAILED|exception|Exception|EXCEPTION"
    r"|panic|PANIC|fatal|Fatal|FATAL|warning|Warning|WARN|\berr\b"
    r"|Cannot|cannot|undefined|Undefined|null"
    r"|TypeError|SyntaxError|ReferenceError|CompileError|ParseError"
    r"|ENOENT|EACCES|EPERM|segfault|Segmentation"
    r"|TS[0-9]+:|ESLint|error\[E[0-9]+\]"
)
_SEPARATOR_LINE = re.compile(r"^[=\-]*$")

ERRORS_PER_LOG = 100
LAST_LINE_WIDTH = 100


class UnknownProcessError(LookupError):
    pass


@dataclass
class ProcessSummary:
    name: str
    error_count: int
    last_line: str

    @property
    def ok(self) -> bool:
        return self.error_count == 0


@dataclass
class ProcessListing:
    name: str
    running: bool
    lines: int
    size_bytes: int
    error_count: int
    modified: str
    command: str = ""


@dataclass
class ProjectListing:
    project: str
    processes: int
    error_count: int
    current: bool


@dataclass
class ErrorLine:
    lineno: int
    text: str

    def __str__(self) -> str:
        return f"{self.lineno}:{self.text}"


def last_status_line(lines: list[str]) -> str:
    """Last line that is neither blank nor a ``===``/``---`` rule."""
    for line in reversed(lines):
        if line.strip() and not _SEPARATOR_LINE.match(line):
            return line[:LAST_LINE_WIDTH]
    return ""


def matching_lines(lines: list[str], first_lineno: int = 1) -> list[ErrorLine]:
    return [
        ErrorLine(lineno=i, text=line)
        for i, line in enumerate(lines, start=first_lineno)
        if ERROR_PATTERN.search(line)
    ]


class LogQuery:
    def __init__(self, store: ProcessLogStore, project: str) -> None:
        self.store = store
        self.project = project

    def _require(self, name: str) -> str:
        if not name:
            raise UnknownProcessError("process name required")
        path = self.store.log_path(self.project, name)
        if not os.path.isfile(path):
            raise UnknownProcessError(f"No log found for: {name}")
        return path

    def names(self) -> list[str]:
        return self.store.list_processes(self.project)

    def summary(self) -> list[ProcessSummary]:
        result = []
        for name in self.names():
            lines = read_lines(self.store.log_path(self.project, name))
            result.append(
                ProcessSummary(
                    name=name,
                    error_count=len(matching_lines(lines)),
                    last_line=last_status_line(lines),
                )
            )
        return result

    def list_processes(self) -> list[ProcessListing]:
        result = []
        for name in self.names():
            path = self.store.log_path(self.project, name)
            lines = read_lines(path)
            stat = os.stat(path)
            info = self.store.read_info(self.project, name)
            result.append(
                ProcessListing(
                    name=name,
                    running=self.store.is_running(self.project, name),
                    lines=len(lines),
                    size_bytes=stat.st_size,
                    error_count=len(matching_lines(lines)),
                    modified=time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(stat.st_mtime)),
                    command=info.command if info else "",
                )
            )
        return result

    def projects(self) -> list[ProjectListing]:
        result = []
        for project in self.store.list_projects():
            names = self.store.list_processes(project)
            errors = 0
            for name in names:
                errors += len(matching_lines(read_lines(self.store.log_path(project, name))))
            result.append(
                ProjectListing(
                    project=project,
                    processes=len(names),
                    error_count=errors,
                    current=project == self.project,
                )
            )
        return result

    def tail(self, name: str, n: int = 50) -> list[str]:
        lines, _ = read_tail(self._require(name), n)
        return lines

    def errors(self, name: Optional[str] = None, limit: int = ERRORS_PER_LOG) -> dict[str, list[ErrorLine]]:
        """Matching lines with their line numbers, most recent *limit* per log."""
        names = [name] if name else self.names()
        result: dict[str, list[ErrorLine]] = {}
        for each in names:
            lines = read_lines(self._require(each))
            result[each] = matching_lines(lines)[-limit:]
        return result

    def recent(self, n: int = 100) -> dict[str, list[ErrorLine]]:
        """Error lines among only the last *n* lines of each log."""
        result: dict[str, list[ErrorLine]] = {}
        for name in self.names():
            lines, total = read_tail(self.store.log_path(self.project, name), n)
            result[name] = matching_lines(lines, first_lineno=total - len(lines) + 1)
        return result

    def watch(self, name: str) -> list[str]:
        """Lines appended since the previous watch; advances the cursor."""
        path = self._require(name)
        previous = self.store.read_cursor(self.project, name)
        lines = read_lines(path)
        current = len(lines)
        new_lines: list[str] = []
        if current > previous:
            new_lines = lines[previous:]
        elif current < previous:
            logger.debug("Log %s/%s shrank (%d < %d); resetting cursor", self.project, name, current, previous)
        self.store.write_cursor(self.project, name, current)
        return new_lines

    def clear(self, name: str) -> None:
        self._require(name)
        self.store.truncate(self.project, name)
        self.store.clear_cursor(self.project, name)
