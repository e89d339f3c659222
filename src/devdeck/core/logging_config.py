"""Centralized logging configuration for devdeck.

Sets up Python's logging system to write to stdout and a rotating log
file in the configured log directory. Also provides a dedicated JSONL
logger for delegation lifecycle events.

Log directory structure::

    ~/.devdeck/.logs/
    ├── devdeck.log               # All Python logger output (rotating)
    └── task-events.log           # One JSON record per delegation event

Supervised process output and delegated task transcripts are NOT written
here; they live under ``dev-logs/`` and ``logs/`` (see ``core.logstore``).
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from typing import Any

task_event_logger = logging.getLogger("devdeck._task_events")


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` files from the log directory.

    Called **before** any handlers are attached so there are no
    open-file conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for path in glob.glob(os.path.join(log_dir, "*.log*")):
        try:
            os.remove(path)
        except OSError:
            pass


def setup_logging(
    log_dir: str,
    log_level: str = "info",
    *,
    clear_on_launch: bool = False,
    console: bool = True,
) -> None:
    """Configure the logging system with console and file handlers.

    This should be called once at process startup. Supervisor panes pass
    ``console=False``: their terminal belongs to the child's output, so
    only warnings and above reach the console there.
    """
    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Clear any existing handlers (avoid duplicate output on re-init)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level if console else max(level, logging.WARNING))
    stream_handler.setFormatter(fmt)
    root.addHandler(stream_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "devdeck.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(task_event_logger, os.path.join(log_dir, "task-events.log"))

    logging.getLogger("devdeck").debug(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_task_event(task_id: str, event: str, **fields: Any) -> None:
    """Log a delegation lifecycle event to the task-events JSONL log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "task_id": task_id,
        "event": event,
    }
    for key, value in fields.items():
        if value is not None and value != "":
            record[key] = value
    try:
        task_event_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass
