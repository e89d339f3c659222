"""Optional code-context enrichment from the ``tldr`` indexer.

Nothing here is required for delegation: a missing binary, missing
index, timeout or error all yield an empty string.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess

logger = logging.getLogger("devdeck.code_context")

TLDR_DIR = ".tldr"
SEMANTIC_INDEX = os.path.join(TLDR_DIR, "cache", "semantic", "index.faiss")
SEMANTIC_LINES = 50
STRUCTURE_LINES = 80


def _run_tldr(exe: str, args: list[str], cwd: str, timeout: float, max_lines: int) -> str:
    try:
        result = subprocess.run(
            [exe] + args,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        logger.debug("tldr %s unavailable in %s: %s", args[0], cwd, exc)
        return ""
    if result.returncode != 0:
        return ""
    return "\n".join(result.stdout.splitlines()[:max_lines]).strip()


def gather_context(project_path: str, task_description: str, timeout: float = 10) -> str:
    exe = shutil.which("tldr")
    if not exe or not os.path.isdir(os.path.join(project_path, TLDR_DIR)):
        return ""
    context = ""
    if os.path.isfile(os.path.join(project_path, SEMANTIC_INDEX)):
        context = _run_tldr(
            exe, ["semantic", "search", task_description, "--limit", "5"],
            project_path, timeout, SEMANTIC_LINES,
        )
    if not context:
        context = _run_tldr(exe, ["structure"], project_path, timeout, STRUCTURE_LINES)
    return context
