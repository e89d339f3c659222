"""Thin git wrapper used for delegation branch isolation."""
from __future__ import annotations

import logging
import re
import subprocess
from typing import Optional

logger = logging.getLogger("devdeck.git")

BRANCH_SLUG_LENGTH = 30


class GitError(RuntimeError):
    pass


def _run_git(repo_dir: str, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    """Run a git command in the given repo directory."""
    cmd = ["git", "-C", repo_dir] + list(args)
    return subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        check=check,
        timeout=60,
    )


def slugify(description: str, limit: int = BRANCH_SLUG_LENGTH) -> str:
    """Lower-case, collapse non-alphanumeric runs to '-', cut to *limit*."""
    slug = re.sub(r"[^a-z0-9]+", "-", description.lower())
    return slug[:limit]


def branch_name_for(ai_name: str, description: str, timestamp: str) -> str:
    return f"delegate/{ai_name}/{slugify(description)}-{timestamp}"


def toplevel(path: str) -> Optional[str]:
    """Return the work-tree root containing *path*, or None."""
    try:
        result = _run_git(path, "rev-parse", "--show-toplevel", check=False)
    except (subprocess.TimeoutExpired, FileNotFoundError, NotADirectoryError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


class GitRepo:
    def __init__(self, path: str) -> None:
        self.path = path

    def is_repo(self) -> bool:
        try:
            result = _run_git(self.path, "rev-parse", "--is-inside-work-tree", check=False)
            return result.returncode == 0 and result.stdout.strip() == "true"
        except (subprocess.TimeoutExpired, FileNotFoundError, NotADirectoryError):
            return False

    def current_branch(self) -> str:
        try:
            result = _run_git(self.path, "rev-parse", "--abbrev-ref", "HEAD")
        except subprocess.CalledProcessError as exc:
            raise GitError(exc.stderr.strip() or "cannot resolve HEAD") from exc
        return result.stdout.strip()

    def stash(self, message: str) -> bool:
        """Stash uncommitted changes. Best effort: failures are only logged."""
        try:
            result = _run_git(self.path, "stash", "push", "-m", message, check=False)
        except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
            logger.warning("git stash failed in %s: %s", self.path, exc)
            return False
        if result.returncode != 0:
            logger.warning("git stash failed in %s: %s", self.path, result.stderr.strip())
            return False
        return "No local changes" not in result.stdout

    def create_branch(self, name: str) -> None:
        try:
            _run_git(self.path, "checkout", "-b", name)
        except subprocess.CalledProcessError as exc:
            raise GitError(exc.stderr.strip() or f"cannot create branch {name}") from exc
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git checkout timed out creating {name}") from exc

    def commit_count(self, base: str, head: str) -> int:
        result = _run_git(self.path, "rev-list", "--count", f"{base}..{head}", check=False)
        if result.returncode != 0:
            return 0
        try:
            return int(result.stdout.strip() or 0)
        except ValueError:
            return 0

    def diff_stat(self, base: str) -> str:
        """Return the summary line of ``git diff --stat base``."""
        result = _run_git(self.path, "diff", "--stat", base, check=False)
        if result.returncode != 0:
            return ""
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return lines[-1] if lines else ""
