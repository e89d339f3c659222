from __future__ import annotations

import logging
import os
import shutil
import signal
import stat
import subprocess
from pathlib import Path

import pytest

from devdeck.core.config import Settings
from devdeck.core.logstore import ProcessLogStore


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    events = logging.getLogger("devdeck._task_events")
    for handler in events.handlers:
        handler.close()
    events.handlers.clear()
    events.propagate = True


@pytest.fixture
def home(tmp_path, monkeypatch):
    root = tmp_path / "devdeck-home"
    monkeypatch.setenv("DEVDECK_HOME", str(root))
    monkeypatch.setenv("DEVDECK_LOG_LEVEL", "critical")
    for name in ("DEVDECK_LOG_DIR", "DEV_PROJECT", "TMUX", "DEVDECK_CLEAR_LOGS_ON_LAUNCH"):
        monkeypatch.delenv(name, raising=False)
    return root


@pytest.fixture
def settings(home):
    return Settings.from_env()


# ── Fake process platform ────────────────────────────────────


class FakePlatform:
    """In-memory process table for the teardown and port algorithms.

    ``stubborn`` pids ignore SIGTERM; ``immortal`` pids ignore everything.
    """

    def __init__(self, tree=None, *, ports=None, stubborn=(), immortal=()):
        self.tree = tree or {}
        self.ports = ports or {}
        self.stubborn = set(stubborn)
        self.immortal = set(immortal)
        self.alive = set(self.tree)
        for children in self.tree.values():
            self.alive.update(children)
        self.alive.update(self.ports)
        self.signals: list[tuple[int, int]] = []

    def list_children(self, pid):
        return [c for c in self.tree.get(pid, []) if c in self.alive]

    def list_listening_ports(self, pid):
        return list(self.ports.get(pid, [])) if pid in self.alive else []

    def signal(self, pid, sig):
        self.signals.append((pid, sig))
        if pid in self.immortal:
            return
        if sig == signal.SIGKILL or pid not in self.stubborn:
            self.alive.discard(pid)

    def is_alive(self, pid):
        return pid in self.alive

    def port_in_use(self, port):
        return any(port in ports and pid in self.alive for pid, ports in self.ports.items())


@pytest.fixture
def fake_platform():
    return FakePlatform


@pytest.fixture
def log_store(settings):
    return ProcessLogStore(settings.dev_logs_dir, settings.markers_dir, platform=FakePlatform())


# ── Fake AI tools ────────────────────────────────────────────


@pytest.fixture
def make_tool(tmp_path):
    """Write an executable shell script standing in for an AI CLI."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> str:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


# ── Git ──────────────────────────────────────────────────────


@pytest.fixture
def git_identity(monkeypatch):
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Dev Deck")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "devdeck@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Dev Deck")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "devdeck@example.com")


@pytest.fixture
def git_repo(tmp_path, git_identity) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git not available")
    repo = tmp_path / "project"
    repo.mkdir()
    subprocess.run(["git", "init", "-q", str(repo)], check=True)
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    subprocess.run(["git", "-C", str(repo), "add", "README.md"], check=True)
    subprocess.run(["git", "-C", str(repo), "commit", "-q", "-m", "initial"], check=True)
    return repo


@pytest.fixture
def plain_dir(tmp_path) -> Path:
    path = tmp_path / "not-a-repo"
    path.mkdir()
    return path


def pytest_collection_modifyitems(config, items):
    if os.name == "nt":
        skip = pytest.mark.skip(reason="POSIX process semantics required")
        for item in items:
            item.add_marker(skip)
