"""Visible terminal panes via tmux."""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from typing import Optional

logger = logging.getLogger("devdeck.panes")


class PaneError(RuntimeError):
    pass


class TmuxPaneLauncher:
    """Opens split panes in the tmux session we are running inside."""

    def __init__(self, target: Optional[str] = None) -> None:
        self.target = target

    def available(self) -> bool:
        return bool(os.getenv("TMUX")) and shutil.which("tmux") is not None

    def open_pane(self, argv: list[str], cwd: str, *, vertical: bool = False) -> str:
        """Split the current pane and run *argv* in *cwd*. Returns the pane id."""
        if not self.available():
            raise PaneError("not running inside tmux")
        cmd = ["tmux", "split-window", "-v" if vertical else "-h", "-P", "-F", "#{pane_id}", "-c", cwd]
        if self.target:
            cmd.extend(["-t", self.target])
        cmd.append(shlex.join(argv))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=15)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            raise PaneError(f"tmux split-window failed: {exc}") from exc
        pane_id = result.stdout.strip()
        logger.info("Opened tmux pane %s: %s", pane_id, argv)
        return pane_id

    def balance(self) -> None:
        cmd = ["tmux", "select-layout", "main-vertical"]
        if self.target:
            cmd.extend(["-t", self.target])
        subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=15)
