"""Long-running wrapper around one dev process.

The supervisor runs a command, tees its combined output to the terminal
and to the process log, and restarts it in place when the operator types
``rs`` + Enter on the control channel. The loop is a small reactor: each
iteration waits up to ``poll_interval`` seconds for control input, then
checks whether the child exited or a stop signal arrived.

Restart tears down the whole process tree and then waits for the ports
the old instance was serving on to be free before spawning again. Ports
are only waited on; their holders are never signalled unless they belong
to the tree.
"""
from __future__ import annotations

import logging
import os
import re
import select
import shlex
import signal
import subprocess
import sys
import threading
import time
from typing import IO, Callable, Optional, TextIO, Union

from devdeck.core.logstore import LogRecord, ProcessLogStore, read_tail
from devdeck.core.ports import (
    LOG_SCAN_LINES,
    discover_ports,
    format_ports,
    wait_for_ports_released,
)
from devdeck.core.process_tree import (
    ProcessPlatform,
    PsutilPlatform,
    collect_tree,
    terminate_tree,
)

logger = logging.getLogger("devdeck.supervisor")

RESTART_SENTINEL = "rs"
RESTART_SETTLE = 0.3
PUMP_JOIN_TIMEOUT = 2.0
REAP_TIMEOUT = 5.0

# Commands containing any of these are handed to the shell.
SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?~]|[$]\(|[$]\{?\w|^\s*\w+=)")

EXITED = "exited"
RESTART = "restart"
STOP = "stop"


def split_command(command: str) -> tuple[Union[str, list[str]], bool]:
    """Return ``(args, shell)`` for :class:`subprocess.Popen`."""
    if SHELL_REQUIRED_PATTERN.search(command):
        return command, True
    try:
        return shlex.split(command), False
    except ValueError:
        return command, True


def exit_status(returncode: int) -> int:
    """Map a Popen return code to a shell-style exit status."""
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class ProcessSupervisor:
    def __init__(
        self,
        store: ProcessLogStore,
        name: str,
        command: str,
        *,
        project: str,
        cwd: Optional[str] = None,
        platform: Optional[ProcessPlatform] = None,
        control: Optional[Union[int, IO]] = None,
        terminal: Optional[TextIO] = None,
        pause: Optional[Callable[[], None]] = None,
        port_wait_attempts: int = 20,
        port_wait_interval: float = 0.3,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.name = name
        self.command = command
        self.project = project
        self.cwd = os.path.abspath(cwd or os.getcwd())
        self.platform = platform or PsutilPlatform()
        self.terminal = terminal if terminal is not None else sys.stdout
        self.pause = pause
        self.port_wait_attempts = port_wait_attempts
        self.port_wait_interval = port_wait_interval
        self.poll_interval = poll_interval
        self.sleep = sleep

        self._control_fd: Optional[int] = None
        if control is not None:
            self._control_fd = control if isinstance(control, int) else control.fileno()
        self._control_buffer = b""
        self._stop_signal: Optional[int] = None
        self._wakeup = threading.Event()
        self._terminal_lock = threading.Lock()

    # ── Public API ───────────────────────────────────────────

    def request_stop(self, signum: int = signal.SIGINT) -> None:
        """Ask the loop to tear the child down and return."""
        self._stop_signal = signum
        self._wakeup.set()

    def run(self) -> int:
        """Supervise until the child exits on its own or a stop is requested.

        Returns the child's exit status on natural exit, 0 when stopped.
        """
        restore = self._install_signal_handlers()
        restart = False
        exit_code = 0
        try:
            self._echo(f"Logging to: {self.store.log_path(self.project, self.name)}\n")
            self._echo(f"Type '{RESTART_SENTINEL}' + Enter to restart, Ctrl+C to stop.\n\n")
            while True:
                record = self.store.new_record(self.project, self.name, self.command, self.cwd)
                self.store.begin_session(record, restart=restart)
                with self.store.liveness(self.project, self.name):
                    outcome, exit_code = self._run_once(record)

                if outcome == RESTART and self._stop_signal is None:
                    logger.info("Restarting %s/%s", self.project, self.name)
                    self._echo(f"\nRestarting {self.name}...\n\n")
                    restart = True
                    continue
                if outcome != EXITED:
                    self._finish_stopped()
                    exit_code = 0
                else:
                    logger.info("%s/%s exited with %d", self.project, self.name, exit_code)
                break
        finally:
            restore()
            self.store.append_trailer(self.project, self.name)
        return exit_code

    # ── One child lifetime ───────────────────────────────────

    def _run_once(self, record: LogRecord) -> tuple[str, int]:
        try:
            proc = self._spawn()
        except OSError as exc:
            logger.error("Failed to start %s: %s", self.command, exc)
            with open(record.log_path, "a", encoding="utf-8") as f:
                f.write(f"Failed to start: {exc}\n")
            self._echo(f"Failed to start: {exc}\n")
            return EXITED, 127

        pump = threading.Thread(
            target=self._pump,
            args=(proc, record.log_path),
            name=f"devdeck-pump-{self.name}",
            daemon=True,
        )
        pump.start()

        outcome = self._watch(proc)
        if outcome == EXITED:
            code = exit_status(proc.wait())
            pump.join(timeout=PUMP_JOIN_TIMEOUT)
            return EXITED, code

        if outcome == RESTART:
            self._restart_teardown(proc, record)
        else:
            self._stop_teardown(proc)
        pump.join(timeout=PUMP_JOIN_TIMEOUT)
        return outcome, 0

    def _spawn(self) -> subprocess.Popen:
        args, shell = split_command(self.command)
        logger.debug("Spawning %r (shell=%s) in %s", args, shell, self.cwd)
        return subprocess.Popen(
            args,
            cwd=self.cwd,
            shell=shell,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            start_new_session=True,
        )

    def _pump(self, proc: subprocess.Popen, log_path: str) -> None:
        assert proc.stdout is not None
        with open(log_path, "a", encoding="utf-8") as log:
            for line in proc.stdout:
                log.write(line)
                log.flush()
                self._echo(line)

    def _watch(self, proc: subprocess.Popen) -> str:
        while True:
            if self._stop_signal is not None:
                return STOP
            if proc.poll() is not None:
                return EXITED
            if self._poll_control(self.poll_interval):
                return RESTART

    # ── Control channel ──────────────────────────────────────

    def _poll_control(self, timeout: float) -> bool:
        """Wait up to *timeout* for input; True when the sentinel arrived."""
        if self._take_sentinel():
            return True
        if self._control_fd is None:
            self._wakeup.wait(timeout)
            self._wakeup.clear()
            return False
        try:
            ready, _, _ = select.select([self._control_fd], [], [], timeout)
        except (OSError, ValueError):
            self._control_fd = None
            return False
        if not ready:
            return False
        chunk = os.read(self._control_fd, 1024)
        if not chunk:
            logger.debug("Control channel closed for %s", self.name)
            self._control_fd = None
            return False
        self._control_buffer += chunk
        return self._take_sentinel()

    def _take_sentinel(self) -> bool:
        while b"\n" in self._control_buffer:
            line, self._control_buffer = self._control_buffer.split(b"\n", 1)
            if line.decode("utf-8", "replace").strip() == RESTART_SENTINEL:
                return True
        return False

    # ── Teardown ─────────────────────────────────────────────

    def _restart_teardown(self, proc: subprocess.Popen, record: LogRecord) -> None:
        self._echo("\nStopping process...\n")
        tree = collect_tree(self.platform, proc.pid)
        try:
            log_lines, _ = read_tail(record.log_path, LOG_SCAN_LINES)
        except OSError:
            log_lines = []
        ports, source = discover_ports(self.platform, tree, log_lines, self.command)
        if ports:
            logger.info("Captured ports %s for %s (from %s)", ports, self.name, source)
            self._echo(f"Will wait for ports: {format_ports(ports)}\n")
        else:
            logger.info("Could not detect ports for %s", self.name)
            self._echo("Warning: Could not detect ports\n")

        terminate_tree(self.platform, proc.pid, sleep=self.sleep)
        self._reap(proc)
        self.sleep(RESTART_SETTLE)

        if ports:
            busy = wait_for_ports_released(
                self.platform,
                ports,
                attempts=self.port_wait_attempts,
                interval=self.port_wait_interval,
                sleep=self.sleep,
            )
            if busy:
                self._echo(f"Warning: Ports still in use: {format_ports(busy)}\n")

    def _stop_teardown(self, proc: subprocess.Popen) -> None:
        if proc.poll() is None:
            result = terminate_tree(self.platform, proc.pid, sleep=self.sleep)
            if not result.terminated:
                logger.warning("Survivors after stopping %s: %s", self.name, result.survivors)
        self._reap(proc)

    @staticmethod
    def _reap(proc: subprocess.Popen) -> None:
        try:
            proc.wait(timeout=REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def _finish_stopped(self) -> None:
        if self._stop_signal == signal.SIGTERM:
            reason = "Workspace closed"
        else:
            reason = "Interrupted (Ctrl+C)"
        logger.info("%s/%s stopped: %s", self.project, self.name, reason)
        self._echo(f"\n\n{self.name} - {reason}\nProcess has been terminated.\n")
        # An operator-initiated interrupt exits at once; a termination signal
        # keeps the pane open until a key is pressed.
        if self._stop_signal == signal.SIGTERM and self.pause is not None:
            self._echo("This window can be closed, or press any key to exit.\n")
            self.pause()

    # ── Helpers ──────────────────────────────────────────────

    def _echo(self, text: str) -> None:
        with self._terminal_lock:
            try:
                self.terminal.write(text)
                self.terminal.flush()
            except (OSError, ValueError):
                pass

    def _on_signal(self, signum: int, frame) -> None:  # noqa: ARG002
        self.request_stop(signum)

    def _install_signal_handlers(self) -> Callable[[], None]:
        if threading.current_thread() is not threading.main_thread():
            return lambda: None
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGTERM, signal.SIGINT)}
        for sig in previous:
            signal.signal(sig, self._on_signal)

        def restore() -> None:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return restore
