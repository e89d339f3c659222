"""Process-tree discovery and two-phase teardown.

The OS-facing calls sit behind :class:`ProcessPlatform` so the teardown
algorithm can run against a fake in tests. :class:`PsutilPlatform` is the
real implementation.
"""
from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol

import psutil

logger = logging.getLogger("devdeck.process_tree")

TERM_WAIT_ATTEMPTS = 5
TERM_WAIT_INTERVAL = 0.2


class ProcessPlatform(Protocol):
    def list_children(self, pid: int) -> list[int]: ...

    def list_listening_ports(self, pid: int) -> list[int]: ...

    def signal(self, pid: int, sig: int) -> None: ...

    def is_alive(self, pid: int) -> bool: ...

    def port_in_use(self, port: int) -> bool: ...


def _listening(conns: Iterable) -> list:
    return [c for c in conns if c.status == psutil.CONN_LISTEN and c.laddr]


class PsutilPlatform:
    """psutil-backed platform. Zombies count as dead."""

    def list_children(self, pid: int) -> list[int]:
        try:
            return [p.pid for p in psutil.Process(pid).children(recursive=False)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def list_listening_ports(self, pid: int) -> list[int]:
        try:
            proc = psutil.Process(pid)
            getter = getattr(proc, "net_connections", None) or proc.connections
            conns = getter(kind="inet")
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return []
        return sorted({c.laddr.port for c in _listening(conns)})

    def signal(self, pid: int, sig: int) -> None:
        try:
            psutil.Process(pid).send_signal(sig)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            pass
        except psutil.AccessDenied:
            logger.warning("Permission denied signalling pid %d", pid)

    def is_alive(self, pid: int) -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            return True

    def _system_ports(self) -> set[int]:
        try:
            return {c.laddr.port for c in _listening(psutil.net_connections(kind="inet"))}
        except psutil.AccessDenied:
            # macOS needs root for the system-wide table; walk our own processes
            ports: set[int] = set()
            for proc in psutil.process_iter():
                try:
                    getter = getattr(proc, "net_connections", None) or proc.connections
                    ports.update(c.laddr.port for c in _listening(getter(kind="inet")))
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue
            return ports

    def port_in_use(self, port: int) -> bool:
        return port in self._system_ports()


# ── Tree algorithm ───────────────────────────────────────────


def collect_tree(platform: ProcessPlatform, root_pid: int) -> list[int]:
    """Return *root_pid* and every descendant, deepest first, root last."""
    ordered: list[int] = []
    seen: set[int] = set()

    def visit(pid: int) -> None:
        if pid in seen:
            return
        seen.add(pid)
        for child in platform.list_children(pid):
            visit(child)
        ordered.append(pid)

    visit(root_pid)
    return ordered


def signal_tree(platform: ProcessPlatform, pids: Iterable[int], sig: int) -> None:
    for pid in pids:
        platform.signal(pid, sig)


def wait_for_death(
    platform: ProcessPlatform,
    pids: list[int],
    root_pid: int,
    *,
    attempts: int = TERM_WAIT_ATTEMPTS,
    interval: float = TERM_WAIT_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> list[int]:
    """Poll until no pid answers and the root has no children.

    Returns the pids still alive (including late-spawned children of the
    root) once the attempts run out; empty means the tree is gone.
    """
    survivors: list[int] = list(pids)
    for _ in range(attempts):
        survivors = [pid for pid in pids if platform.is_alive(pid)]
        late = [
            pid for pid in platform.list_children(root_pid)
            if pid not in survivors and platform.is_alive(pid)
        ]
        survivors = late + survivors
        if not survivors:
            return []
        sleep(interval)
    return survivors


@dataclass
class TeardownResult:
    pids: list[int]
    forced: list[int] = field(default_factory=list)
    survivors: list[int] = field(default_factory=list)

    @property
    def terminated(self) -> bool:
        """True only when no member of the tree is alive any more."""
        return not self.survivors


def terminate_tree(
    platform: ProcessPlatform,
    root_pid: int,
    *,
    attempts: int = TERM_WAIT_ATTEMPTS,
    interval: float = TERM_WAIT_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> TeardownResult:
    """SIGTERM the tree leaf-first, then SIGKILL whatever is left."""
    pids = collect_tree(platform, root_pid)
    result = TeardownResult(pids=pids)
    signal_tree(platform, pids, signal.SIGTERM)

    survivors = wait_for_death(
        platform, pids, root_pid, attempts=attempts, interval=interval, sleep=sleep
    )
    if not survivors:
        return result

    # Re-walk: children may have been re-parented or spawned since the first pass
    rewalk = [pid for pid in collect_tree(platform, root_pid) if platform.is_alive(pid)]
    forced = _leaf_first(rewalk + survivors, pids)
    logger.warning("Process tree %d survived SIGTERM; sending SIGKILL to %s", root_pid, forced)
    signal_tree(platform, forced, signal.SIGKILL)
    result.forced = forced
    result.survivors = wait_for_death(
        platform, forced, root_pid, attempts=attempts, interval=interval, sleep=sleep
    )
    if result.survivors:
        logger.warning("Processes still alive after SIGKILL: %s", result.survivors)
    return result


def _leaf_first(pids: list[int], original_order: list[int]) -> list[int]:
    """Order *pids* by their position in the original leaf-first walk; new pids go first."""
    rank = {pid: i for i, pid in enumerate(original_order)}
    unique = list(dict.fromkeys(pids))
    return sorted(unique, key=lambda pid: rank.get(pid, -1))
