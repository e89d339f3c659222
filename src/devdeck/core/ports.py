"""Listening-port discovery for in-place restarts.

A restarted dev server must not come back while its previous instance
still holds the port, so before teardown the supervisor captures the
ports the old instance uses. Discovery falls through four tiers and the
first one that finds anything wins:

1. sockets bound by the live process tree
2. ``host:PORT`` announcements in the recent log output
3. an explicit port flag in the command line
4. well-known dev-server ports that are currently bound
"""
from __future__ import annotations

import logging
import re
import time
from typing import Callable, Iterable, Optional

from devdeck.core.process_tree import ProcessPlatform

logger = logging.getLogger("devdeck.ports")

COMMON_DEV_PORTS = (3000, 3001, 4000, 5000, 5173, 5174, 8000, 8080, 8888, 9000)
LOG_SCAN_LINES = 50

_LOG_HOST_PORT = re.compile(r"(?:localhost|127\.0\.0\.1|0\.0\.0\.0):(\d{2,5})")
_LOG_PORT_WORD = re.compile(r"port[: ]+(\d{2,5})", re.IGNORECASE)
_COMMAND_PORT = (
    re.compile(r"(?:--port|-p)[= ]+(\d{2,5})"),
    re.compile(r"\bPORT[= ]+(\d{2,5})"),
    re.compile(r"(?:localhost|127\.0\.0\.1):(\d{2,5})"),
)

SOURCE_TREE = "process_tree"
SOURCE_LOG = "log"
SOURCE_COMMAND = "command"
SOURCE_COMMON = "common"
SOURCE_NONE = "none"


def _valid(port: int) -> bool:
    return 0 < port < 65536


def ports_from_tree(platform: ProcessPlatform, pids: Iterable[int]) -> list[int]:
    found: set[int] = set()
    for pid in pids:
        found.update(platform.list_listening_ports(pid))
    return sorted(found)


def ports_from_log(lines: list[str]) -> list[int]:
    """Inspect the last lines of output for a port announcement."""
    recent = lines[-LOG_SCAN_LINES:]
    for pattern in (_LOG_HOST_PORT, _LOG_PORT_WORD):
        for line in reversed(recent):
            match = pattern.search(line)
            if match and _valid(int(match.group(1))):
                return [int(match.group(1))]
    return []


def ports_from_command(command: str) -> list[int]:
    for pattern in _COMMAND_PORT:
        match = pattern.search(command)
        if match and _valid(int(match.group(1))):
            return [int(match.group(1))]
    return []


def common_ports_in_use(
    platform: ProcessPlatform, candidates: Iterable[int] = COMMON_DEV_PORTS
) -> list[int]:
    return [port for port in candidates if platform.port_in_use(port)]


def discover_ports(
    platform: ProcessPlatform,
    pids: Iterable[int],
    log_lines: list[str],
    command: str,
) -> tuple[list[int], str]:
    """Return ``(ports, source)`` from the first tier with a result."""
    ports = ports_from_tree(platform, pids)
    if ports:
        return ports, SOURCE_TREE
    ports = ports_from_log(log_lines)
    if ports:
        return ports, SOURCE_LOG
    ports = ports_from_command(command)
    if ports:
        return ports, SOURCE_COMMAND
    ports = common_ports_in_use(platform)
    if ports:
        return ports, SOURCE_COMMON
    return [], SOURCE_NONE


def wait_for_ports_released(
    platform: ProcessPlatform,
    ports: Iterable[int],
    *,
    attempts: int = 20,
    interval: float = 0.3,
    sleep: Callable[[float], None] = time.sleep,
) -> list[int]:
    """Wait until none of *ports* is bound. Returns the ports still busy."""
    pending = list(ports)
    for _ in range(attempts):
        pending = [port for port in pending if platform.port_in_use(port)]
        if not pending:
            return []
        sleep(interval)
    if pending:
        logger.warning(
            "Ports still in use after %dx%.1fs: %s", attempts, interval, pending
        )
    return pending


def format_ports(ports: Optional[Iterable[int]]) -> str:
    return " ".join(str(p) for p in ports or []) or "-"
