from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    root_dir: str
    log_level: str
    log_dir: str
    clear_logs_on_launch: bool
    dev_project: str | None
    index_timeout: float
    auth_probe_timeout: float
    port_wait_attempts: int
    port_wait_interval: float

    @staticmethod
    def from_env() -> "Settings":
        default_root = str(Path(os.path.expanduser("~")) / ".devdeck")
        root_dir = os.getenv("DEVDECK_HOME") or default_root
        return Settings(
            root_dir=root_dir,
            log_level=os.getenv("DEVDECK_LOG_LEVEL", "info"),
            log_dir=os.getenv("DEVDECK_LOG_DIR") or str(Path(root_dir) / ".logs"),
            clear_logs_on_launch=_env_bool("DEVDECK_CLEAR_LOGS_ON_LAUNCH"),
            dev_project=os.getenv("DEV_PROJECT") or None,
            index_timeout=float(os.getenv("DEVDECK_INDEX_TIMEOUT", "10")),
            auth_probe_timeout=float(os.getenv("DEVDECK_AUTH_PROBE_TIMEOUT", "10")),
            port_wait_attempts=int(os.getenv("DEVDECK_PORT_WAIT_ATTEMPTS", "20")),
            port_wait_interval=float(os.getenv("DEVDECK_PORT_WAIT_INTERVAL", "0.3")),
        )

    # ── Persisted state layout ───────────────────────────────

    @property
    def dev_logs_dir(self) -> str:
        return os.path.join(self.root_dir, "dev-logs")

    @property
    def markers_dir(self) -> str:
        return os.path.join(self.root_dir, "dev-markers")

    @property
    def task_logs_dir(self) -> str:
        return os.path.join(self.root_dir, "logs")

    @property
    def status_dir(self) -> str:
        return os.path.join(self.root_dir, "status")

    @property
    def settings_path(self) -> str:
        return os.path.join(self.root_dir, "settings.json")

    @property
    def batch_tasks_path(self) -> str:
        return os.path.join(self.root_dir, "tasks.json")
