"""Project identity and per-project process configuration."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from devdeck.integrations.git import toplevel

logger = logging.getLogger("devdeck.project")

PROJECT_CONFIG_NAME = ".devdeck.json"


class ConfigurationError(ValueError):
    pass


class ProjectResolver:
    """Decides which project's logs a command addresses.

    An explicit override (``DEV_PROJECT``) wins, then the basename of the
    enclosing git work tree, then the basename of the directory itself.
    """

    def __init__(self, override: Optional[str] = None) -> None:
        self.override = override

    def resolve(self, cwd: Optional[str] = None) -> str:
        if self.override:
            return self.override
        directory = os.path.abspath(cwd or os.getcwd())
        root = toplevel(directory)
        return os.path.basename(root or directory)


@dataclass
class ProcessSpec:
    name: str
    command: str
    cwd: str = "."

    @staticmethod
    def from_dict(d: dict) -> "ProcessSpec":
        if not d.get("name") or not d.get("command"):
            raise ConfigurationError(f"process entry needs 'name' and 'command': {d!r}")
        return ProcessSpec(name=d["name"], command=d["command"], cwd=d.get("cwd") or ".")


@dataclass
class ProjectConfig:
    path: str
    processes: list[ProcessSpec] = field(default_factory=list)
    before_start: Optional[str] = None

    def process_cwd(self, spec: ProcessSpec) -> str:
        return os.path.normpath(os.path.join(self.path, spec.cwd))


def load_project_config(path: str) -> ProjectConfig:
    """Read ``<path>/.devdeck.json``. A missing file yields an empty config."""
    if not os.path.isdir(path):
        raise ConfigurationError(f"Directory not found: {path}")
    config_path = os.path.join(path, PROJECT_CONFIG_NAME)
    if not os.path.exists(config_path):
        return ProjectConfig(path=path)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path} must contain a JSON object")
    processes = [ProcessSpec.from_dict(p) for p in raw.get("processes", [])]
    hooks = raw.get("hooks") or {}
    return ProjectConfig(path=path, processes=processes, before_start=hooks.get("before_start"))
