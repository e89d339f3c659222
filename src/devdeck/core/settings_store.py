"""Operator settings document (``<root>/settings.json``).

Every mutation goes through :meth:`SettingsStore.update`: the whole
document is read, transformed, written to a temp file and renamed into
place. Readers therefore never see a half-written document.
"""
from __future__ import annotations

import copy
import json
import logging
import os
from typing import Any, Callable, Dict

logger = logging.getLogger("devdeck.settings")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "delegation": {
        "visible_by_default": False,
        "use_branches": False,
    },
    "ai_tools": {},
}


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class SettingsStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def _read_raw(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to read settings %s: %s", self.path, exc)
            return {}
        return raw if isinstance(raw, dict) else {}

    def load(self) -> dict:
        """Return the settings document merged over the defaults."""
        return _merge(DEFAULT_SETTINGS, self._read_raw())

    def update(self, transform: Callable[[dict], dict | None]) -> dict:
        """Atomically apply *transform* to the stored document.

        *transform* may mutate the dict in place and return None, or
        return a replacement document.
        """
        document = self.load()
        result = transform(document)
        if result is not None:
            document = result
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp{os.getpid()}"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        return document

    # ── Convenience accessors ────────────────────────────────

    def visible_by_default(self) -> bool:
        return bool(self.load()["delegation"].get("visible_by_default", False))

    def use_branches(self) -> bool:
        return bool(self.load()["delegation"].get("use_branches", False))

    def custom_tools(self) -> Dict[str, dict]:
        tools = self.load().get("ai_tools", {})
        return {k: v for k, v in tools.items() if isinstance(v, dict)}
