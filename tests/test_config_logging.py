from __future__ import annotations

import json
import logging
import os

from devdeck.core.config import Settings
from devdeck.core.logging_config import log_task_event, setup_logging


class TestSettings:
    def test_layout_under_home(self, settings, home):
        assert settings.root_dir == str(home)
        assert settings.dev_logs_dir == os.path.join(str(home), "dev-logs")
        assert settings.markers_dir == os.path.join(str(home), "dev-markers")
        assert settings.status_dir == os.path.join(str(home), "status")
        assert settings.task_logs_dir == os.path.join(str(home), "logs")
        assert settings.log_dir == os.path.join(str(home), ".logs")
        assert settings.dev_project is None

    def test_environment_overrides(self, home, monkeypatch, tmp_path):
        monkeypatch.setenv("DEV_PROJECT", "shop")
        monkeypatch.setenv("DEVDECK_LOG_DIR", str(tmp_path / "elsewhere"))
        monkeypatch.setenv("DEVDECK_CLEAR_LOGS_ON_LAUNCH", "yes")
        monkeypatch.setenv("DEVDECK_PORT_WAIT_ATTEMPTS", "7")
        settings = Settings.from_env()
        assert settings.dev_project == "shop"
        assert settings.log_dir == str(tmp_path / "elsewhere")
        assert settings.clear_logs_on_launch is True
        assert settings.port_wait_attempts == 7


class TestLogging:
    def test_setup_writes_rotating_file(self, tmp_path):
        log_dir = str(tmp_path / "logs")
        setup_logging(log_dir, "debug")
        logging.getLogger("devdeck.test").info("hello from test")
        for handler in logging.getLogger().handlers:
            handler.flush()
        with open(os.path.join(log_dir, "devdeck.log"), encoding="utf-8") as f:
            content = f.read()
        assert "[devdeck.test] INFO: hello from test" in content

    def test_quiet_console(self, tmp_path):
        setup_logging(str(tmp_path / "logs"), "debug", console=False)
        stream = [
            h for h in logging.getLogger().handlers
            if type(h) is logging.StreamHandler
        ]
        assert stream and stream[0].level == logging.WARNING

    def test_clear_on_launch(self, tmp_path):
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        (log_dir / "devdeck.log.1").write_text("old", encoding="utf-8")
        setup_logging(str(log_dir), clear_on_launch=True)
        assert not (log_dir / "devdeck.log.1").exists()

    def test_task_events_are_jsonl(self, tmp_path):
        log_dir = tmp_path / "logs"
        setup_logging(str(log_dir))
        log_task_event("codex_1", "completed", exit_code=0, error=None, branch="")
        for handler in logging.getLogger("devdeck._task_events").handlers:
            handler.flush()
        lines = (log_dir / "task-events.log").read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[-1])
        assert record["task_id"] == "codex_1"
        assert record["event"] == "completed"
        assert record["exit_code"] == 0
        assert "error" not in record
        assert "branch" not in record
