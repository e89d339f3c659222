from __future__ import annotations

import json
import os

import pytest
from typer.testing import CliRunner

from devdeck import __version__
from devdeck.cli import app

AUTH_PROBE_OK = """input=$(cat)
if [ "$input" = "echo test" ]; then echo ok; exit 0; fi
"""

runner = CliRunner()


def _write_log(settings, project: str, name: str, lines: list[str]) -> None:
    directory = os.path.join(settings.dev_logs_dir, project)
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, f"{name}.log"), "w", encoding="utf-8") as f:
        f.writelines(line + "\n" for line in lines)


@pytest.fixture
def fake_tool(settings, make_tool):
    path = make_tool("fake", AUTH_PROBE_OK + 'echo "patched"')
    os.makedirs(settings.root_dir, exist_ok=True)
    with open(settings.settings_path, "w", encoding="utf-8") as f:
        json.dump({"ai_tools": {"fake": {"command": path}}}, f)
    return "fake"


class TestVersion:
    def test_version(self, home):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert result.stdout.strip() == __version__


# ── logs ─────────────────────────────────────────────────────


class TestLogs:
    def test_summary(self, settings):
        _write_log(settings, "demo", "frontend", ["compiled", "TS2345: Argument of type"])
        _write_log(settings, "demo", "api", ["ready"])
        result = runner.invoke(app, ["logs", "-p", "demo", "summary"])
        assert result.exit_code == 0
        assert "❌ frontend: 1 errors" in result.stdout
        assert "✓ api: OK" in result.stdout
        assert "Total errors: 1" in result.stdout

    def test_errors_with_line_numbers(self, settings):
        _write_log(settings, "demo", "frontend", ["compiled", "TS2345: Argument of type"])
        result = runner.invoke(app, ["logs", "--project", "demo", "errors", "frontend"])
        assert result.exit_code == 0
        assert "2:TS2345: Argument of type" in result.stdout

    def test_tail(self, settings):
        _write_log(settings, "demo", "api", ["a", "b", "c"])
        result = runner.invoke(app, ["logs", "-p", "demo", "tail", "api", "2"])
        assert result.exit_code == 0
        assert result.stdout.splitlines() == ["b", "c"]

    def test_watch_twice(self, settings):
        _write_log(settings, "demo", "api", ["a", "b"])
        first = runner.invoke(app, ["logs", "-p", "demo", "watch", "api"])
        second = runner.invoke(app, ["logs", "-p", "demo", "watch", "api"])
        assert "=== 2 new lines in demo/api ===" in first.stdout
        assert "No new output" in second.stdout

    def test_unknown_process(self, settings):
        result = runner.invoke(app, ["logs", "-p", "demo", "tail", "ghost"])
        assert result.exit_code == 1

    def test_missing_name(self, settings):
        result = runner.invoke(app, ["logs", "-p", "demo", "clear"])
        assert result.exit_code == 1

    def test_projects(self, settings):
        _write_log(settings, "demo", "api", ["ready"])
        _write_log(settings, "other", "web", ["Error: boom"])
        result = runner.invoke(app, ["logs", "-p", "demo", "projects"])
        assert "demo (current): 1 processes, 0 errors" in result.stdout
        assert "other: 1 processes, 1 errors" in result.stdout


# ── Delegation ───────────────────────────────────────────────


class TestDelegate:
    def test_missing_arguments(self, home):
        result = runner.invoke(app, ["delegate", "codex"])
        assert result.exit_code == 1

    def test_missing_cli(self, home, plain_dir):
        result = runner.invoke(app, ["delegate", "devdeck-no-such-tool", "do it", str(plain_dir)])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["status"] == "failed"
        assert data["error"] == "cli_not_found"

    def test_missing_directory(self, home, tmp_path):
        result = runner.invoke(app, ["delegate", "codex", "do it", str(tmp_path / "nope")])
        assert result.exit_code == 1

    def test_sync(self, settings, fake_tool, plain_dir):
        result = runner.invoke(app, ["delegate", fake_tool, "do it", str(plain_dir), "--sync"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "completed"
        assert data["strategy"] == "sync"

        status = runner.invoke(app, ["check-status", data["task_id"]])
        assert json.loads(status.stdout)["status"] == "completed"

    def test_batch_resets_file(self, settings, plain_dir, tmp_path):
        tasks = tmp_path / "tasks.json"
        tasks.write_text(
            json.dumps({"tasks": [{"ai": "devdeck-no-such-tool", "description": "x"}]}),
            encoding="utf-8",
        )
        result = runner.invoke(app, ["delegate-batch", str(plain_dir), "--tasks", str(tasks)])
        assert result.exit_code == 0
        (handle,) = json.loads(result.stdout)
        assert handle["error"] == "cli_not_found"
        assert json.loads(tasks.read_text(encoding="utf-8")) == {"tasks": []}

    def test_batch_without_file(self, home, plain_dir):
        result = runner.invoke(app, ["delegate-batch", str(plain_dir)])
        assert result.exit_code == 1


class TestCheckStatus:
    def test_empty(self, home):
        result = runner.invoke(app, ["check-status"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_unknown_task(self, home):
        result = runner.invoke(app, ["check-status", "nope"])
        assert result.exit_code == 1

    def test_clean(self, home, plain_dir):
        runner.invoke(app, ["delegate", "devdeck-no-such-tool", "do it", str(plain_dir)])
        result = runner.invoke(app, ["check-status", "clean"])
        assert json.loads(result.stdout) == {"cleaned": 1}


class TestCheckAuth:
    def test_not_installed(self, home):
        result = runner.invoke(app, ["check-auth", "devdeck-no-such-tool"])
        assert result.exit_code == 2
        assert "not installed" in result.stdout

    def test_ok(self, settings, fake_tool):
        result = runner.invoke(app, ["check-auth", fake_tool])
        assert result.exit_code == 0


# ── Workspace ────────────────────────────────────────────────


class TestWorkspace:
    def test_cleanup_nothing_running(self, home):
        result = runner.invoke(app, ["cleanup", "demo"])
        assert result.exit_code == 0
        assert "No running dev processes for demo" in result.stdout

    def test_prints_commands_outside_tmux(self, home, plain_dir):
        (plain_dir / ".devdeck.json").write_text(
            json.dumps({"processes": [{"name": "web", "command": "npm run dev"}]}),
            encoding="utf-8",
        )
        result = runner.invoke(app, ["workspace", str(plain_dir)])
        assert result.exit_code == 0
        assert "Not inside tmux" in result.stdout
        assert "supervise --project" in result.stdout
        assert "web 'npm run dev'" in result.stdout

    def test_no_processes(self, home, plain_dir):
        result = runner.invoke(app, ["workspace", str(plain_dir)])
        assert result.exit_code == 0
        assert "No processes configured" in result.stdout

    def test_supervise_requires_command(self, home):
        result = runner.invoke(app, ["supervise", "web"])
        assert result.exit_code == 1
