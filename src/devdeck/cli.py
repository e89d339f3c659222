from __future__ import annotations

import json
import os
import shlex
import subprocess
import sys
from typing import List, Optional

import typer
from dotenv import load_dotenv

from devdeck.core.config import Settings

app = typer.Typer(add_completion=False, help="Dev-process supervisor, log capture and AI task delegation.")
logs_app = typer.Typer(add_completion=False, help="Inspect captured dev-process logs.")
app.add_typer(logs_app, name="logs")

def _load_env() -> Settings:
    load_dotenv()
    return Settings.from_env()

def _setup_logging(settings: Settings, console: bool = True) -> None:
    """Configure centralized logging to both the console and log files."""
    from devdeck.core.logging_config import setup_logging

    setup_logging(
        log_dir=settings.log_dir,
        log_level=settings.log_level,
        clear_on_launch=settings.clear_logs_on_launch,
        console=console,
    )

def _fail(message: str, code: int = 1) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code)

def _log_store(settings: Settings):
    from devdeck.core.logstore import ProcessLogStore

    return ProcessLogStore(settings.dev_logs_dir, settings.markers_dir)

def _dispatcher(settings: Settings):
    from devdeck.core.dispatcher import DelegationDispatcher
    from devdeck.core.settings_store import SettingsStore
    from devdeck.core.status_store import DelegationStatusStore
    from devdeck.core.task_runner import TaskRunner

    store = SettingsStore(settings.settings_path)
    runner = TaskRunner(
        DelegationStatusStore(settings.status_dir),
        settings.task_logs_dir,
        custom_tools=store.custom_tools(),
        auth_probe_timeout=settings.auth_probe_timeout,
        index_timeout=settings.index_timeout,
    )
    return DelegationDispatcher(runner, store)

def _echo_json(payload) -> None:
    typer.echo(json.dumps(payload, indent=2))

# ── Supervisor ───────────────────────────────────────────────

def _open_control() -> Optional[int]:
    try:
        return os.open("/dev/tty", os.O_RDONLY)
    except OSError:
        return sys.stdin.fileno() if sys.stdin.isatty() else None

@app.command(context_settings={"allow_interspersed_args": False, "ignore_unknown_options": True})
def supervise(
    name: Optional[str] = typer.Argument(None, help="Process name (log file stem)"),
    command: Optional[List[str]] = typer.Argument(None, help="Command to run"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory for the command"),
    project: Optional[str] = typer.Option(None, "--project", help="Project the logs belong to"),
) -> None:
    """Run a dev process, tee its output to the log, restart on 'rs'."""
    settings = _load_env()
    if not name or not command:
        _fail("Usage: devdeck supervise NAME COMMAND...")
    if cwd and not os.path.isdir(cwd):
        _fail(f"Directory not found: {cwd}")
    _setup_logging(settings, console=False)

    from devdeck.core.project import ProjectResolver
    from devdeck.core.supervisor import ProcessSupervisor

    store = _log_store(settings)
    project_name = project or ProjectResolver(settings.dev_project).resolve(cwd)
    if store.is_running(project_name, name):
        _fail(f"'{name}' is already running for {project_name} (pid {store.read_pid(project_name, name)})")

    control = _open_control()
    supervisor = ProcessSupervisor(
        store,
        name,
        " ".join(command),
        project=project_name,
        cwd=cwd,
        control=control,
        pause=(lambda: typer.pause("")) if sys.stdin.isatty() else None,
        port_wait_attempts=settings.port_wait_attempts,
        port_wait_interval=settings.port_wait_interval,
    )
    try:
        code = supervisor.run()
    finally:
        if control is not None and control != sys.stdin.fileno():
            os.close(control)
    raise typer.Exit(code)

# ── Log queries ──────────────────────────────────────────────

@logs_app.callback()
def logs(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project to inspect (default: current)"),
) -> None:
    settings = _load_env()
    _setup_logging(settings)

    from devdeck.core.log_query import LogQuery
    from devdeck.core.project import ProjectResolver

    project_name = project or ProjectResolver(settings.dev_project).resolve()
    ctx.obj = LogQuery(_log_store(settings), project_name)

def _query(ctx: typer.Context):
    return ctx.obj

def _require_name(name: Optional[str], usage: str) -> str:
    if not name:
        _fail(f"Usage: devdeck logs {usage}")
    return name

@logs_app.command("summary")
def logs_summary(ctx: typer.Context) -> None:
    """Error counts and last line per process."""
    query = _query(ctx)
    typer.echo(f"=== Dev Process Summary: {query.project} ===\n")
    summaries = query.summary()
    if not summaries:
        typer.echo("No dev logs for this project yet.")
        typer.echo("Start dev processes with: devdeck supervise <name> <command>")
        return
    total = 0
    for item in summaries:
        total += item.error_count
        if item.ok:
            typer.echo(f"✓ {item.name}: OK")
        else:
            typer.echo(f"❌ {item.name}: {item.error_count} errors")
        typer.echo(f"   Last: {item.last_line}\n")
    typer.echo("---")
    typer.echo(f"Total errors: {total}")
    if total:
        typer.echo("\nRun 'devdeck logs errors' to see error details")

@logs_app.command("list")
def logs_list(ctx: typer.Context) -> None:
    """Every process log of the project with size and state."""
    query = _query(ctx)
    typer.echo(f"=== Dev Logs for: {query.project} ===\n")
    listings = query.list_processes()
    if not listings:
        typer.echo(f"No logs found for project: {query.project}")
        return
    for item in listings:
        typer.echo(f"{item.name} {'[RUNNING]' if item.running else '[STOPPED]'}")
        if item.command:
            typer.echo(f"  Command: {item.command}")
        typer.echo(f"  Lines: {item.lines} | Size: {item.size_bytes}B | Errors: {item.error_count}")
        typer.echo(f"  Last update: {item.modified}\n")

@logs_app.command("projects")
def logs_projects(ctx: typer.Context) -> None:
    """All projects that have dev logs."""
    query = _query(ctx)
    listings = query.projects()
    if not listings:
        typer.echo("No projects with dev logs yet.")
        return
    typer.echo("=== Projects with dev logs ===\n")
    for item in listings:
        marker = " (current)" if item.current else ""
        typer.echo(f"{item.project}{marker}: {item.processes} processes, {item.error_count} errors")

@logs_app.command("tail")
def logs_tail(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None),
    lines: int = typer.Argument(50),
) -> None:
    """Last N lines of a process log."""
    from devdeck.core.log_query import UnknownProcessError

    name = _require_name(name, "tail <name> [lines]")
    try:
        for line in _query(ctx).tail(name, lines):
            typer.echo(line)
    except UnknownProcessError as exc:
        _fail(str(exc))

@logs_app.command("errors")
def logs_errors(ctx: typer.Context, name: Optional[str] = typer.Argument(None)) -> None:
    """Only the error-matching lines, with line numbers."""
    from devdeck.core.log_query import UnknownProcessError

    try:
        result = _query(ctx).errors(name)
    except UnknownProcessError as exc:
        _fail(str(exc))
    for each, matches in result.items():
        typer.echo(f"=== {each} ({len(matches)} matches) ===")
        for match in matches:
            typer.echo(str(match))
        typer.echo("")

@logs_app.command("recent")
def logs_recent(ctx: typer.Context, lines: int = typer.Argument(100)) -> None:
    """Errors among only the last N lines of each log."""
    for each, matches in _query(ctx).recent(lines).items():
        if not matches:
            continue
        typer.echo(f"=== {each} (last {lines} lines) ===")
        for match in matches:
            typer.echo(str(match))
        typer.echo("")

@logs_app.command("watch")
def logs_watch(ctx: typer.Context, name: Optional[str] = typer.Argument(None)) -> None:
    """New lines since the previous watch."""
    from devdeck.core.log_query import UnknownProcessError

    name = _require_name(name, "watch <name>")
    query = _query(ctx)
    try:
        new_lines = query.watch(name)
    except UnknownProcessError as exc:
        _fail(str(exc))
    if not new_lines:
        typer.echo(f"No new output in {query.project}/{name} since last check")
        return
    typer.echo(f"=== {len(new_lines)} new lines in {query.project}/{name} ===")
    for line in new_lines:
        typer.echo(line)

@logs_app.command("clear")
def logs_clear(ctx: typer.Context, name: Optional[str] = typer.Argument(None)) -> None:
    """Truncate a process log and reset its watch cursor."""
    from devdeck.core.log_query import UnknownProcessError

    name = _require_name(name, "clear <name>")
    try:
        _query(ctx).clear(name)
    except UnknownProcessError as exc:
        _fail(str(exc))
    typer.echo(f"Cleared log: {name}")

# ── Delegation ───────────────────────────────────────────────

@app.command()
def delegate(
    ai_name: Optional[str] = typer.Argument(None, help="AI tool (gemini, codex, aider, ...)"),
    task: Optional[str] = typer.Argument(None, help="Task description"),
    project_path: Optional[str] = typer.Argument(None, help="Project directory"),
    visible: Optional[bool] = typer.Option(None, "--visible/--no-visible", help="Run in a visible tmux pane"),
    branch: Optional[bool] = typer.Option(None, "--branch/--no-branch", help="Isolate work on a new git branch"),
    branch_name: Optional[str] = typer.Option(None, "--branch-name", help="Explicit isolation branch name"),
    sync: bool = typer.Option(False, "--sync/--async", help="Wait for the task to finish"),
) -> None:
    """Hand a coding task to an AI command-line tool."""
    settings = _load_env()
    if not ai_name or not task or not project_path:
        _fail("Usage: devdeck delegate <ai_name> <task_description> <project_path> [--branch] [--sync]")
    _setup_logging(settings)

    from devdeck.core.project import ConfigurationError
    from devdeck.core.status_store import STATUS_COMPLETED, STATUS_RUNNING

    try:
        handle = _dispatcher(settings).dispatch(
            ai_name,
            task,
            project_path,
            visible=visible,
            use_branch=branch,
            branch_name=branch_name,
            sync=sync,
        )
    except ConfigurationError as exc:
        _fail(str(exc))
    _echo_json(handle.to_dict())
    if handle.status not in (STATUS_RUNNING, STATUS_COMPLETED):
        raise typer.Exit(1)

@app.command("delegate-batch")
def delegate_batch(
    project_path: str = typer.Argument(..., help="Project directory"),
    tasks_file: Optional[str] = typer.Option(None, "--tasks", help="Batch file (default: <home>/tasks.json)"),
) -> None:
    """Dispatch every queued task in the batch file, then empty it."""
    settings = _load_env()
    _setup_logging(settings)

    from devdeck.core.dispatcher import handles_to_json
    from devdeck.core.project import ConfigurationError

    path = tasks_file or settings.batch_tasks_path
    try:
        with open(path, "r", encoding="utf-8") as f:
            entries = json.load(f).get("tasks", [])
    except FileNotFoundError:
        _fail(f"No batch file: {path}")
    except (json.JSONDecodeError, AttributeError) as exc:
        _fail(f"Invalid batch file {path}: {exc}")

    try:
        handles = _dispatcher(settings).dispatch_batch(project_path, entries)
    except ConfigurationError as exc:
        _fail(str(exc))
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"tasks": []}, f, indent=2)
    typer.echo(handles_to_json(handles))

@app.command("run-task", hidden=True)
def run_task(
    task_id: str = typer.Argument(...),
    interactive: bool = typer.Option(False, "--interactive", help="Echo tool output to the terminal"),
) -> None:
    """Execute a stored task record (background worker entry point)."""
    settings = _load_env()
    _setup_logging(settings, console=interactive)

    from devdeck.core.status_store import STATUS_COMPLETED

    dispatcher = _dispatcher(settings)
    task = dispatcher.runner.run(task_id, on_line=typer.echo if interactive else None)
    if task is None:
        _fail(f"Unknown task: {task_id}")
    if interactive:
        typer.echo(f"\nTask {task.task_id}: {task.status}")
        if sys.stdin.isatty():
            typer.pause()
    if task.status != STATUS_COMPLETED:
        raise typer.Exit(1)

@app.command("check-status")
def check_status(target: str = typer.Argument("all", help="task_id | all | running | recent | clean")) -> None:
    """Show delegated task status records."""
    settings = _load_env()
    _setup_logging(settings)

    from devdeck.core.status_store import DelegationStatusStore

    store = DelegationStatusStore(settings.status_dir)
    if target == "all":
        _echo_json([t.to_dict() for t in store.list_all()])
    elif target == "running":
        _echo_json([t.to_dict() for t in store.running()])
    elif target == "recent":
        _echo_json([t.to_dict() for t in store.recent()])
    elif target == "clean":
        _echo_json({"cleaned": store.clean()})
    else:
        task = store.find(target)
        if task is None:
            _fail(f"Task not found: {target}")
        _echo_json(task.to_dict())

@app.command("check-auth")
def check_auth(ai_name: str = typer.Argument(..., help="AI tool or 'all'")) -> None:
    """Probe an AI tool's credentials (exit 0 ok, 1 login needed, 2 not installed)."""
    settings = _load_env()
    _setup_logging(settings)

    from devdeck.core.settings_store import SettingsStore
    from devdeck.integrations.ai_cli import (
        AUTH_CLI_NOT_FOUND,
        AUTH_OK,
        AUTH_REQUIRED,
        BUILTIN_TOOLS,
        AiCli,
        resolve_tool,
    )

    custom = SettingsStore(settings.settings_path).custom_tools()
    names = sorted(set(BUILTIN_TOOLS) | set(custom)) if ai_name == "all" else [ai_name]
    codes = {AUTH_OK: 0, AUTH_REQUIRED: 1, AUTH_CLI_NOT_FOUND: 2}
    labels = {AUTH_OK: "✓ authenticated", AUTH_REQUIRED: "⚠ login required", AUTH_CLI_NOT_FOUND: "✗ not installed"}
    outcome = AUTH_OK
    for name in names:
        outcome = AiCli(resolve_tool(name, custom)).probe_auth(settings.auth_probe_timeout)
        typer.echo(f"{name}: {labels[outcome]}")
    if ai_name != "all":
        raise typer.Exit(codes[outcome])

# ── Workspace ────────────────────────────────────────────────

@app.command()
def cleanup(project: Optional[str] = typer.Argument(None, help="Project name (default: current)")) -> None:
    """Stop every supervised process of a project."""
    settings = _load_env()
    _setup_logging(settings)

    from devdeck.core.project import ProjectResolver

    project_name = project or ProjectResolver(settings.dev_project).resolve()
    stopped = _log_store(settings).cleanup(project_name)
    if not stopped:
        typer.echo(f"No running dev processes for {project_name}")
        return
    for name in stopped:
        typer.echo(f"Stopped {project_name}/{name}")

@app.command()
def workspace(path: Optional[str] = typer.Argument(None, help="Project directory (default: cwd)")) -> None:
    """Start every configured dev process of a project in tmux panes."""
    settings = _load_env()
    _setup_logging(settings)

    from devdeck.core.project import ConfigurationError, ProjectResolver, load_project_config
    from devdeck.integrations.panes import PaneError, TmuxPaneLauncher

    project_path = os.path.abspath(path or os.getcwd())
    try:
        config = load_project_config(project_path)
    except ConfigurationError as exc:
        _fail(str(exc))
    if not config.processes:
        typer.echo(f"No processes configured in {project_path}/.devdeck.json")
        return

    if config.before_start:
        typer.echo(f"Running before_start hook: {config.before_start}")
        result = subprocess.run(config.before_start, shell=True, cwd=project_path, check=False)
        if result.returncode != 0:
            typer.secho(f"before_start hook exited {result.returncode}", fg=typer.colors.YELLOW, err=True)

    project_name = ProjectResolver(settings.dev_project).resolve(project_path)
    launcher = TmuxPaneLauncher()
    commands = []
    for spec in config.processes:
        commands.append([
            sys.executable, "-m", "devdeck.cli", "supervise",
            "--project", project_name,
            "--cwd", config.process_cwd(spec),
            spec.name, spec.command,
        ])

    if not launcher.available():
        typer.echo("Not inside tmux. Run each of these in its own terminal:")
        for argv in commands:
            typer.echo("  " + shlex.join(argv))
        return

    for i, (spec, argv) in enumerate(zip(config.processes, commands)):
        try:
            launcher.open_pane(argv, config.process_cwd(spec), vertical=i > 0)
        except PaneError as exc:
            _fail(str(exc))
        typer.echo(f"  [{i + 1}] {spec.name}: {spec.command}")
    launcher.balance()

@app.command()
def version() -> None:
    from devdeck import __version__

    typer.echo(__version__)

if __name__ == "__main__":
    app()
