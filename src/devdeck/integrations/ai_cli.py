from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("devdeck.ai_cli")

AUTH_PATTERN = re.compile(
    r"login|authenticate|sign in|authorization|credentials|token expired|unauthorized|api key",
    re.IGNORECASE,
)
PROBE_PROMPT = "echo test"

AUTH_OK = "ok"
AUTH_REQUIRED = "auth_required"
AUTH_CLI_NOT_FOUND = "cli_not_found"

PROMPT_STDIN = "stdin"
PROMPT_FLAG = "flag"


class AiCliError(RuntimeError):
    pass


class AiCliNotFound(AiCliError):
    pass


def has_auth_failure(output: str) -> bool:
    return bool(AUTH_PATTERN.search(output or ""))


@dataclass(frozen=True)
class AiTool:
    """How to hand a prompt to one AI command-line tool."""

    tool_id: str
    display_name: str
    argv: tuple[str, ...]
    prompt_mode: str = PROMPT_STDIN
    prompt_flag: str = ""

    @property
    def executable(self) -> str:
        return self.argv[0]

    def command_for(self, prompt: str) -> list[str]:
        cmd = list(self.argv)
        if self.prompt_mode == PROMPT_FLAG:
            cmd.extend([self.prompt_flag, prompt])
        return cmd

    def stdin_for(self, prompt: str) -> Optional[str]:
        return prompt if self.prompt_mode == PROMPT_STDIN else None


BUILTIN_TOOLS: dict[str, AiTool] = {
    "gemini": AiTool("gemini", "Gemini", ("gemini", "--yolo")),
    "opencode": AiTool("opencode", "OpenCode", ("opencode",)),
    "zai": AiTool("zai", "Z.AI (OpenCode)", ("opencode",)),
    "codex": AiTool("codex", "Codex", ("codex",)),
    "aider": AiTool("aider", "Aider", ("aider",), PROMPT_FLAG, "--message"),
}


def resolve_tool(ai_name: str, custom_tools: Optional[dict[str, dict]] = None) -> AiTool:
    """Look up *ai_name* among custom tools first, then the built-ins.

    An unknown name is treated as a bare executable reading stdin.
    """
    custom = (custom_tools or {}).get(ai_name)
    if custom and custom.get("command") and custom.get("enabled", True):
        return AiTool(
            tool_id=ai_name,
            display_name=custom.get("name") or ai_name,
            argv=tuple(shlex.split(custom["command"])),
        )
    if ai_name in BUILTIN_TOOLS:
        return BUILTIN_TOOLS[ai_name]
    return AiTool(ai_name, ai_name, (ai_name,))


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class AiCli:
    def __init__(self, tool: AiTool) -> None:
        self.tool = tool

    def _resolve_executable(self) -> str:
        path = shutil.which(self.tool.executable)
        if not path:
            raise AiCliNotFound(f"{self.tool.display_name} CLI not installed ({self.tool.executable} not on PATH)")
        return path

    def probe_auth(self, timeout: float = 10) -> str:
        """Pipe a trivial prompt into the bare executable and look for login
        vocabulary in the reply.

        A probe that times out is not an auth failure by itself; whatever
        it printed before the timeout is still scanned.
        """
        try:
            exe = self._resolve_executable()
        except AiCliNotFound:
            return AUTH_CLI_NOT_FOUND
        try:
            result = subprocess.run(
                [exe],
                input=PROBE_PROMPT,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
            output = result.stdout or ""
        except subprocess.TimeoutExpired as exc:
            logger.debug("%s auth probe timed out after %ss", self.tool.tool_id, timeout)
            output = _as_text(exc.output)
        except OSError as exc:
            logger.warning("%s auth probe could not start: %s", self.tool.tool_id, exc)
            return AUTH_CLI_NOT_FOUND
        if has_auth_failure(output):
            logger.info("%s auth probe hit login vocabulary", self.tool.tool_id)
            return AUTH_REQUIRED
        return AUTH_OK

    def run(
        self,
        prompt: str,
        *,
        cwd: str,
        log_path: Optional[str] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> tuple[int, str]:
        """Run the tool on *prompt*, streaming combined output to *log_path*.

        Returns ``(exit_code, output)``.
        """
        exe = self._resolve_executable()
        cmd = [exe] + self.tool.command_for(prompt)[1:]
        stdin_text = self.tool.stdin_for(prompt)
        try:
            process = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as exc:
            raise AiCliNotFound(f"{self.tool.display_name} CLI not found: {exc}") from exc

        if stdin_text is not None:
            feeder = threading.Thread(
                target=self._feed_stdin, args=(process, stdin_text), daemon=True
            )
            feeder.start()

        output_lines: list[str] = []
        log = open(log_path, "a", encoding="utf-8") if log_path else None
        try:
            assert process.stdout is not None
            for line in process.stdout:
                output_lines.append(line)
                if log is not None:
                    log.write(line)
                    log.flush()
                if on_line:
                    on_line(line.rstrip("\n\r"))
            process.wait()
        except Exception as exc:
            process.kill()
            raise AiCliError(f"{self.tool.tool_id} error: {exc}") from exc
        finally:
            if log is not None:
                log.close()

        output = "".join(output_lines)
        logger.info("%s exited with %d (%d chars)", self.tool.tool_id, process.returncode, len(output))
        return process.returncode, output

    @staticmethod
    def _feed_stdin(process: subprocess.Popen, text: str) -> None:
        assert process.stdin is not None
        try:
            process.stdin.write(text)
        except (BrokenPipeError, OSError):
            pass
        finally:
            try:
                process.stdin.close()
            except OSError:
                pass
