"""Command line toolkit running shell commands as supervised background processes."""

import asyncio
import os
import re
import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Any

from deckhand.config import ShellToolConfig, get_config
from deckhand.exceptions import ActionExecutionError
from deckhand.logging import get_logger

if TYPE_CHECKING:
    from deckhand.execution import ActionContext

log = get_logger(__name__)

_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "exec"}
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split a command line into token lists separated by control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _segment_base_command(tokens: list[str]) -> str:
    for token in tokens:
        token = token.strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    """Executable name of each segment of a command line."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return []
    return [base for segment in segments if (base := _segment_base_command(segment))]


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Match a command line against blocked patterns.

    Patterns containing whitespace are searched in each whole segment;
    single-word patterns are matched against the segment's executable.
    Returns ``(blocked, matched_pattern_or_reason)``.
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"
    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"

    base_commands = [base for segment in segments if (base := _segment_base_command(segment))]
    if not base_commands:
        return True, "unparseable_command"
    segment_texts = [" ".join(tokens) for tokens in segments]

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        if re.search(r"\s", pattern):
            if any(compiled.search(text) for text in segment_texts) or pattern in cleaned:
                return True, pattern
        elif any(compiled.match(base) for base in base_commands):
            return True, pattern
    return False, ""


def _truncate(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        return text[:limit] + f"\n... [truncated, {len(text)} total chars]"
    return text


class CommandLineTool:
    """Execute shell commands without blocking the agent loop.

    Every command is started as a background process owned by the execution
    engine's supervisor. ``execute`` waits a short while for the command to
    finish and otherwise reports the process id so the model can use
    ``list`` / ``stop`` later.
    """

    ACTIONS: dict[str, dict[str, Any]] = {
        "execute": {
            "description": "Execute a bash command in the background (non-blocking, returns the result when it finishes quickly).",
            "params": [
                {"name": "command", "type": "str", "description": "The bash command to execute"},
                {
                    "name": "cwd",
                    "type": "Optional[str]",
                    "description": "Working directory, uses the current directory if omitted",
                    "optional": True,
                },
                {
                    "name": "env",
                    "type": "Optional[Dict[str, str]]",
                    "description": "Extra environment variables, merged into the current environment",
                    "optional": True,
                },
            ],
            "returns": "str",
            "needs_context": True,
        },
        "list": {
            "description": "List all background processes.",
            "returns": "str",
            "needs_context": True,
        },
        "stop": {
            "description": "Stop the specified background process.",
            "params": [
                {"name": "process_id", "type": "str", "description": "The process ID to stop"},
                {
                    "name": "force",
                    "type": "bool",
                    "description": "Kill the process immediately (SIGKILL) instead of terminating it",
                    "optional": True,
                },
            ],
            "returns": "str",
            "needs_context": True,
        },
        "cleanup": {
            "description": "Stop and clean up all background processes.",
            "returns": "str",
            "needs_context": True,
        },
    }

    def __init__(
        self,
        background_wait: float | None = None,
        shell_config: ShellToolConfig | None = None,
    ):
        cfg = get_config()
        self.background_wait = (
            cfg.execution.background_wait if background_wait is None else float(background_wait)
        )
        self.shell_config = shell_config or cfg.tools.shell
        self._readers: set[asyncio.Task[Any]] = set()

    def _is_command_safe(self, command: str) -> tuple[bool, str]:
        """Check a command against the blocked patterns and the allow list."""
        blocked, matched = is_blocked_shell_command(command, self.shell_config.blocked)
        if blocked:
            if matched == "empty_command":
                return False, "Command is empty"
            if matched == "unparseable_command":
                return False, "Command is not parseable"
            return False, f"Command matches blocked pattern: {matched}"

        allowed = {str(item).strip() for item in self.shell_config.allowed_commands if str(item).strip()}
        if allowed:
            for base_cmd in extract_shell_base_commands(command):
                if base_cmd not in allowed and base_cmd.split("/")[-1] not in allowed:
                    return False, f"Command not in allowed list: {base_cmd}"
        return True, ""

    @staticmethod
    def _require_context(context: "ActionContext | None", action: str) -> "ActionContext":
        if context is None:
            raise ActionExecutionError(
                f"CommandLineTool.{action}",
                "no execution context; run this action through the execution engine",
            )
        return context

    def _track_reader(self, task: asyncio.Task[Any]) -> None:
        self._readers.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._readers.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                log.debug("Background output reader ended with error", error=str(finished.exception()))

        task.add_done_callback(_done)

    def _format_finished(self, command: str, stdout: bytes, stderr: bytes, code: int | None) -> str:
        limit = self.shell_config.max_output_chars
        stdout_text = _truncate(stdout.decode("utf-8", errors="replace").strip(), limit)
        stderr_text = _truncate(stderr.decode("utf-8", errors="replace").strip(), limit)
        parts = [f"COMMAND: {command}"]
        if stdout_text:
            parts.append(f"STDOUT:\n{stdout_text}")
        if stderr_text:
            parts.append(f"STDERR:\n{stderr_text}")
        parts.append(f"EXIT CODE: {code}")
        return "\n\n".join(parts)

    async def execute(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        context: "ActionContext | None" = None,
    ) -> str:
        """Start ``command`` and return its output if it finishes within the wait window."""
        ctx = self._require_context(context, "execute")
        command = str(command)

        is_safe, reason = self._is_command_safe(command)
        if not is_safe:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            raise ActionExecutionError("CommandLineTool.execute", f"Command blocked: {reason}")

        work_dir = Path(cwd).expanduser() if cwd else Path(ctx.working_dir)
        if not work_dir.is_dir():
            return f"Working directory does not exist: {work_dir}"

        if env is not None and not isinstance(env, dict):
            raise ActionExecutionError(
                "CommandLineTool.execute",
                f"env must be a mapping of strings, got {type(env).__name__}",
            )
        exec_env = os.environ.copy()
        exec_env.update({str(k): str(v) for k, v in (env or {}).items()})

        log.info("Executing shell command", command=command, cwd=str(work_dir))
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(work_dir),
            env=exec_env,
            start_new_session=True,
        )
        process_id = ctx.register_background_process(process, command, str(work_dir))

        reader = asyncio.create_task(process.communicate())
        done, _ = await asyncio.wait({reader}, timeout=self.background_wait)
        if reader in done:
            stdout, stderr = reader.result()
            return self._format_finished(command, stdout, stderr, process.returncode)

        # Keep draining the pipes so the child never blocks on a full buffer.
        self._track_reader(reader)
        return (
            f"COMMAND: {command}\n"
            f"PROCESS ID: {process_id}\n"
            f"STATUS: The process may still be executing (waited {self.background_wait:g} seconds, not completed)\n"
            "TIP: Use CommandLineTool.list later to check the process status, "
            "or CommandLineTool.stop to terminate it"
        )

    async def list(self, context: "ActionContext | None" = None) -> str:
        """Describe every running background process."""
        return self._require_context(context, "list").list_processes()

    async def stop(
        self,
        process_id: str,
        force: bool = False,
        context: "ActionContext | None" = None,
    ) -> str:
        """Stop one background process."""
        ctx = self._require_context(context, "stop")
        return await ctx.stop_process(str(process_id), force=bool(force))

    async def cleanup(self, context: "ActionContext | None" = None) -> str:
        """Stop all background processes."""
        return await self._require_context(context, "cleanup").cleanup_processes()
